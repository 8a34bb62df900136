#!/usr/bin/env python3
"""
Production Flask API server for the Slitherlink Solver.
Async job queue with rate limiting, concurrency control and a wall-clock cap.

The refinement loop has no abort path of its own, so every job runs in a
subprocess that the worker can kill on abort or when the job's time is up.

Run with: gunicorn -c ../deploy/gunicorn.conf.py server_prod:app
"""

import os
import threading
import time
import uuid
import queue
import multiprocessing
from collections import OrderedDict
from flask import Flask, request, jsonify
from flask_cors import CORS
from slitherlink_solver import (
    STATUS_INVALID, STATUS_INVALID_SETTINGS, InvalidSettingsError, MalformedPuzzleError, SolverInput,
    solve_slitherlink,
)
from puzzle_parser import grid_from_request, solver_settings_from_request

# =============================================================================
# Configuration
# =============================================================================

MAX_CONCURRENT_SOLVES = int(os.environ.get('MAX_CONCURRENT_SOLVES', 1))
MAX_QUEUE_SIZE = int(os.environ.get('MAX_QUEUE_SIZE', 10))
RATE_LIMIT_SECONDS = int(os.environ.get('RATE_LIMIT_SECONDS', 30))
MAX_SOLVE_TIME = int(os.environ.get('MAX_SOLVE_TIME', 600))
MAX_GRID_CELLS = int(os.environ.get('MAX_GRID_CELLS', 2500))
RESULT_TTL_SECONDS = 300
POLL_INTERVAL = 0.1

SERVER_START_TIME = time.time()
total_solves = 0

# =============================================================================
# App Setup
# =============================================================================

app = Flask(__name__)

default_origins = 'http://localhost:5173,http://localhost:3000'
allowed_origins = os.environ.get('ALLOWED_ORIGINS', default_origins)
if allowed_origins != '*':
    allowed_origins = [o.strip() for o in allowed_origins.split(',')]
CORS(app, origins=allowed_origins)

# =============================================================================
# Job Table
# =============================================================================

# Lifecycle: queued -> solving -> complete | error | timeout
#            queued | solving -> aborted
# Each entry: status, queued_at, started_at, completed_at, config, solver_input,
# last_iteration (latest refinement report), result, error, process
jobs = {}
state_lock = threading.Lock()
job_queue = queue.Queue()

FINISHED_STATES = ("complete", "error", "timeout", "aborted")

ip_last_solve = OrderedDict()
MAX_IP_CACHE = 10000

workers = []
workers_started = False


def get_client_ip():
    """Client IP, taking the first X-Forwarded-For hop when behind nginx."""
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr


def seconds_until_allowed(ip) -> float:
    """0 when the IP may submit now."""
    with state_lock:
        last = ip_last_solve.get(ip)
    if last is None:
        return 0
    return max(0.0, RATE_LIMIT_SECONDS - (time.time() - last))


def record_submission(ip):
    with state_lock:
        ip_last_solve[ip] = time.time()
        ip_last_solve.move_to_end(ip)
        while len(ip_last_solve) > MAX_IP_CACHE:
            ip_last_solve.popitem(last=False)


def count_jobs(status) -> int:
    with state_lock:
        return sum(1 for job in jobs.values() if job["status"] == status)


def queue_position(job_id) -> int:
    """1-based position among queued jobs, 0 if the job is not queued. Caller holds state_lock."""
    queued = [jid for jid, job in jobs.items() if job["status"] == "queued"]
    return queued.index(job_id) + 1 if job_id in queued else 0


def cleanup_old_jobs():
    now = time.time()
    with state_lock:
        expired = [
            job_id for job_id, job in jobs.items()
            if job["status"] in FINISHED_STATES and now - (job["completed_at"] or now) > RESULT_TTL_SECONDS
        ]
        for job_id in expired:
            del jobs[job_id]


def describe_job(job_id, job, now) -> dict:
    """Public view of a job for GET /job/<id>. Caller holds state_lock."""
    response = {"status": job["status"], "job_id": job_id}
    status = job["status"]

    if status == "queued":
        response["queue_position"] = queue_position(job_id)
        response["waiting_seconds"] = round(now - job["queued_at"], 1)
    elif status == "solving":
        response["elapsed_seconds"] = round(now - job["started_at"], 1)
        response["max_time"] = job["config"]["max_time"]
    elif status == "complete":
        response["result"] = job["result"]
        response["duration"] = round(job["completed_at"] - job["started_at"], 1)
    elif status in ("error", "timeout"):
        response["error"] = job["error"] or "Unknown error"

    if status in ("solving", "error", "timeout") and job["last_iteration"]:
        response["last_iteration"] = job["last_iteration"]
    return response


# =============================================================================
# Solve Subprocess
# =============================================================================

def solver_subprocess(solver_input, result_queue, progress_queue):
    """Child process entry: solve and post the outcome; reports go to progress_queue."""
    def on_iteration(report):
        try:
            progress_queue.put_nowait(report.to_dict())
        except queue.Full:
            pass  # the next report supersedes this one

    try:
        result = solve_slitherlink(solver_input, on_iteration=on_iteration)
        result_queue.put({"status": "complete", "result": result.to_dict()})
    except Exception as e:
        import traceback
        result_queue.put({"status": "error", "error": str(e), "traceback": traceback.format_exc()})


def stop_process(proc):
    proc.terminate()
    proc.join(timeout=2)
    if proc.is_alive():
        proc.kill()
        proc.join(timeout=1)


def claim_job(job_id):
    """Move a queued job to solving. Returns (solver_input, deadline) or None if it was aborted."""
    with state_lock:
        job = jobs.get(job_id)
        if job is None or job["status"] != "queued":
            return None
        job["status"] = "solving"
        job["started_at"] = time.time()
        return job["solver_input"], job["started_at"] + job["config"]["max_time"]


def watch_subprocess(job_id, proc, result_queue, progress_queue, deadline):
    """
    Wait for the child to post its outcome, forwarding progress reports.
    Returns (outcome, payload), outcome one of "finished", "aborted", "timeout", "crashed".
    """
    while True:
        with state_lock:
            aborted = jobs.get(job_id, {}).get("status") == "aborted"
        if aborted:
            stop_process(proc)
            return "aborted", None
        if time.time() > deadline:
            stop_process(proc)
            return "timeout", None

        latest = None
        try:
            while True:
                latest = progress_queue.get_nowait()
        except queue.Empty:
            pass
        if latest is not None:
            with state_lock:
                if job_id in jobs:
                    jobs[job_id]["last_iteration"] = latest

        # Read before join: a child blocked on a full pipe never exits
        try:
            return "finished", result_queue.get(timeout=POLL_INTERVAL)
        except queue.Empty:
            pass
        if not proc.is_alive():
            try:
                return "finished", result_queue.get(timeout=0.5)
            except queue.Empty:
                return "crashed", None


def finish_job(job_id, status, **fields):
    with state_lock:
        job = jobs.get(job_id)
        if job is None:
            return
        job.pop("process", None)
        if job["status"] == "aborted":
            return
        job["status"] = status
        job["completed_at"] = time.time()
        job.update(fields)


def record_outcome(job_id, outcome, payload, max_time):
    global total_solves

    if outcome == "aborted":
        finish_job(job_id, "aborted")
        app.logger.info(f"[{job_id}] Aborted by user")
    elif outcome == "timeout":
        finish_job(job_id, "timeout", error=f"Solve exceeded {max_time}s; result inconclusive")
        app.logger.info(f"[{job_id}] Wall-clock cap of {max_time}s reached")
    elif outcome == "crashed":
        finish_job(job_id, "error", error="Solver process crashed")
        app.logger.error(f"[{job_id}] Subprocess exited without a result")
    elif payload["status"] == "complete":
        output = payload["result"]
        output["job_id"] = job_id
        finish_job(job_id, "complete", result=output)
        with state_lock:
            total_solves += 1
        app.logger.info(f"[{job_id}] Complete: success={output['success']}, "
                        f"status={output['status']}, iterations={output['iterations']}")
    else:
        finish_job(job_id, "error", error=payload.get("error", "Unknown error"))
        app.logger.error(f"[{job_id}] Subprocess error: {payload.get('error')}")


def worker_thread():
    """Take job ids off the queue and run each in its own subprocess."""
    while True:
        job_id = job_queue.get()
        if job_id is None:  # shutdown
            break

        try:
            claimed = claim_job(job_id)
            if claimed is None:
                continue
            solver_input, deadline = claimed
            app.logger.info(f"[{job_id}] Starting solve (subprocess)")

            result_queue = multiprocessing.Queue()
            progress_queue = multiprocessing.Queue(maxsize=10)
            proc = multiprocessing.Process(
                target=solver_subprocess,
                args=(solver_input, result_queue, progress_queue),
            )
            proc.start()
            with state_lock:
                if job_id in jobs:
                    jobs[job_id]["process"] = proc

            outcome, payload = watch_subprocess(job_id, proc, result_queue, progress_queue, deadline)
            proc.join(timeout=1)
            record_outcome(job_id, outcome, payload, solver_input.max_time_seconds)
            cleanup_old_jobs()

        except Exception as e:
            app.logger.error(f"[{job_id}] Worker error: {e}")
            finish_job(job_id, "error", error=str(e))
            import traceback
            traceback.print_exc()


def start_workers():
    global workers_started
    if workers_started:
        return

    for i in range(MAX_CONCURRENT_SOLVES):
        t = threading.Thread(target=worker_thread, daemon=True, name=f"solver-worker-{i}")
        t.start()
        workers.append(t)

    workers_started = True
    app.logger.info(f"Started {MAX_CONCURRENT_SOLVES} worker threads")


start_workers()


# =============================================================================
# Routes
# =============================================================================

@app.route('/health', methods=['GET'])
def health():
    return jsonify({
        "status": "ok",
        "active_solves": count_jobs("solving"),
        "queued": count_jobs("queued"),
        "max_concurrent": MAX_CONCURRENT_SOLVES,
    })


@app.route('/status', methods=['GET'])
def status():
    """Server status and limits."""
    return jsonify({
        "uptime_seconds": round(time.time() - SERVER_START_TIME, 1),
        "total_solves": total_solves,
        "active_solves": count_jobs("solving"),
        "queued": count_jobs("queued"),
        "max_concurrent": MAX_CONCURRENT_SOLVES,
        "rate_limit_seconds": RATE_LIMIT_SECONDS,
        "max_solve_time": MAX_SOLVE_TIME,
        "max_grid_cells": MAX_GRID_CELLS,
    })


@app.route('/job/<job_id>', methods=['GET'])
def get_job(job_id):
    with state_lock:
        job = jobs.get(job_id)
        if job is None:
            return jsonify({"status": "not_found"}), 404
        return jsonify(describe_job(job_id, job, time.time()))


@app.route('/abort/<job_id>', methods=['POST'])
def abort_job(job_id):
    """Abort a queued or running job; a running subprocess is terminated."""
    with state_lock:
        job = jobs.get(job_id)
        if job is None:
            return jsonify({"success": False, "error": "Job not found"}), 404
        if job["status"] in FINISHED_STATES:
            return jsonify({"success": False, "error": f"Job already {job['status']}"}), 400

        job["status"] = "aborted"
        job["completed_at"] = time.time()
        proc = job.get("process")

    # The worker sees the status change on its next poll; terminating here just saves that wait
    if proc is not None and proc.is_alive():
        proc.terminate()
    app.logger.info(f"[{job_id}] Abort requested")
    return jsonify({"success": True, "message": "Job aborted"})


@app.route('/solve', methods=['POST'])
def solve():
    """
    Submit a solve job and return its id at once; poll /job/<job_id> for the result.

    Body: same puzzle forms as the dev server ("rows", "clues", "loopy" or
    "puzzle" + "format"), plus optional "max_iterations", "max_time_seconds"
    (wall-clock cap for the whole job, clamped to MAX_SOLVE_TIME) and "warm_start".
    """
    client_ip = get_client_ip()

    wait_time = seconds_until_allowed(client_ip)
    if wait_time > 0:
        return jsonify({
            "success": False,
            "error": f"Rate limited. Please wait {int(wait_time) + 1} seconds.",
            "retry_after": int(wait_time) + 1,
        }), 429

    queued = count_jobs("queued")
    if queued >= MAX_QUEUE_SIZE:
        return jsonify({
            "success": False,
            "error": f"Queue full ({queued} jobs waiting). Please try again later.",
            "queue_full": True,
        }), 503

    data = request.get_json(silent=True)
    if not data:
        return jsonify({"success": False, "error": "No JSON body provided"}), 400

    try:
        grid = grid_from_request(data)
    except MalformedPuzzleError as e:
        return jsonify({"success": False, "status": STATUS_INVALID, "error": str(e)}), 400

    if grid.width * grid.height > MAX_GRID_CELLS:
        return jsonify({
            "success": False,
            "error": f"Grid too large ({grid.width}x{grid.height}); limit is {MAX_GRID_CELLS} cells",
        }), 400

    try:
        settings = solver_settings_from_request(data, max_time_cap=MAX_SOLVE_TIME)
    except InvalidSettingsError as e:
        return jsonify({"success": False, "status": STATUS_INVALID_SETTINGS, "error": str(e)}), 400

    # The whole job shares one wall-clock budget, enforced by the worker
    max_time = settings["max_time_seconds"]
    solver_input = SolverInput(grid=grid, **settings)

    job_id = uuid.uuid4().hex[:8]
    record_submission(client_ip)

    with state_lock:
        jobs[job_id] = {
            "status": "queued",
            "queued_at": time.time(),
            "started_at": None,
            "completed_at": None,
            "config": {"width": grid.width, "height": grid.height, "max_time": max_time},
            "solver_input": solver_input,
            "last_iteration": None,
            "result": None,
            "error": None,
        }
        position = queue_position(job_id)
    job_queue.put(job_id)

    app.logger.info(f"[{job_id}] Queued: {grid.width}x{grid.height}, position={position}")

    return jsonify({
        "success": True,
        "job_id": job_id,
        "status": "queued",
        "queue_position": position,
        "message": f"Job queued. Poll /job/{job_id} for status.",
    })


# =============================================================================
# Main
# =============================================================================

if __name__ == '__main__':
    print("=" * 60)
    print("Slitherlink Solver - Production Server (Async)")
    print("=" * 60)
    print(f"Max concurrent solves: {MAX_CONCURRENT_SOLVES}")
    print(f"Max queue size: {MAX_QUEUE_SIZE}")
    print(f"Rate limit: {RATE_LIMIT_SECONDS}s between solves per IP")
    print(f"Max solve time: {MAX_SOLVE_TIME}s, max grid: {MAX_GRID_CELLS} cells")
    print()
    print("Endpoints:")
    print("  GET  /health      - Health check")
    print("  GET  /status      - Server status")
    print("  POST /solve       - Submit solve job (returns immediately)")
    print("  GET  /job/<id>    - Get job status/result")
    print("  POST /abort/<id>  - Abort a queued or running job")
    print()
    print("For production, run with:")
    print("  gunicorn -c ../deploy/gunicorn.conf.py server_prod:app")
    print("=" * 60)

    app.run(host='0.0.0.0', port=5000, debug=True, threaded=True)
