#!/usr/bin/env python3
"""
Flask API server for the Slitherlink Solver.

Run with: python server.py
Then POST a puzzle to: http://localhost:5000/solve
"""

import threading
import time
from flask import Flask, request, jsonify
from flask_cors import CORS
from slitherlink_solver import (
    STATUS_INVALID, STATUS_INVALID_SETTINGS, InvalidSettingsError, MalformedPuzzleError, SolverInput,
    solve_slitherlink,
)
from puzzle_parser import grid_from_request, solver_settings_from_request

app = Flask(__name__)
CORS(app)  # Allow cross-origin requests from the frontend

# Track solve state
solve_state = {
    "solving": False,
    "started_at": None,
    "config": None,
    "last_iteration": None,  # Latest refinement report during solving
}
solve_lock = threading.Lock()


def solver_input_from_request(data: dict) -> SolverInput:
    """Build SolverInput from a request body; solver settings fall back to defaults."""
    return SolverInput(grid=grid_from_request(data), **solver_settings_from_request(data))


@app.route('/health', methods=['GET'])
def health():
    """Health check endpoint."""
    return jsonify({"status": "ok"})


@app.route('/status', methods=['GET'])
def status():
    """Check if solver is busy."""
    with solve_lock:
        if solve_state["solving"]:
            elapsed = time.time() - solve_state["started_at"]
            return jsonify({
                "status": "solving",
                "elapsed_seconds": round(elapsed, 1),
                "config": solve_state["config"],
            })
        return jsonify({"status": "idle"})


@app.route('/progress', methods=['GET'])
def progress():
    """Get the latest refinement iteration while solving."""
    with solve_lock:
        if solve_state["last_iteration"]:
            elapsed = time.time() - solve_state["started_at"] if solve_state["started_at"] else 0
            return jsonify({
                "status": "solving" if solve_state["solving"] else "done",
                "elapsed_seconds": round(elapsed, 1),
                "iteration": solve_state["last_iteration"],
            })
        elif solve_state["solving"]:
            elapsed = time.time() - solve_state["started_at"]
            return jsonify({
                "status": "encoding",
                "elapsed_seconds": round(elapsed, 1),
                "iteration": None,
            })
        return jsonify({"status": "idle", "iteration": None})


@app.route('/solve', methods=['POST'])
def solve():
    """
    Solve a puzzle.

    Request JSON:
    {
        "rows": ["3.2", "...", "2.3"],   // or "clues": [[3, null, 2], ...]
                                         // or "loopy": "3x3t0:3a2c2a3"
                                         // or "puzzle": "<raw text/html>", "format": "auto"
        "max_iterations": 1000,          // 0 = unbounded
        "max_time_seconds": 60,          // per backend check
        "warm_start": false
    }
    """
    try:
        data = request.get_json(silent=True)

        if not data:
            return jsonify({"success": False, "error": "No JSON body provided"}), 400

        try:
            solver_input = solver_input_from_request(data)
        except MalformedPuzzleError as e:
            return jsonify({"success": False, "status": STATUS_INVALID, "error": str(e)}), 400
        except InvalidSettingsError as e:
            return jsonify({"success": False, "status": STATUS_INVALID_SETTINGS, "error": str(e)}), 400

        grid = solver_input.grid
        print(f"Solving: {grid.width}x{grid.height}, clues={sum(1 for _ in grid.clued_cells())}, "
              f"max_iterations={solver_input.max_iterations}, max_time={solver_input.max_time_seconds}")

        # Callback to store refinement progress
        def on_iteration(report):
            with solve_lock:
                solve_state["last_iteration"] = report.to_dict()
                print(f"  Iteration {report.iteration}: cycles={report.cycle_count}, lines={report.total_edges}")

        # Mark as solving
        with solve_lock:
            solve_state["solving"] = True
            solve_state["started_at"] = time.time()
            solve_state["last_iteration"] = None  # Clear previous progress
            solve_state["config"] = {
                "width": grid.width,
                "height": grid.height,
                "max_iterations": solver_input.max_iterations,
                "max_time": solver_input.max_time_seconds,
            }

        try:
            result = solve_slitherlink(solver_input, on_iteration=on_iteration)
        finally:
            with solve_lock:
                solve_state["solving"] = False
                solve_state["started_at"] = None
                solve_state["config"] = None
                # Keep last_iteration available briefly for final poll

        print(f"Result: success={result.success}, status={result.status}, iterations={result.iterations}")

        return jsonify(result.to_dict())

    except Exception as e:
        print(f"Error: {e}")
        import traceback
        traceback.print_exc()
        return jsonify({"success": False, "error": str(e)}), 500


if __name__ == '__main__':
    print("Starting Slitherlink Solver API on http://localhost:5000")
    print("Endpoints:")
    print("  GET  /health   - Health check")
    print("  GET  /status   - Check solver status")
    print("  GET  /progress - Get latest refinement iteration (poll while solving)")
    print("  POST /solve    - Solve a puzzle")
    app.run(host='0.0.0.0', port=5000, debug=True)
