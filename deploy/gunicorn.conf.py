# Gunicorn configuration for the Slitherlink Solver
# Sized for a small single-vCPU droplet

import os

# Bind to localhost - nginx will proxy
bind = os.environ.get('GUNICORN_BIND', "127.0.0.1:5000")

# Workers - exactly 1: the job table and queue live in process memory
workers = 1

# Threads - keep answering polls while a solve subprocess runs
threads = 4

# Worker class - gthread for threaded workers
worker_class = "gthread"

# Timeout - applies to a single request, not to a solve. /solve only queues the job
# and returns; the solve runs in a worker-owned subprocess capped by MAX_SOLVE_TIME
# (600s), and /job polls answer from memory, so no request comes close to 60s.
timeout = 60

# Keep-alive
keepalive = 5

# Logging - use /dev/stdout for local testing, files for production
if os.path.exists('/var/log/slitherlink-solver'):
    accesslog = "/var/log/slitherlink-solver/access.log"
    errorlog = "/var/log/slitherlink-solver/error.log"
else:
    accesslog = "-"
    errorlog = "-"
loglevel = "info"

# Process naming
proc_name = "slitherlink-solver"

# Graceful timeout
graceful_timeout = 30

# Max requests per worker before restart (prevents memory leaks)
# Set high so polling clients do not restart the worker mid-solve
max_requests = 10000
max_requests_jitter = 1000
