"""
Production Server Configuration

Run the CRM API with Uvicorn workers under Gunicorn.

Ledger locks are per process; row locks (SELECT ... FOR UPDATE on
PostgreSQL) serialize writers across workers.
"""

import multiprocessing
import os

# Server socket
bind = os.getenv("BIND", "0.0.0.0:8000")
backlog = 2048

# Worker processes
workers = int(os.getenv("WORKERS", multiprocessing.cpu_count() * 2 + 1))
worker_class = "uvicorn.workers.UvicornWorker"
worker_connections = 1000
max_requests = 10000
max_requests_jitter = 1000
timeout = 120
keepalive = 5
graceful_timeout = 30

proc_name = "crm-ledger-api"

# Logging
errorlog = "-"
loglevel = os.getenv("LOG_LEVEL", "info").lower()
accesslog = "-"
access_log_format = '%(h)s %(l)s %(u)s %(t)s "%(r)s" %(s)s %(b)s "%(f)s" "%(a)s" %(D)s'


def worker_abort(worker):
    """Called when a worker times out; in-flight ledger transactions roll back."""
    worker.log.warning("Worker %s aborted", worker.pid)
