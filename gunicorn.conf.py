"""
Gunicorn configuration for the ReplyWatch API.

Usage:
    gunicorn replywatch.main:app -c gunicorn.conf.py

Detection workers run separately (scripts/run_worker.py); the API only
serves the send hook, triggers and the review workflow.
"""

import multiprocessing
import os

bind = os.getenv("BIND", "0.0.0.0:8000")

# Worker processes: CPU cores * 2 + 1 (Gunicorn recommendation)
workers = int(os.getenv("WEB_CONCURRENCY", multiprocessing.cpu_count() * 2 + 1))

# Use Uvicorn's ASGI worker for FastAPI
worker_class = "uvicorn.workers.UvicornWorker"

# /internal/run_dispatch executes a batch inline; allow for slow providers
timeout = 300

keepalive = 5

accesslog = "-"  # stdout
errorlog = "-"   # stderr
loglevel = "info"
