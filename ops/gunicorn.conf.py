"""Production Gunicorn settings for the AstroVision discovery API.

A discovery request blocks while astrometry.net solves the image (up to about
a minute of polling), so the worker timeout sits well above the polling
budget. Override individual values using environment variables (GUNICORN_*).

    gunicorn -c ops/gunicorn.conf.py astrovision.api.main:app
"""
from __future__ import annotations

import multiprocessing
import os


bind = os.environ.get("GUNICORN_BIND", "0.0.0.0:8000")
worker_class = os.environ.get("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")

default_workers = max(2, multiprocessing.cpu_count() // 2)
workers = int(os.environ.get("GUNICORN_WORKERS", default_workers))

# Pipeline runs in the worker threadpool; each one mostly waits on the solver
threads = int(os.environ.get("GUNICORN_THREADS", "4"))

timeout = int(os.environ.get("GUNICORN_TIMEOUT", "120"))
graceful_timeout = int(os.environ.get("GUNICORN_GRACEFUL_TIMEOUT", "90"))
keepalive = int(os.environ.get("GUNICORN_KEEPALIVE", "5"))

max_requests = int(os.environ.get("GUNICORN_MAX_REQUESTS", "500"))
max_requests_jitter = int(os.environ.get("GUNICORN_MAX_REQUESTS_JITTER", "50"))

loglevel = os.environ.get("GUNICORN_LOGLEVEL", "info")
accesslog = os.environ.get("GUNICORN_ACCESSLOG", "-")
errorlog = os.environ.get("GUNICORN_ERRORLOG", "-")
