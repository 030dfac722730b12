"""
Gunicorn configuration for the art catalog

Every setting reads an environment variable and falls back to the default
shown next to it. Unset the variable to get that default back.

Run:
  gunicorn main:app --config gunicorn.conf.py

Notes:
- Uvicorn workers serve the FastAPI app.
- The worker timeout follows OPENAI_TIMEOUT_SECONDS so a slow model call
  fails with a 502 from the app instead of a killed worker.
- Access and error logs go to ./logs/ next to the app log.
"""

import os
from pathlib import Path


# --- Paths / Logs ---
LOG_DIR = Path(os.getenv("GUNICORN_LOGDIR", os.getenv("APP_LOG_DIR", "logs")))
LOG_DIR.mkdir(parents=True, exist_ok=True)


# --- Binding / Network ---
# DEFAULT: 0.0.0.0:8000
bind = os.getenv("GUNICORN_BIND", "0.0.0.0:8000")


# --- Concurrency ---
# DEFAULT: 2 workers; recognition requests are I/O bound on the model call
workers = int(os.getenv("WEB_CONCURRENCY", "2"))
worker_class = os.getenv("GUNICORN_WORKER_CLASS", "uvicorn.workers.UvicornWorker")

# The catalog file lock is per process; keep preload off so each worker opens its own store
preload_app = os.getenv("GUNICORN_PRELOAD", "false").lower() == "true"


# --- Timeouts / Keepalive ---
def _model_timeout() -> float:
    try:
        return max(5.0, float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60")))
    except ValueError:
        return 60.0


# DEFAULT: model timeout plus 30s for the resize and the response
timeout = int(os.getenv("GUNICORN_TIMEOUT", str(int(_model_timeout()) + 30)))
graceful_timeout = int(os.getenv("GUNICORN_GRACEFUL_TIMEOUT", "30"))
keepalive = int(os.getenv("GUNICORN_KEEPALIVE", "5"))


# --- Request limits ---
# Uploads up to 10 MiB arrive as multipart bodies; the app enforces the limit itself
limit_request_field_size = int(os.getenv("GUNICORN_LIMIT_REQUEST_FIELD_SIZE", "8190"))


# --- Logging ---
errorlog = os.getenv("GUNICORN_ERRORLOG", str(LOG_DIR / "gunicorn_error.log"))
accesslog = os.getenv("GUNICORN_ACCESSLOG", str(LOG_DIR / "gunicorn_access.log"))
loglevel = os.getenv("GUNICORN_LOGLEVEL", "info")
capture_output = os.getenv("GUNICORN_CAPTURE_OUTPUT", "true").lower() == "true"
access_log_format = os.getenv(
    "GUNICORN_ACCESS_FORMAT",
    '%(h)s %(t)s "%(r)s" %(s)s %(b)s %(M)sms',
)


# --- Dev convenience ---
reload = os.getenv("GUNICORN_RELOAD", "false").lower() == "true"


# --- Proxies ---
forwarded_allow_ips = os.getenv("GUNICORN_FORWARDED_ALLOW_IPS", "127.0.0.1")
