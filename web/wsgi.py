"""WSGI entrypoint used by gunicorn.

    gunicorn -b 0.0.0.0:5000 wsgi:app
"""

import logging
import os

from app import app as app

logging.basicConfig(
    level=(os.environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

application = app
