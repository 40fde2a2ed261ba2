"""WSGI entrypoint for hosting platforms that look for ``api/app.py``."""

import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.append(ROOT)

from backend.server import create_app  # noqa: E402

app = create_app()

__all__ = ["app"]
