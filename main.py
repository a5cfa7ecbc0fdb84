"""
ASGI entrypoint for deployments.

The FastAPI app lives in `backend/app/main.py` and uses imports like
`from app.db ...`, which requires `backend/` to be on `PYTHONPATH`.

With this repo-root `main.py` the server can be started with:
  uvicorn main:app --host 0.0.0.0 --port $PORT
"""

from __future__ import annotations

import sys
from pathlib import Path


_BACKEND_DIR = Path(__file__).resolve().parent / "backend"

# Ensure `import app...` resolves to `backend/app/...`
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from app.main import app  # noqa: E402,F401
