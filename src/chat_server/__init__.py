"""Chat server package: session governor, memory extraction and HTTP API.

This package provides a FastAPI application factory named ``create_app``
inside ``chat_server/server.py`` (see :func:`create_app`).

Typical usage
-------------
from chat_server import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


from .server import create_app  # noqa: E402
