"""
asgi.py -- ASGI entry point for hitime.

Run with:  uvicorn asgi:app --reload

api/main.py owns the application; this module only re-exports it so the
server command stays stable if the app factory moves.
"""

from api.main import app

__all__ = ["app"]
