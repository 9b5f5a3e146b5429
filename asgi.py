"""
asgi.py -- ASGI entry point for the Precinct admin API.

The admin UI is served separately and talks to this app over /api/v1, so
there is nothing to mount besides api.main.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
