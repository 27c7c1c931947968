"""
asgi.py -- Application assembly for SessionGuard.

The ASGI server imports the app from here so deployment config never needs to
know the package layout behind it.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
