"""
asgi.py -- ASGI entry point for authcore.

Run with:  uvicorn asgi:app --reload
           uvicorn asgi:app --host 0.0.0.0 --port 8000 --workers 4

Each worker process builds its own engine and collaborators in the lifespan
(api/main.py); workers share nothing but the database.
"""

from api.main import app

__all__ = ["app"]
