"""
asgi.py -- Application assembly for VaultPass.

The only module outside tests/ that imports api/. Keeps the server entry
point stable while api/main.py evolves.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
