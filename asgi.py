"""
asgi.py -- ASGI entry point for FlowForge accounts.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
