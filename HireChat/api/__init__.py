"""HTTP API for HireChat (admin emission and polling fallback)."""

from .routes import create_app

__all__ = ['create_app']
