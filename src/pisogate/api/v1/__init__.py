# src/pisogate/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import admin_router, portal_router, system_router

__all__ = [
    "admin_router",
    "portal_router",
    "system_router",
]
