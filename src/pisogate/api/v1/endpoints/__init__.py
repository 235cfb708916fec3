# src/pisogate/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .admin import router as admin_router
from .portal import router as portal_router
from .system import router as system_router

__all__ = [
    "admin_router",
    "portal_router",
    "system_router",
]
