# src/pisogate/models/__init__.py
"""SQLAlchemy models for the hotspot ledger."""

from .device_audit import DeviceAudit
from .rate import Rate
from .sync_item import SYNC_KIND_SALE, SYNC_KIND_STATUS, SyncItem
from .wifi_session import (
    SESSION_STATE_ACTIVE,
    SESSION_STATE_EXPIRED,
    SESSION_STATE_REVOKED,
    WifiSession,
)

__all__ = [
    "DeviceAudit",
    "Rate",
    "SYNC_KIND_SALE", "SYNC_KIND_STATUS", "SyncItem",
    "SESSION_STATE_ACTIVE", "SESSION_STATE_EXPIRED", "SESSION_STATE_REVOKED",
    "WifiSession",
]
