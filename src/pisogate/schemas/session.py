# src/pisogate/schemas/session.py
"""Session-related Pydantic schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pisogate.services.ledger import SessionSnapshot


class SessionResponse(BaseModel):
    """Schema for session information returned to administrators."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    mac: str
    ip: str | None
    device_id: str | None
    state: str
    remaining_seconds: int
    total_paid: int
    download_limit: int
    upload_limit: int
    connected_at: datetime
    last_seen: datetime
    end_reason: str | None = None


class StartSessionRequest(BaseModel):
    """Schema for an administrator granting time directly."""

    mac: str
    minutes: int = Field(..., gt=0)
    pesos: int = Field(0, ge=0)
    ip: str | None = None


class PortalStatusResponse(BaseModel):
    """What a captive-portal client sees about its own device."""

    mac: str | None
    connected: bool
    remaining_seconds: int = 0
    total_paid: int = 0
    token: str | None = None

    @classmethod
    def from_snapshot(
        cls,
        mac: str | None,
        snapshot: SessionSnapshot | None,
        *,
        include_token: bool = True,
    ) -> PortalStatusResponse:
        if snapshot is None or not snapshot.is_active:
            return cls(mac=mac, connected=False)
        return cls(
            mac=snapshot.mac,
            connected=True,
            remaining_seconds=snapshot.remaining_seconds,
            total_paid=snapshot.total_paid,
            token=snapshot.token if include_token else None,
        )
