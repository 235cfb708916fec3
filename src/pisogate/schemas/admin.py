# src/pisogate/schemas/admin.py
"""Admin authentication and status schemas."""

from pydantic import BaseModel


class LoginRequest(BaseModel):
    username: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


class SyncStatsResponse(BaseModel):
    """Telemetry queue statistics."""

    configured: bool
    machine_id: str
    heartbeat_active: bool
    queued_items: int
