# src/pisogate/schemas/credit.py
"""Coin credit Pydantic schemas."""

from pydantic import BaseModel, Field


class CoinSlotClaimRequest(BaseModel):
    """Schema for a portal device reserving a coin line."""

    line_id: str = Field("main", min_length=1, max_length=32)
    release: bool = False


class CoinSlotClaimResponse(BaseModel):
    line_id: str
    claimed: bool
    expires_in: int = 0
    credited: int = Field(0, description="Spooled credit applied to this device on claim")


class CreditWebhookRequest(BaseModel):
    """Credit reported by a networked coin module."""

    mac: str
    amount: int = Field(..., gt=0)
    ip: str | None = None
    device_id: str | None = None


class PulseSimulationRequest(BaseModel):
    """Bench-test pulses injected as if from the coin acceptor."""

    line_id: str = Field("main", min_length=1, max_length=32)
    pulses: int = Field(..., gt=0, le=100)
