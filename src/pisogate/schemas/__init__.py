# src/pisogate/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .admin import LoginRequest, SyncStatsResponse, TokenResponse
from .credit import (
    CoinSlotClaimRequest,
    CoinSlotClaimResponse,
    CreditWebhookRequest,
    PulseSimulationRequest,
)
from .rate import RateCreate, RateResponse, RateUpdate
from .session import PortalStatusResponse, SessionResponse, StartSessionRequest

__all__ = [
    "CoinSlotClaimRequest", "CoinSlotClaimResponse",
    "CreditWebhookRequest", "PulseSimulationRequest",
    "LoginRequest", "SyncStatsResponse", "TokenResponse",
    "PortalStatusResponse", "SessionResponse", "StartSessionRequest",
    "RateCreate", "RateResponse", "RateUpdate",
]
