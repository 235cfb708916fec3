"""Captive-portal endpoints used by client devices and coin modules."""

from __future__ import annotations

import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, status
from sqlalchemy.orm import Session

from pisogate.models import Rate
from pisogate.schemas.credit import (
    CoinSlotClaimRequest,
    CoinSlotClaimResponse,
    CreditWebhookRequest,
)
from pisogate.schemas.rate import RateResponse
from pisogate.schemas.session import PortalStatusResponse, SessionResponse
from pisogate.services.guard import SessionUnknownError
from pisogate.services.ledger import SessionSnapshot
from pisogate.services.runtime import Runtime

from ..dependencies import (
    PortalDevice,
    PortalDeviceDep,
    RuntimeDep,
    SessionDep,
    SessionTokenHeader,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portal", tags=["portal"])


def _follow_mac_change(
    runtime: Runtime,
    db: Session,
    device: PortalDevice,
    snapshot: SessionSnapshot,
) -> SessionSnapshot:
    """Move a session to the device's current MAC, auditing the change."""
    if device.mac is None or device.mac == snapshot.mac:
        return snapshot
    runtime.guard.record_mac_change(
        db,
        device_id=device.device_id,
        old_mac=snapshot.mac,
        new_mac=device.mac,
        old_ip=snapshot.ip,
        new_ip=device.ip,
    )
    return runtime.ledger.rebind_mac(snapshot.mac, device.mac, ip=device.ip)


@router.get("/status", response_model=PortalStatusResponse)
def get_status(
    runtime: RuntimeDep,
    db: SessionDep,
    device: PortalDeviceDep,
    token: SessionTokenHeader = None,
) -> PortalStatusResponse:
    """Return the requesting device's session state.

    A presented session token must belong to this device; otherwise the
    request is rejected without detail. Without a token, a session only
    follows the device to a new MAC when the device sent its own
    client-held id, and the token is not disclosed on that path.
    """
    if token:
        snapshot = runtime.ledger.find_by_token(token)
        if snapshot is None:
            raise SessionUnknownError("Session token not recognised")
        anomalies = runtime.guard.validate_token(
            snapshot,
            device_id=device.device_id,
            mac=device.mac,
            ip=device.ip,
        )
        runtime.guard.record_anomalies(
            db, device_id=device.device_id, anomalies=anomalies, mac=device.mac, ip=device.ip
        )
        snapshot = _follow_mac_change(runtime, db, device, snapshot)
        return PortalStatusResponse.from_snapshot(snapshot.mac, snapshot)

    snapshot = runtime.ledger.get_status(device.mac) if device.mac else None
    if snapshot is not None:
        return PortalStatusResponse.from_snapshot(device.mac, snapshot)

    if device.client_held:
        known = runtime.ledger.find_by_device_id(device.device_id)
        if known is not None:
            snapshot = _follow_mac_change(runtime, db, device, known)
    return PortalStatusResponse.from_snapshot(device.mac, snapshot, include_token=False)


@router.post("/coin-slot", response_model=CoinSlotClaimResponse)
def claim_coin_slot(
    payload: CoinSlotClaimRequest,
    runtime: RuntimeDep,
    device: PortalDeviceDep,
) -> CoinSlotClaimResponse:
    """Reserve a coin line so that inserted coins credit this device."""
    if device.mac is None:
        raise SessionUnknownError("Requester MAC could not be resolved", reason="unknown_device")

    if payload.release:
        runtime.credits.release(payload.line_id, device.mac)
        return CoinSlotClaimResponse(line_id=payload.line_id, claimed=False)

    claim, applied = runtime.credits.claim(
        payload.line_id,
        device.mac,
        ip=device.ip,
        device_id=device.device_id,
    )
    return CoinSlotClaimResponse(
        line_id=claim.line_id,
        claimed=True,
        expires_in=int(runtime.credits.claim_seconds),
        credited=len(applied),
    )


@router.post("/credit", response_model=SessionResponse)
def credit_webhook(
    payload: CreditWebhookRequest,
    runtime: RuntimeDep,
    module_key: Annotated[str | None, Header(alias="X-Coin-Module-Key")] = None,
) -> SessionSnapshot:
    """Apply credit reported by a networked coin module."""
    expected = runtime.config.coin_module_key
    if not expected or not module_key or not secrets.compare_digest(module_key, expected):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    return runtime.credits.apply_webhook(
        payload.mac,
        payload.amount,
        ip=payload.ip,
        device_id=payload.device_id,
    )


@router.get("/rates", response_model=list[RateResponse])
def list_rates(runtime: RuntimeDep, db: SessionDep) -> list[Rate]:
    """List the advertised rates."""
    return runtime.rates.list_rates(db)
