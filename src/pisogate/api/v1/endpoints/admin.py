"""Administrator endpoints: sessions, rates, telemetry and bench tools."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Response, status
from sqlalchemy import select

from pisogate.core.security import create_access_token, verify_admin_credentials
from pisogate.models import DeviceAudit, Rate
from pisogate.schemas.admin import LoginRequest, SyncStatsResponse, TokenResponse
from pisogate.schemas.credit import PulseSimulationRequest
from pisogate.schemas.rate import RateCreate, RateResponse, RateUpdate
from pisogate.schemas.session import SessionResponse, StartSessionRequest
from pisogate.services.ledger import SessionSnapshot

from ..dependencies import AdminDep, RuntimeDep, SessionDep

router = APIRouter(prefix="/admin", tags=["admin"])

AUDIT_PAGE_SIZE = 100


@router.post("/login", response_model=TokenResponse)
async def login(payload: LoginRequest) -> TokenResponse:
    """Exchange admin credentials for a bearer token."""
    if not verify_admin_credentials(payload.username, payload.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
        )
    return TokenResponse(access_token=create_access_token(payload.username))


# --- Sessions ------------------------------------------------------------------------


@router.get("/sessions", response_model=list[SessionResponse])
def list_sessions(
    _admin: AdminDep,
    runtime: RuntimeDep,
    include_ended: bool = False,
) -> list[SessionSnapshot]:
    return runtime.ledger.list_sessions(include_ended=include_ended)


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def start_session(
    payload: StartSessionRequest,
    _admin: AdminDep,
    runtime: RuntimeDep,
) -> SessionSnapshot:
    """Grant time to a device without coins."""
    return runtime.ledger.start_session(
        payload.mac,
        payload.minutes,
        payload.pesos,
        ip=payload.ip,
    )


@router.delete("/sessions/{mac}", response_model=SessionResponse)
def revoke_session(mac: str, _admin: AdminDep, runtime: RuntimeDep) -> SessionSnapshot:
    """Disconnect a device immediately."""
    return runtime.ledger.revoke(mac, reason="admin")


# --- Rates ---------------------------------------------------------------------------


@router.get("/rates", response_model=list[RateResponse])
def list_rates(_admin: AdminDep, runtime: RuntimeDep, db: SessionDep) -> list[Rate]:
    return runtime.rates.list_rates(db)


@router.post("/rates", response_model=RateResponse, status_code=status.HTTP_201_CREATED)
def create_rate(
    payload: RateCreate,
    _admin: AdminDep,
    runtime: RuntimeDep,
    db: SessionDep,
) -> Rate:
    return runtime.rates.create_rate(db, **payload.model_dump())


@router.patch("/rates/{rate_id}", response_model=RateResponse)
def update_rate(
    rate_id: int,
    payload: RateUpdate,
    _admin: AdminDep,
    runtime: RuntimeDep,
    db: SessionDep,
) -> Rate:
    return runtime.rates.update_rate(db, rate_id, **payload.model_dump(exclude_unset=True))


@router.delete("/rates/{rate_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_rate(rate_id: int, _admin: AdminDep, runtime: RuntimeDep, db: SessionDep) -> Response:
    runtime.rates.delete_rate(db, rate_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Operations ----------------------------------------------------------------------


@router.get("/sync", response_model=SyncStatsResponse)
def sync_stats(_admin: AdminDep, runtime: RuntimeDep) -> dict[str, Any]:
    """Report the telemetry queue state."""
    return runtime.telemetry.stats()


@router.post("/sync/flush", status_code=status.HTTP_202_ACCEPTED)
async def flush_sync(_admin: AdminDep, runtime: RuntimeDep) -> dict[str, bool]:
    """Ask the telemetry worker to retry the queue now."""
    runtime.telemetry.notify_online()
    return {"scheduled": runtime.telemetry.running}


@router.post("/reconcile")
async def reconcile(_admin: AdminDep, runtime: RuntimeDep) -> dict[str, int]:
    """Rebuild packet-filter state from the ledger."""
    report = await runtime.reconcile()
    return {"granted": report.granted, "failed": len(report.failed)}


@router.post("/pulses", status_code=status.HTTP_202_ACCEPTED)
async def simulate_pulses(
    payload: PulseSimulationRequest,
    _admin: AdminDep,
    runtime: RuntimeDep,
) -> dict[str, Any]:
    """Inject coin pulses as if the acceptor had produced them."""
    for _ in range(payload.pulses):
        await runtime.pulses.push(payload.line_id)
    return {"line_id": payload.line_id, "pulses": payload.pulses}


@router.get("/audit")
def list_audit(_admin: AdminDep, db: SessionDep, device_id: str | None = None) -> list[dict[str, Any]]:
    """Return recent device audit entries, newest first."""
    stmt = select(DeviceAudit).order_by(DeviceAudit.id.desc()).limit(AUDIT_PAGE_SIZE)
    if device_id:
        stmt = stmt.where(DeviceAudit.device_id == device_id)
    return [
        {
            "id": entry.id,
            "device_id": entry.device_id,
            "event": entry.event,
            "old_mac": entry.old_mac,
            "new_mac": entry.new_mac,
            "old_ip": entry.old_ip,
            "new_ip": entry.new_ip,
            "detail": entry.detail,
            "created_at": entry.created_at.isoformat(),
        }
        for entry in db.scalars(stmt)
    ]


@router.get("/status")
def gateway_status(_admin: AdminDep, runtime: RuntimeDep) -> dict[str, Any]:
    return runtime.status()
