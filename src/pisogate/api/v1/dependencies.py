"""Shared API dependencies for authentication and device identification."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from pisogate.core.security import decode_access_token
from pisogate.db.session import get_db
from pisogate.services.guard import client_device_id, derive_device_id
from pisogate.services.runtime import Runtime
from pisogate.utils.net import clean_ip, lookup_arp

logger = logging.getLogger(__name__)

# HTTP Bearer scheme for admin JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_runtime(request: Request) -> Runtime:
    """Return the service graph built at application startup."""
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Gateway is starting",
        )
    return runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


def get_current_admin(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> str:
    """Return the administrator named by a valid bearer token.

    Raises:
        HTTPException: If the token is missing, expired or malformed.
    """
    subject = decode_access_token(credentials.credentials)
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return subject


AdminDep = Annotated[str, Depends(get_current_admin)]


def get_client_ip(request: Request) -> str | None:
    return clean_ip(request.client.host if request.client else None)


def resolve_client_mac(ip: Annotated[str | None, Depends(get_client_ip)]) -> str | None:
    """Look the requester's MAC up in the neighbour table.

    Portal clients sit on the gateway's own LAN segment, so the kernel
    already knows their hardware address.
    """
    if ip is None:
        return None
    return lookup_arp(ip)


@dataclass(frozen=True)
class PortalDevice:
    """Identity of the device behind a portal request."""

    device_id: str
    ip: str | None
    mac: str | None
    # False when device_id is only a browser fingerprint.
    client_held: bool = False


def get_portal_device(
    request: Request,
    runtime: RuntimeDep,
    db: SessionDep,
    ip: Annotated[str | None, Depends(get_client_ip)],
    mac: Annotated[str | None, Depends(resolve_client_mac)],
) -> PortalDevice:
    """Identify and screen a captive-portal request.

    Rate limiting raises and is turned into a 429 by the application's
    exception handlers. IP anomalies are only recorded.
    """
    device_id = derive_device_id(request.headers)
    anomalies = runtime.guard.screen(device_id, ip)
    runtime.guard.record_anomalies(db, device_id=device_id, anomalies=anomalies, mac=mac, ip=ip)
    return PortalDevice(
        device_id=device_id,
        ip=ip,
        mac=mac,
        client_held=client_device_id(request.headers) is not None,
    )


PortalDeviceDep = Annotated[PortalDevice, Depends(get_portal_device)]
SessionTokenHeader = Annotated[str | None, Header(alias="X-Session-Token")]
