"""Device identity and security guard.

The guard correlates requests to a stable device-id across MAC and IP
churn, throttles abusive request rates and flags anomalies. Flags are
soft: they are logged and audited, never used to disconnect a paying
device. Token/device mismatches are hard failures and fail closed.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
from collections import OrderedDict, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from pisogate.models import DeviceAudit
from pisogate.services.ledger import SessionSnapshot
from pisogate.utils.net import is_concrete_ip, network_class

logger = logging.getLogger(__name__)

RAPID_IP_CHANGE_SECONDS = 1.0
CLIENT_ID_HEADERS = ("x-device-uuid", "x-hardware-id")


class SecurityViolation(RuntimeError):
    """Hard rejection at the request boundary.

    ``reason`` is for administrators and logs; clients only ever see a
    generic "not authorized" response.
    """

    reason = "security_violation"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason


class DeviceMismatchError(SecurityViolation):
    """A session token was presented by a device it was not issued to."""

    reason = "device_mismatch"


class SessionUnknownError(SecurityViolation):
    """A presented token matches no active session."""

    reason = "session_not_found"


class RateLimitExceeded(SecurityViolation):
    """A device exceeded its request budget and is temporarily blocked."""

    reason = "rate_limited"

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@dataclass(frozen=True)
class Anomaly:
    """Soft security flag."""

    kind: str
    detail: str


@dataclass
class FingerprintRecord:
    """In-memory behaviour history for one device-id."""

    device_id: str
    first_seen: float
    last_seen: float
    requests: deque[float] = field(default_factory=deque)
    ips: deque[tuple[str, float]] = field(default_factory=deque)
    blocked_until: float = 0.0


@dataclass
class _TokenUse:
    devices: set[str] = field(default_factory=set)
    last_ip: str | None = None
    last_access: float = 0.0


def client_device_id(headers: Mapping[str, str]) -> str | None:
    """Return the device-id the client holds itself, if it sent one."""
    for header in CLIENT_ID_HEADERS:
        value = (headers.get(header) or "").strip()
        if value:
            return value[:128]
    return None


def derive_device_id(headers: Mapping[str, str]) -> str:
    """Return a stable device-id for a portal request.

    A client-held UUID wins, then a hardware id; failing both, a digest of
    browser characteristics. The digest is shared by identical browsers and
    is only good enough for rate limiting and anomaly scoring.
    """
    held = client_device_id(headers)
    if held is not None:
        return held
    parts = [
        headers.get("user-agent") or "unknown",
        headers.get("accept-language") or "unknown",
        headers.get("x-platform") or "unknown",
        headers.get("x-screen-width") or "unknown",
        headers.get("x-screen-height") or "unknown",
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"fp-{digest[:32]}"


class SecurityGuard:
    """Rate limiting, IP consistency scoring and token validation."""

    def __init__(
        self,
        *,
        max_requests: int = 30,
        window_seconds: float = 60.0,
        block_seconds: float = 300.0,
        ip_history_size: int = 8,
        ip_window_seconds: float = 600.0,
        ip_diversity_threshold: int = 3,
        cache_size: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.ip_history_size = ip_history_size
        self.ip_window_seconds = ip_window_seconds
        self.ip_diversity_threshold = ip_diversity_threshold
        self.cache_size = cache_size
        self._clock = clock
        self._lock = threading.Lock()
        self._records: OrderedDict[str, FingerprintRecord] = OrderedDict()
        self._tokens: OrderedDict[str, _TokenUse] = OrderedDict()

    def _record(self, device_id: str, now: float) -> FingerprintRecord:
        record = self._records.get(device_id)
        if record is None:
            record = FingerprintRecord(device_id=device_id, first_seen=now, last_seen=now)
            self._records[device_id] = record
            while len(self._records) > self.cache_size:
                self._records.popitem(last=False)
        else:
            self._records.move_to_end(device_id)
        record.last_seen = now
        return record

    def fingerprint(self, device_id: str) -> FingerprintRecord | None:
        with self._lock:
            return self._records.get(device_id)

    # --- Rate limiting ---------------------------------------------------------------

    def check_rate_limit(self, device_id: str) -> None:
        """Count one request for ``device_id``.

        Raises:
            RateLimitExceeded: If the device is blocked or just exceeded
                ``max_requests`` within the sliding window.
        """
        now = self._clock()
        with self._lock:
            record = self._record(device_id, now)
            if record.blocked_until > now:
                raise RateLimitExceeded(
                    f"Device {device_id} is blocked",
                    retry_after=max(1, math.ceil(record.blocked_until - now)),
                )

            while record.requests and now - record.requests[0] >= self.window_seconds:
                record.requests.popleft()

            if len(record.requests) >= self.max_requests:
                record.blocked_until = now + self.block_seconds
                record.requests.clear()
                logger.warning(
                    "Rate limit exceeded for %s, blocking for %ss", device_id, self.block_seconds
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded for {device_id}",
                    retry_after=max(1, math.ceil(self.block_seconds)),
                )

            record.requests.append(now)

    # --- IP consistency --------------------------------------------------------------

    def observe_ip(self, device_id: str, ip: str | None) -> list[Anomaly]:
        """Record ``ip`` for the device and score it against recent history."""
        if ip is None or not is_concrete_ip(ip):
            return []
        now = self._clock()
        with self._lock:
            record = self._record(device_id, now)
            recent = [
                (seen_ip, seen_at)
                for seen_ip, seen_at in record.ips
                if now - seen_at < self.ip_window_seconds
            ]
            previous = [seen_ip for seen_ip, _ in recent]
            is_new = ip not in previous

            record.ips = deque(
                [(seen_ip, seen_at) for seen_ip, seen_at in recent if seen_ip != ip],
                maxlen=self.ip_history_size,
            )
            record.ips.append((ip, now))

        if not is_new:
            return []

        anomalies: list[Anomaly] = []
        distinct = set(previous)
        if len(distinct) >= self.ip_diversity_threshold:
            anomalies.append(
                Anomaly("high_ip_diversity", f"{len(distinct) + 1} addresses in window")
            )
        new_class = network_class(ip)
        if len(distinct) > 1 and any(network_class(p) != new_class for p in distinct):
            anomalies.append(
                Anomaly("ip_class_change", f"{ip} vs {', '.join(sorted(distinct))}")
            )
        for anomaly in anomalies:
            logger.warning("Suspicious address for %s: %s (%s)", device_id, anomaly.kind, anomaly.detail)
        return anomalies

    def screen(self, device_id: str, ip: str | None) -> list[Anomaly]:
        """Request-boundary check: rate limit, then IP consistency."""
        self.check_rate_limit(device_id)
        return self.observe_ip(device_id, ip)

    # --- Session binding -------------------------------------------------------------

    def validate_token(
        self,
        session: SessionSnapshot | None,
        *,
        device_id: str | None,
        mac: str | None,
        ip: str | None,
    ) -> list[Anomaly]:
        """Cross-check a presented token's session against the requester.

        Raises:
            SessionUnknownError: If the token matched no active session.
            DeviceMismatchError: If the session belongs to another device.
        """
        if session is None:
            raise SessionUnknownError("Session token not recognised")

        if device_id and session.device_id:
            if session.device_id != device_id:
                logger.warning(
                    "Token for session %s presented by device %s (bound to %s)",
                    session.id,
                    device_id,
                    session.device_id,
                )
                raise DeviceMismatchError("Token bound to another device")
        elif session.mac != mac or (
            is_concrete_ip(ip) and session.ip is not None and session.ip != ip
        ):
            logger.warning(
                "Token for session %s presented from %s/%s (bound to %s/%s)",
                session.id,
                mac,
                ip,
                session.mac,
                session.ip,
            )
            raise DeviceMismatchError("Token bound to another MAC/IP", reason="mac_ip_mismatch")

        return self._track_token(session.token or "", device_id or mac or "", ip)

    def _track_token(self, token: str, requester: str, ip: str | None) -> list[Anomaly]:
        now = self._clock()
        anomalies: list[Anomaly] = []
        with self._lock:
            use = self._tokens.get(token)
            if use is None:
                use = self._tokens[token] = _TokenUse()
                while len(self._tokens) > self.cache_size:
                    self._tokens.popitem(last=False)
            else:
                self._tokens.move_to_end(token)

            use.devices.add(requester)
            if len(use.devices) > 1:
                anomalies.append(
                    Anomaly("multiple_devices", f"{len(use.devices)} devices share one token")
                )
            if (
                ip
                and use.last_ip
                and use.last_ip != ip
                and now - use.last_access < RAPID_IP_CHANGE_SECONDS
            ):
                anomalies.append(Anomaly("rapid_ip_change", f"{use.last_ip} -> {ip}"))
            use.last_ip = ip or use.last_ip
            use.last_access = now

        for anomaly in anomalies:
            logger.warning("Session token anomaly: %s (%s)", anomaly.kind, anomaly.detail)
        return anomalies

    # --- Audit -----------------------------------------------------------------------

    def record_mac_change(
        self,
        db: Session,
        *,
        device_id: str,
        old_mac: str,
        new_mac: str,
        old_ip: str | None,
        new_ip: str | None,
    ) -> DeviceAudit:
        """Audit a MAC change for a device that already holds a session.

        MAC changes are allowed (privacy-randomized addresses rotate) but
        every one is recorded.
        """
        logger.info("MAC change for device %s: %s -> %s (IP %s -> %s)",
                    device_id, old_mac, new_mac, old_ip, new_ip)
        entry = DeviceAudit(
            device_id=device_id,
            event="mac_change",
            old_mac=old_mac,
            new_mac=new_mac,
            old_ip=old_ip,
            new_ip=new_ip,
        )
        db.add(entry)
        db.commit()
        return entry

    def record_anomalies(
        self,
        db: Session,
        *,
        device_id: str,
        anomalies: list[Anomaly],
        mac: str | None = None,
        ip: str | None = None,
    ) -> None:
        """Persist soft flags so administrators can review them later."""
        if not anomalies:
            return
        for anomaly in anomalies:
            db.add(
                DeviceAudit(
                    device_id=device_id,
                    event=anomaly.kind,
                    new_mac=mac,
                    new_ip=ip,
                    detail=anomaly.detail,
                )
            )
        db.commit()
