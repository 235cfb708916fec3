"""Session ledger: the single source of truth for paid network time.

The ledger owns every transition of a device session::

    none -> active -> expired | revoked

Mutations are serialized per device key (the normalized MAC address) so
that concurrent credit for one device never loses an update while
different devices never contend. Packet-filter changes are handed to an
enforcement sink only after the ledger's own commit, so enforcement can
lag but never overrule the ledger.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from pisogate.core.security import generate_session_token
from pisogate.db.time import from_epoch
from pisogate.models import (
    SESSION_STATE_ACTIVE,
    SESSION_STATE_EXPIRED,
    SESSION_STATE_REVOKED,
    SYNC_KIND_SALE,
    WifiSession,
)
from pisogate.services.rates import RateQuote, RateTable
from pisogate.utils.net import clean_ip, normalize_mac

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Base exception for ledger failures."""


class InvalidCreditError(LedgerError):
    """Raised when a credit amount or device key is unusable."""


class SessionNotFoundError(LedgerError):
    """Raised when an operation needs an active session and none exists."""


class EnforcementSink(Protocol):
    """Receiver of grant/revoke intents produced by ledger transitions."""

    def submit_grant(self, mac: str, ip: str | None) -> None: ...

    def submit_revoke(self, mac: str, ip: str | None) -> None: ...


class SaleRecorder(Protocol):
    """Durable outbox for completed sales."""

    def enqueue(self, kind: str, payload: dict[str, Any], db: Session | None = None) -> str: ...


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of a session row."""

    id: int
    mac: str
    ip: str | None
    device_id: str | None
    state: str
    remaining_seconds: int
    total_paid: int
    download_limit: int
    upload_limit: int
    token: str | None
    connected_at: datetime
    last_seen: datetime
    end_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == SESSION_STATE_ACTIVE and self.remaining_seconds > 0

    @classmethod
    def from_model(cls, row: WifiSession, remaining_seconds: int | None = None) -> SessionSnapshot:
        return cls(
            id=row.id,
            mac=row.mac,
            ip=row.ip,
            device_id=row.device_id,
            state=row.state,
            remaining_seconds=(
                row.remaining_seconds if remaining_seconds is None else remaining_seconds
            ),
            total_paid=row.total_paid,
            download_limit=row.download_limit,
            upload_limit=row.upload_limit,
            token=row.token,
            connected_at=row.connected_at,
            last_seen=row.last_seen,
            end_reason=row.end_reason,
        )


class DeviceLocks:
    """Registry of per-device mutexes that are discarded once unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list[Any]] = {}

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        # Sorted acquisition keeps multi-key holders deadlock free.
        ordered = sorted(set(keys))
        entries = []
        with self._guard:
            for key in ordered:
                entry = self._locks.setdefault(key, [threading.Lock(), 0])
                entry[1] += 1
                entries.append((key, entry))
        acquired = []
        try:
            for _, entry in entries:
                entry[0].acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry[0].release()
            with self._guard:
                for key, entry in entries:
                    entry[1] -= 1
                    if entry[1] == 0:
                        self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class _NullSink:
    def submit_grant(self, mac: str, ip: str | None) -> None:
        logger.debug("No enforcement sink; grant for %s not forwarded", mac)

    def submit_revoke(self, mac: str, ip: str | None) -> None:
        logger.debug("No enforcement sink; revoke for %s not forwarded", mac)


class SessionLedger:
    """Authoritative store of device sessions and their remaining time."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        rates: RateTable,
        *,
        enforcement: EnforcementSink | None = None,
        sales: SaleRecorder | None = None,
        machine_id: str = "pisogate-local",
        sweep_batch_size: int = 500,
        ended_retention_seconds: int = 7 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self._rates = rates
        self._enforcement: EnforcementSink = enforcement or _NullSink()
        self._sales = sales
        self._machine_id = machine_id
        self._sweep_batch_size = max(1, sweep_batch_size)
        self._ended_retention_seconds = ended_retention_seconds
        self._clock = clock
        self._locks = DeviceLocks()

    def attach_enforcement(self, enforcement: EnforcementSink) -> None:
        self._enforcement = enforcement

    # --- Credit ----------------------------------------------------------------------

    def apply_credit(
        self,
        mac: str,
        amount: int,
        *,
        ip: str | None = None,
        device_id: str | None = None,
        source: str = "coin_insert",
    ) -> SessionSnapshot:
        """Convert ``amount`` through the rate table and credit the device.

        Creates a new active session or extends the existing one. The sale
        is written to the telemetry outbox in the same transaction.
        """
        if amount <= 0:
            raise InvalidCreditError("Credit amount must be positive")
        return self._credit(
            mac,
            paid=amount,
            quote_for=lambda db: self._rates.quote(amount, db),
            ip=ip,
            device_id=device_id,
            source=source,
        )

    def start_session(
        self,
        mac: str,
        minutes: int,
        pesos: int = 0,
        *,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> SessionSnapshot:
        """Grant ``minutes`` directly, as an administrator would."""
        if minutes <= 0 or pesos < 0:
            raise InvalidCreditError("Minutes must be positive and pesos non-negative")
        quote = RateQuote(pesos=pesos, minutes=minutes)
        return self._credit(
            mac,
            paid=pesos,
            quote_for=lambda db: quote,
            ip=ip,
            device_id=device_id,
            source="admin_grant",
        )

    def _credit(
        self,
        mac: str,
        *,
        paid: int,
        quote_for: Callable[[Session], RateQuote],
        ip: str | None,
        device_id: str | None,
        source: str,
    ) -> SessionSnapshot:
        key = self._device_key(mac)
        ip = clean_ip(ip)
        now = self._clock()
        grants: list[tuple[str, str | None]] = []
        revokes: list[tuple[str, str | None]] = []

        with self._locks.hold(key), self._session_factory() as db:
            quote = quote_for(db)
            row = self._active_row(db, key)
            if row is not None and self._charge_elapsed(row, now):
                # Ran out before this credit arrived; it starts a new session.
                self._end(row, SESSION_STATE_EXPIRED, "expired", now)
                revokes.append((row.mac, row.ip))
                row = None

            if row is None:
                row = WifiSession(
                    mac=key,
                    ip=ip,
                    device_id=device_id,
                    state=SESSION_STATE_ACTIVE,
                    remaining_seconds=quote.seconds,
                    total_paid=paid,
                    download_limit=quote.download_limit,
                    upload_limit=quote.upload_limit,
                    token=generate_session_token(device_id or key, ip),
                    connected_at=from_epoch(now),
                    last_seen=from_epoch(now),
                    timer_anchor=now,
                )
                db.add(row)
                grants.append((key, ip))
                created = True
            else:
                row.remaining_seconds += quote.seconds
                row.total_paid += paid
                row.last_seen = from_epoch(now)
                if device_id and not row.device_id:
                    row.device_id = device_id
                if ip and ip != row.ip:
                    revokes.append((key, row.ip))
                    grants.append((key, ip))
                    row.ip = ip
                created = False

            if self._sales is not None and paid > 0:
                self._sales.enqueue(
                    SYNC_KIND_SALE,
                    {
                        "machine_id": self._machine_id,
                        "amount": paid,
                        "type": source,
                        "timestamp": from_epoch(now).isoformat(),
                        "minutes": quote.minutes,
                        "mac": key,
                    },
                    db=db,
                )
            db.commit()
            snapshot = SessionSnapshot.from_model(row)

        logger.info(
            "%s session for %s: +%ss (paid %s), remaining %ss",
            "Created" if created else "Extended",
            key,
            quote.seconds,
            paid,
            snapshot.remaining_seconds,
        )
        self._hand_off(grants=grants, revokes=revokes)
        return snapshot

    # --- Queries ---------------------------------------------------------------------

    def get_status(self, mac: str) -> SessionSnapshot | None:
        """Return the device's active session as of now, without mutating it."""
        key = self._device_key(mac)
        with self._session_factory() as db:
            row = self._active_row(db, key)
            return self._projected(row) if row is not None else None

    def find_by_token(self, token: str) -> SessionSnapshot | None:
        with self._session_factory() as db:
            row = db.scalars(
                select(WifiSession).where(
                    WifiSession.token == token,
                    WifiSession.state == SESSION_STATE_ACTIVE,
                )
            ).first()
            return self._projected(row) if row is not None else None

    def find_by_device_id(self, device_id: str) -> SessionSnapshot | None:
        with self._session_factory() as db:
            row = db.scalars(
                select(WifiSession)
                .where(
                    WifiSession.device_id == device_id,
                    WifiSession.state == SESSION_STATE_ACTIVE,
                )
                .order_by(WifiSession.id.desc())
            ).first()
            return self._projected(row) if row is not None else None

    def list_sessions(self, *, include_ended: bool = False) -> list[SessionSnapshot]:
        with self._session_factory() as db:
            stmt = select(WifiSession).order_by(WifiSession.id)
            if not include_ended:
                stmt = stmt.where(WifiSession.state == SESSION_STATE_ACTIVE)
            return [self._projected(row) for row in db.scalars(stmt)]

    def active_count(self) -> int:
        with self._session_factory() as db:
            return int(
                db.scalar(
                    select(func.count())
                    .select_from(WifiSession)
                    .where(
                        WifiSession.state == SESSION_STATE_ACTIVE,
                        WifiSession.remaining_seconds > 0,
                    )
                )
                or 0
            )

    def active_bindings(self) -> list[tuple[str, str | None]]:
        """Return ``(mac, ip)`` for every session that should pass traffic."""
        now = self._clock()
        with self._session_factory() as db:
            rows = db.scalars(
                select(WifiSession).where(WifiSession.state == SESSION_STATE_ACTIVE)
            ).all()
            return [
                (row.mac, row.ip) for row in rows if self._remaining_at(row, now) > 0
            ]

    # --- Termination -----------------------------------------------------------------

    def expire_sweep(self, now: float | None = None) -> list[SessionSnapshot]:
        """Charge elapsed wall time to active sessions and expire those at zero.

        Only rows in the active state are visited, least recently charged
        first, at most ``sweep_batch_size`` per call. Each row is re-read
        under its device lock, so a concurrent extension is never
        overwritten. Running the sweep twice for the same instant charges
        nothing the second time, and an expired row is never revisited, so
        revocation is handed off exactly once.
        """
        now = self._clock() if now is None else now
        expired: list[SessionSnapshot] = []

        with self._session_factory() as db:
            candidates = db.execute(
                select(WifiSession.id, WifiSession.mac)
                .where(WifiSession.state == SESSION_STATE_ACTIVE)
                .order_by(WifiSession.timer_anchor)
                .limit(self._sweep_batch_size)
            ).all()

            for session_id, mac in candidates:
                with self._locks.hold(mac):
                    row = db.get(WifiSession, session_id, populate_existing=True)
                    if row is None or row.state != SESSION_STATE_ACTIVE:
                        continue
                    if self._charge_elapsed(row, now):
                        self._end(row, SESSION_STATE_EXPIRED, "expired", now)
                        expired.append(SessionSnapshot.from_model(row))
                    if db.is_modified(row):
                        db.commit()

        for snapshot in expired:
            logger.info("Session %s for %s expired", snapshot.id, snapshot.mac)
        self._hand_off(revokes=[(s.mac, s.ip) for s in expired])
        return expired

    def revoke(self, mac: str, reason: str = "admin") -> SessionSnapshot:
        """Terminate the device's active session immediately."""
        key = self._device_key(mac)
        now = self._clock()
        with self._locks.hold(key), self._session_factory() as db:
            row = self._active_row(db, key)
            if row is None:
                raise SessionNotFoundError(f"No active session for {key}")
            self._charge_elapsed(row, now)
            self._end(row, SESSION_STATE_REVOKED, reason, now)
            db.commit()
            snapshot = SessionSnapshot.from_model(row)

        logger.info("Session %s for %s revoked (%s)", snapshot.id, key, reason)
        self._hand_off(revokes=[(snapshot.mac, snapshot.ip)])
        return snapshot

    def rebind_mac(
        self,
        old_mac: str,
        new_mac: str,
        *,
        ip: str | None = None,
    ) -> SessionSnapshot:
        """Move an active session to a new MAC address.

        Used when a device rotates a privacy-randomized MAC. If the new
        address already holds its own active session, that session wins and
        nothing moves.
        """
        old_key = self._device_key(old_mac)
        new_key = self._device_key(new_mac)
        ip = clean_ip(ip)
        if old_key == new_key:
            status = self.get_status(new_key)
            if status is None:
                raise SessionNotFoundError(f"No active session for {new_key}")
            return status

        with self._locks.hold(old_key, new_key), self._session_factory() as db:
            existing = self._active_row(db, new_key)
            if existing is not None:
                return self._projected(existing)
            row = self._active_row(db, old_key)
            if row is None:
                raise SessionNotFoundError(f"No active session for {old_key}")
            old_ip = row.ip
            row.mac = new_key
            if ip:
                row.ip = ip
            row.last_seen = from_epoch(self._clock())
            db.commit()
            snapshot = self._projected(row)

        logger.info("Session %s moved from %s to %s", snapshot.id, old_key, new_key)
        self._hand_off(
            revokes=[(old_key, old_ip)],
            grants=[(new_key, snapshot.ip)],
        )
        return snapshot

    def purge_ended(self, now: float | None = None) -> int:
        """Delete ended sessions older than the retention window."""
        now = self._clock() if now is None else now
        cutoff = now - self._ended_retention_seconds
        with self._session_factory() as db:
            result = db.execute(
                delete(WifiSession).where(
                    WifiSession.state != SESSION_STATE_ACTIVE,
                    WifiSession.ended_at < cutoff,
                )
            )
            db.commit()
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d ended sessions", purged)
        return purged

    # --- Internals -------------------------------------------------------------------

    @staticmethod
    def _device_key(mac: str) -> str:
        try:
            return normalize_mac(mac)
        except ValueError as exc:
            raise InvalidCreditError(str(exc)) from exc

    @staticmethod
    def _active_row(db: Session, mac: str) -> WifiSession | None:
        return db.scalars(
            select(WifiSession).where(
                WifiSession.mac == mac,
                WifiSession.state == SESSION_STATE_ACTIVE,
            )
        ).first()

    @staticmethod
    def _remaining_at(row: WifiSession, now: float) -> int:
        elapsed = max(0, int(now - row.timer_anchor))
        return max(0, row.remaining_seconds - elapsed)

    def _projected(self, row: WifiSession) -> SessionSnapshot:
        remaining = row.remaining_seconds
        if row.state == SESSION_STATE_ACTIVE:
            remaining = self._remaining_at(row, self._clock())
        return SessionSnapshot.from_model(row, remaining_seconds=remaining)

    @staticmethod
    def _charge_elapsed(row: WifiSession, now: float) -> bool:
        """Deduct whole seconds elapsed since the anchor; return True at zero."""
        elapsed = int(now - row.timer_anchor)
        if elapsed < 0:
            # Wall clock stepped backwards; restart accounting from here.
            row.timer_anchor = now
        elif elapsed > 0:
            row.remaining_seconds = max(0, row.remaining_seconds - elapsed)
            row.timer_anchor += elapsed
        return row.remaining_seconds <= 0

    @staticmethod
    def _end(row: WifiSession, state: str, reason: str, now: float) -> None:
        row.state = state
        row.end_reason = reason
        row.ended_at = now

    def _hand_off(
        self,
        *,
        grants: list[tuple[str, str | None]] | None = None,
        revokes: list[tuple[str, str | None]] | None = None,
    ) -> None:
        for mac, ip in revokes or []:
            self._enforcement.submit_revoke(mac, ip)
        for mac, ip in grants or []:
            self._enforcement.submit_grant(mac, ip)
