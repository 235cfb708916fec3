"""Routing of detected coin credit to the device that paid it."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from pisogate.services.credit_spool import CreditSpool, SpooledCredit, spool_entry
from pisogate.services.ledger import (
    InvalidCreditError,
    LedgerError,
    SessionLedger,
    SessionSnapshot,
)
from pisogate.services.pulse import CreditDetected
from pisogate.utils.net import normalize_mac

logger = logging.getLogger(__name__)

MAX_REPLAY_ATTEMPTS = 5


class CreditError(RuntimeError):
    """Base exception for credit routing failures."""


class CoinSlotBusyError(CreditError):
    """Raised when another device holds the coin line."""

    def __init__(self, line_id: str, retry_after: int) -> None:
        super().__init__(f"Coin slot {line_id} is in use")
        self.line_id = line_id
        self.retry_after = retry_after


@dataclass
class SlotClaim:
    line_id: str
    mac: str
    ip: str | None
    device_id: str | None
    expires_at: float


class CreditRouter:
    """Hands credit from a coin line to the device that claimed it.

    Credit nobody claimed is spooled against its line and credited to the
    next device that claims that line. Credit the ledger refused is
    spooled with its device and replayed later.
    """

    def __init__(
        self,
        ledger: SessionLedger,
        spool: CreditSpool,
        *,
        claim_seconds: float = 60.0,
        max_replay_attempts: int = MAX_REPLAY_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ledger = ledger
        self.spool = spool
        self.claim_seconds = claim_seconds
        self.max_replay_attempts = max(1, max_replay_attempts)
        self._clock = clock
        self._lock = threading.Lock()
        self._claims: dict[str, SlotClaim] = {}

    def claim(
        self,
        line_id: str,
        mac: str,
        *,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> tuple[SlotClaim, list[SessionSnapshot]]:
        """Reserve ``line_id`` for a device.

        Returns the claim and any sessions produced by crediting spooled,
        unassigned coins on that line.

        Raises:
            CoinSlotBusyError: If another device holds an unexpired claim.
        """
        key = normalize_mac(mac)
        now = self._clock()
        with self._lock:
            current = self._claims.get(line_id)
            if current is not None and current.mac != key and current.expires_at > now:
                raise CoinSlotBusyError(line_id, max(1, int(current.expires_at - now)))
            claim = SlotClaim(
                line_id=line_id,
                mac=key,
                ip=ip,
                device_id=device_id,
                expires_at=now + self.claim_seconds,
            )
            self._claims[line_id] = claim

        logger.info("Coin slot %s claimed by %s", line_id, key)
        applied = []
        for entry in self.spool.take_unassigned(line_id):
            snapshot = self._apply_spooled(entry, key, ip=ip, device_id=device_id)
            if snapshot is not None:
                applied.append(snapshot)
        return claim, applied

    def release(self, line_id: str, mac: str) -> bool:
        key = normalize_mac(mac)
        with self._lock:
            current = self._claims.get(line_id)
            if current is None or current.mac != key:
                return False
            del self._claims[line_id]
        logger.info("Coin slot %s released by %s", line_id, key)
        return True

    def active_claim(self, line_id: str) -> SlotClaim | None:
        now = self._clock()
        with self._lock:
            claim = self._claims.get(line_id)
            if claim is not None and claim.expires_at <= now:
                del self._claims[line_id]
                return None
            return claim

    def claims(self) -> list[SlotClaim]:
        now = self._clock()
        with self._lock:
            return [claim for claim in self._claims.values() if claim.expires_at > now]

    async def handle(self, credit: CreditDetected) -> SessionSnapshot | None:
        """Credit sink for the pulse aggregator."""
        claim = self.active_claim(credit.line_id)
        if claim is None:
            await asyncio.to_thread(
                self.spool.append,
                spool_entry(
                    credit.line_id,
                    credit.amount,
                    credit.pulses,
                    reason="unassigned",
                ),
            )
            return None

        try:
            snapshot = await asyncio.to_thread(
                self.ledger.apply_credit,
                claim.mac,
                credit.amount,
                ip=claim.ip,
                device_id=claim.device_id,
            )
        except (LedgerError, SQLAlchemyError) as exc:
            logger.error("Ledger refused credit for %s: %s", claim.mac, exc, exc_info=True)
            await asyncio.to_thread(
                self.spool.append,
                spool_entry(
                    credit.line_id,
                    credit.amount,
                    credit.pulses,
                    reason="ledger_failed",
                    mac=claim.mac,
                    ip=claim.ip,
                    device_id=claim.device_id,
                ),
            )
            return None

        with self._lock:
            # Each coin keeps the slot open for the paying device.
            claim.expires_at = self._clock() + self.claim_seconds
        return snapshot

    def apply_webhook(
        self,
        mac: str,
        amount: int,
        *,
        ip: str | None = None,
        device_id: str | None = None,
    ) -> SessionSnapshot:
        """Apply credit reported by a networked coin module."""
        return self.ledger.apply_credit(mac, amount, ip=ip, device_id=device_id)

    def replay_spool(self) -> int:
        """Apply spooled credit whose device is known. Returns entries applied.

        Transient ledger failures are retried on every call. Credit the
        ledger rejects as invalid is set aside once it has failed
        ``max_replay_attempts`` times.
        """
        replayed = 0
        for entry in self.spool.assigned():
            mac = entry.mac
            if mac is None:
                continue
            try:
                self.ledger.apply_credit(mac, entry.amount, ip=entry.ip, device_id=entry.device_id)
            except InvalidCreditError as exc:
                logger.warning("Spooled credit %s rejected by the ledger: %s", entry.id, exc)
                failed = self.spool.record_failure(entry.id, str(exc))
                if failed is not None and failed.attempts >= self.max_replay_attempts:
                    self.spool.set_aside(entry.id, reason="invalid_credit")
                continue
            except (LedgerError, SQLAlchemyError) as exc:
                logger.warning("Spooled credit %s still not applied: %s", entry.id, exc)
                self.spool.record_failure(entry.id, str(exc))
                continue
            logger.info("Applied spooled credit %s (%s) to %s", entry.id, entry.amount, mac)
            self.spool.remove(entry.id)
            replayed += 1
        return replayed

    def _apply_spooled(
        self,
        entry: SpooledCredit,
        mac: str,
        *,
        ip: str | None,
        device_id: str | None,
    ) -> SessionSnapshot | None:
        try:
            snapshot = self.ledger.apply_credit(mac, entry.amount, ip=ip, device_id=device_id)
        except (LedgerError, SQLAlchemyError) as exc:
            logger.warning("Unclaimed credit %s not applied to %s: %s", entry.id, mac, exc)
            self.spool.append(
                spool_entry(
                    entry.line_id,
                    entry.amount,
                    entry.pulses,
                    reason="ledger_failed",
                    mac=mac,
                    ip=ip,
                    device_id=device_id,
                    detected_at=entry.detected_at,
                )
            )
            return None
        logger.info("Applied spooled credit %s (%s) to %s", entry.id, entry.amount, mac)
        return snapshot
