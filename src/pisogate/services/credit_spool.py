"""Durable spool for coin credit that has not reached the ledger yet.

Money physically received must never vanish. Credit is spooled when the
ledger fails or when nobody has claimed the coin line; spooled entries
are replayed by the sweeper or handed to the next device that claims the
line. The spool is a JSON-lines file rewritten atomically on each change.
Entries that can never be applied are moved to a sibling "rejected" file
for an operator to settle by hand.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpooledCredit:
    """One unit of unapplied credit."""

    line_id: str
    amount: int
    pulses: int
    detected_at: float
    mac: str | None = None
    ip: str | None = None
    device_id: str | None = None
    reason: str = "unassigned"
    attempts: int = 0
    last_error: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def assigned(self) -> bool:
        return self.mac is not None


def _atomic_write(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp = path.with_suffix(path.suffix + ".tmp")
    with temp.open("wb") as handle:
        handle.write(payload)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(temp, path)


class CreditSpool:
    """Thread-safe JSON-lines store of :class:`SpooledCredit` entries."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    @property
    def rejected_path(self) -> Path:
        return self.path.with_name(f"{self.path.stem}.rejected{self.path.suffix}")

    def _load(self, path: Path | None = None) -> list[SpooledCredit]:
        path = path or self.path
        if not path.exists():
            return []
        entries: list[SpooledCredit] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
            if not line.strip():
                continue
            try:
                entries.append(SpooledCredit(**json.loads(line)))
            except (ValueError, TypeError) as exc:
                logger.error(
                    "Unreadable credit spool line %d in %s: %s", number, path, exc,
                    exc_info=True,
                )
        return entries

    def _save(self, entries: list[SpooledCredit], path: Path | None = None) -> None:
        body = "".join(json.dumps(asdict(entry), sort_keys=True) + "\n" for entry in entries)
        _atomic_write(path or self.path, body.encode("utf-8"))

    def append(self, credit: SpooledCredit) -> SpooledCredit:
        with self._lock:
            entries = self._load()
            entries.append(credit)
            self._save(entries)
        logger.warning(
            "Spooled %s credit of %s on line %s (%s)",
            "assigned" if credit.assigned else "unassigned",
            credit.amount,
            credit.line_id,
            credit.reason,
        )
        return credit

    def entries(self) -> list[SpooledCredit]:
        with self._lock:
            return self._load()

    def assigned(self) -> list[SpooledCredit]:
        return [entry for entry in self.entries() if entry.assigned]

    def remove(self, credit_id: str) -> bool:
        with self._lock:
            entries = self._load()
            kept = [entry for entry in entries if entry.id != credit_id]
            if len(kept) == len(entries):
                return False
            self._save(kept)
            return True

    def record_failure(self, credit_id: str, error: str) -> SpooledCredit | None:
        """Count one failed replay of an entry and return the updated entry."""
        with self._lock:
            entries = self._load()
            for index, entry in enumerate(entries):
                if entry.id == credit_id:
                    entries[index] = replace(entry, attempts=entry.attempts + 1, last_error=error)
                    self._save(entries)
                    return entries[index]
            return None

    def set_aside(self, credit_id: str, reason: str) -> SpooledCredit | None:
        """Move an entry from the replay spool to the rejected file."""
        with self._lock:
            entries = self._load()
            found = next((entry for entry in entries if entry.id == credit_id), None)
            if found is None:
                return None
            parked = replace(found, reason=reason)
            self._save([*self._load(self.rejected_path), parked], self.rejected_path)
            self._save([entry for entry in entries if entry.id != credit_id])
        logger.error(
            "Set aside spooled credit %s of %s for %s after %d attempts: %s (%s)",
            parked.id,
            parked.amount,
            parked.mac,
            parked.attempts,
            reason,
            parked.last_error,
        )
        return parked

    def rejected(self) -> list[SpooledCredit]:
        with self._lock:
            return self._load(self.rejected_path)

    def take_unassigned(self, line_id: str) -> list[SpooledCredit]:
        """Remove and return unclaimed credit detected on ``line_id``."""
        with self._lock:
            entries = self._load()
            taken = [e for e in entries if not e.assigned and e.line_id == line_id]
            if taken:
                self._save([e for e in entries if e not in taken])
            return taken

    def __len__(self) -> int:
        return len(self.entries())


def spool_entry(
    line_id: str,
    amount: int,
    pulses: int,
    *,
    reason: str,
    mac: str | None = None,
    ip: str | None = None,
    device_id: str | None = None,
    detected_at: float | None = None,
) -> SpooledCredit:
    return SpooledCredit(
        line_id=line_id,
        amount=amount,
        pulses=pulses,
        detected_at=time.time() if detected_at is None else detected_at,
        mac=mac,
        ip=ip,
        device_id=device_id,
        reason=reason,
    )
