"""Enforcement synchronizer: mirrors active sessions into the packet filter.

The synchronizer is the only writer of enforcement state. Every write
goes through one lock, in submission order, so grant and revoke rules
never interleave. Backends make ``grant`` and ``revoke`` idempotent:
granting an existing binding and revoking an absent one both succeed.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from pisogate.utils.net import clean_ip, normalize_mac

logger = logging.getLogger(__name__)

NAT_CHAIN = "PISOGATE_PORTAL"
FILTER_CHAIN = "PISOGATE_CLIENTS"
_MAX_DUPLICATE_RULES = 16


class EnforcementError(RuntimeError):
    """Raised when the packet-filter subsystem rejects or fails a command."""


class EnforcementTimeoutError(EnforcementError):
    """Raised when a packet-filter command does not finish in time."""


class EnforcementAction(Enum):
    GRANT = "grant"
    REVOKE = "revoke"


@dataclass(frozen=True)
class Binding:
    """Allow fact for one device, optionally scoped to a concrete IP."""

    mac: str
    ip: str | None = None

    @classmethod
    def of(cls, mac: str, ip: str | None) -> Binding:
        return cls(mac=normalize_mac(mac), ip=clean_ip(ip))


@dataclass(frozen=True)
class EnforcementOp:
    action: EnforcementAction
    binding: Binding


@dataclass
class EnforcementStats:
    applied: int = 0
    failed: int = 0
    retries: int = 0
    reconciliations: int = 0
    last_error: str | None = None


class EnforcementBackend(ABC):
    """Narrow interface over the host's packet filter."""

    @abstractmethod
    async def grant(self, binding: Binding) -> None:
        """Allow traffic for ``binding``; succeed if already allowed."""

    @abstractmethod
    async def revoke(self, binding: Binding) -> None:
        """Remove the allow rules for ``binding``; succeed if already absent."""

    @abstractmethod
    async def reset(self) -> None:
        """Remove every binding this backend has ever installed."""


class MemoryBackend(EnforcementBackend):
    """In-process backend used for simulation and tests."""

    def __init__(self) -> None:
        self.bindings: set[Binding] = set()
        self.history: list[tuple[str, Binding | None]] = []

    async def grant(self, binding: Binding) -> None:
        self.history.append(("grant", binding))
        self.bindings.add(binding)

    async def revoke(self, binding: Binding) -> None:
        self.history.append(("revoke", binding))
        self.bindings.discard(binding)

    async def reset(self) -> None:
        self.history.append(("reset", None))
        self.bindings.clear()


class IptablesBackend(EnforcementBackend):
    """Backend that manages allow rules in dedicated iptables chains.

    Client rules live in ``PISOGATE_PORTAL`` (nat) and ``PISOGATE_CLIENTS``
    (filter). Both chains are jumped to from position 1 of PREROUTING and
    FORWARD, ahead of the portal redirect and any default-deny rule, so
    rule order inside them never matters and ``reset`` is a chain flush.
    """

    def __init__(self, binary: str = "iptables", *, timeout_seconds: float = 5.0) -> None:
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self._chains_ready = False

    @staticmethod
    def _rule(binding: Binding) -> list[str]:
        rule = ["-m", "mac", "--mac-source", binding.mac]
        if binding.ip:
            rule += ["-s", binding.ip]
        return rule + ["-j", "ACCEPT"]

    @staticmethod
    def _targets() -> list[tuple[str, str, str]]:
        return [("nat", "PREROUTING", NAT_CHAIN), ("filter", "FORWARD", FILTER_CHAIN)]

    async def _run(self, *args: str) -> tuple[int, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                "-w",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EnforcementError(f"Cannot run {self.binary}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise EnforcementTimeoutError(
                f"{self.binary} {' '.join(args)} timed out after {self.timeout_seconds}s"
            ) from exc
        return proc.returncode or 0, stderr.decode(errors="replace").strip()

    async def _check(self, *args: str) -> None:
        code, stderr = await self._run(*args)
        if code != 0:
            raise EnforcementError(f"{self.binary} {' '.join(args)} failed ({code}): {stderr}")

    async def _exists(self, table: str, chain: str, rule: list[str]) -> bool:
        code, _ = await self._run("-t", table, "-C", chain, *rule)
        return code == 0

    async def _ensure_chains(self) -> None:
        if self._chains_ready:
            return
        for table, parent, chain in self._targets():
            code, _ = await self._run("-t", table, "-L", chain, "-n")
            if code != 0:
                await self._check("-t", table, "-N", chain)
            if not await self._exists(table, parent, ["-j", chain]):
                await self._check("-t", table, "-I", parent, "1", "-j", chain)
        self._chains_ready = True

    async def grant(self, binding: Binding) -> None:
        await self._ensure_chains()
        rule = self._rule(binding)
        for table, _, chain in self._targets():
            if not await self._exists(table, chain, rule):
                await self._check("-t", table, "-A", chain, *rule)

    async def revoke(self, binding: Binding) -> None:
        await self._ensure_chains()
        rule = self._rule(binding)
        for table, _, chain in self._targets():
            for _ in range(_MAX_DUPLICATE_RULES):
                if not await self._exists(table, chain, rule):
                    break
                await self._check("-t", table, "-D", chain, *rule)

    async def reset(self) -> None:
        self._chains_ready = False
        await self._ensure_chains()
        for table, _, chain in self._targets():
            await self._check("-t", table, "-F", chain)


def build_backend(name: str, *, binary: str = "iptables", timeout_seconds: float = 5.0) -> EnforcementBackend:
    """Return the backend configured by ``ENFORCEMENT_BACKEND``."""
    if name == "iptables":
        return IptablesBackend(binary, timeout_seconds=timeout_seconds)
    if name == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown enforcement backend: {name!r}")


@dataclass
class ReconcileReport:
    granted: int = 0
    failed: list[Binding] = field(default_factory=list)


class EnforcementSynchronizer:
    """Serializes grant/revoke operations against one backend.

    ``submit_grant`` and ``submit_revoke`` are safe to call from any thread
    and never block; a worker task applies them in order with bounded
    retries and exponential backoff. An operation that still fails marks
    the synchronizer ``dirty`` so the next reconciliation repairs drift.
    """

    def __init__(
        self,
        backend: EnforcementBackend,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 30.0,
    ) -> None:
        self.backend = backend
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.stats = EnforcementStats()
        self.dirty = False
        self._write_lock = asyncio.Lock()
        self._backlog: deque[EnforcementOp] = deque()
        self._queue: asyncio.Queue[EnforcementOp] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task[None] | None = None

    # --- Submission (thread-safe) ----------------------------------------------------

    def submit_grant(self, mac: str, ip: str | None) -> None:
        self._submit(EnforcementOp(EnforcementAction.GRANT, Binding.of(mac, ip)))

    def submit_revoke(self, mac: str, ip: str | None) -> None:
        self._submit(EnforcementOp(EnforcementAction.REVOKE, Binding.of(mac, ip)))

    def _submit(self, op: EnforcementOp) -> None:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            self._backlog.append(op)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            queue.put_nowait(op)
        else:
            loop.call_soon_threadsafe(queue.put_nowait, op)

    @property
    def pending(self) -> int:
        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._backlog)

    # --- Lifecycle -------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background worker, draining ops submitted before start."""
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        while self._backlog:
            self._queue.put_nowait(self._backlog.popleft())
        self._task = asyncio.create_task(self._run())

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Stop the worker after giving queued operations a chance to finish."""
        if self._task is None:
            return
        if self._queue is not None:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except TimeoutError:
                logger.warning("Stopping enforcement with %d ops pending", self._queue.qsize())
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        if self._queue is not None:
            while not self._queue.empty():
                self._backlog.append(self._queue.get_nowait())
        self._queue = None
        self._loop = None

    async def drain(self) -> None:
        """Wait until every submitted operation has been attempted."""
        if self._queue is not None:
            await self._queue.join()

    async def _run(self) -> None:
        queue = self._queue
        if queue is None:
            return
        while True:
            op = await queue.get()
            try:
                await self.apply(op)
            finally:
                queue.task_done()

    # --- Direct operations -----------------------------------------------------------

    async def grant(self, mac: str, ip: str | None = None) -> bool:
        return await self.apply(EnforcementOp(EnforcementAction.GRANT, Binding.of(mac, ip)))

    async def revoke(self, mac: str, ip: str | None = None) -> bool:
        return await self.apply(EnforcementOp(EnforcementAction.REVOKE, Binding.of(mac, ip)))

    async def apply(self, op: EnforcementOp) -> bool:
        """Apply one operation with retries; return False if it never succeeded."""
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._write_lock:
                    if op.action is EnforcementAction.GRANT:
                        await self.backend.grant(op.binding)
                    else:
                        await self.backend.revoke(op.binding)
            except EnforcementError as exc:
                self.stats.last_error = str(exc)
                logger.warning(
                    "Enforcement %s for %s failed (attempt %d/%d): %s",
                    op.action.value,
                    op.binding.mac,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                if attempt == self.max_attempts:
                    break
                self.stats.retries += 1
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_backoff_seconds)
                continue

            self.stats.applied += 1
            logger.info("Enforcement %s applied for %s", op.action.value, op.binding.mac)
            return True

        self.stats.failed += 1
        self.dirty = True
        logger.error(
            "Giving up on enforcement %s for %s; reconciliation will retry",
            op.action.value,
            op.binding.mac,
        )
        return False

    async def reconcile(
        self, load_active: Callable[[], Iterable[tuple[str, str | None]]]
    ) -> ReconcileReport:
        """Rebuild enforcement state from the ledger's active sessions.

        ``load_active`` is called in a worker thread once the write lock is
        held, so no grant can land between reading the ledger and clearing
        leftover state. Every active binding is then granted again. Queued
        operations wait until the pass finishes.
        """
        report = ReconcileReport()
        async with self._write_lock:
            active = await asyncio.to_thread(load_active)
            bindings = [Binding.of(mac, ip) for mac, ip in active]
            try:
                await self.backend.reset()
            except EnforcementError as exc:
                self.dirty = True
                self.stats.last_error = str(exc)
                logger.error("Enforcement reset failed: %s", exc)
                report.failed.extend(bindings)
                return report

            for binding in bindings:
                try:
                    await self.backend.grant(binding)
                    report.granted += 1
                except EnforcementError as exc:
                    self.stats.last_error = str(exc)
                    logger.warning("Reconcile grant for %s failed: %s", binding.mac, exc)
                    report.failed.append(binding)

        self.dirty = bool(report.failed)
        self.stats.reconciliations += 1
        logger.info(
            "Reconciled enforcement: %d granted, %d failed", report.granted, len(report.failed)
        )
        return report
