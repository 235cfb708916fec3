"""Upstream telemetry: durable sync queue, HTTP client and background worker.

Sales and heartbeats are always written to the local ``sync_item`` table
first and only then attempted upstream. Items leave the queue once the
collector accepts them or once they exhaust their retry budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pisogate.core.settings import Settings, settings
from pisogate.db.time import from_epoch
from pisogate.models import SYNC_KIND_SALE, SYNC_KIND_STATUS, SyncItem

logger = logging.getLogger(__name__)

HTTP_CONFLICT = 409
HTTP_INTERNAL_SERVER_ERROR = 500

CPU_TEMPERATURE_PATH = Path("/sys/class/thermal/thermal_zone0/temp")


class TelemetryError(RuntimeError):
    """Base exception raised for upstream delivery failures."""


class TelemetryDisabledError(TelemetryError):
    """Raised when delivery is attempted while telemetry is not configured."""


@dataclass(frozen=True)
class TelemetryConfig:
    """Immutable configuration for upstream delivery."""

    enabled: bool
    base_url: str | None
    api_key: str | None
    machine_id: str
    timeout_seconds: float


def load_telemetry_config(config: Settings | None = None) -> TelemetryConfig:
    """Build configuration object from settings."""

    config = config or settings
    return TelemetryConfig(
        enabled=config.telemetry_configured,
        base_url=config.telemetry_base_url,
        api_key=config.telemetry_api_key,
        machine_id=config.machine_id,
        timeout_seconds=float(config.telemetry_http_timeout_seconds),
    )


class TelemetryClient:
    """HTTP client wrapper for the upstream collector."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self.config = config or load_telemetry_config()
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.base_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise TelemetryDisabledError("Telemetry is not enabled")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.base_url or "",
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                )
        return self._client

    def _build_headers(self, *, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {"X-Machine-Id": self.config.machine_id}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, path: str, payload: dict[str, Any], *, idempotency_key: str) -> bool:
        client = await self._ensure_client()
        try:
            response = await client.post(
                path,
                json=payload,
                headers=self._build_headers(idempotency_key=idempotency_key),
            )
        except httpx.HTTPError as exc:
            raise TelemetryError(f"Telemetry request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            raise TelemetryError(f"Collector responded with {response.status_code}")
        # A conflict means the collector already holds this item id.
        if response.is_success or response.status_code == HTTP_CONFLICT:
            return True
        logger.warning("Collector rejected %s (%s): %s", path, response.status_code, response.text)
        return False

    async def send_transaction(self, payload: dict[str, Any], *, idempotency_key: str) -> bool:
        """POST a completed sale. Returns True once the collector accepted it."""
        return await self._post("/transactions", payload, idempotency_key=idempotency_key)

    async def send_heartbeat(self, payload: dict[str, Any], *, idempotency_key: str) -> bool:
        """POST a liveness heartbeat."""
        return await self._post("/heartbeat", payload, idempotency_key=idempotency_key)

    async def deliver(self, kind: str, item_id: str, payload: dict[str, Any]) -> bool:
        if kind == SYNC_KIND_SALE:
            return await self.send_transaction(payload, idempotency_key=item_id)
        if kind == SYNC_KIND_STATUS:
            return await self.send_heartbeat(payload, idempotency_key=item_id)
        raise TelemetryError(f"Unknown sync item kind: {kind}")

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""

        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


@dataclass
class FlushReport:
    """Outcome of one pass over the sync queue."""

    attempted: int = 0
    delivered: int = 0
    failed: int = 0
    unreachable: int = 0
    dropped: list[str] = field(default_factory=list)


class SyncQueue:
    """Durable FIFO of telemetry items backed by the ``sync_item`` table."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        max_retries: int = 5,
        batch_size: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self.max_retries = max(1, max_retries)
        self.batch_size = max(1, batch_size)
        self._clock = clock
        self._flush_lock = asyncio.Lock()
        self._listeners: list[Callable[[], None]] = []

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register a callback fired after each enqueue."""
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in self._listeners:
            callback()

    def enqueue(self, kind: str, payload: dict[str, Any], db: Session | None = None) -> str:
        """Persist an item and return its id.

        When ``db`` is given the item joins the caller's transaction and
        becomes durable with the caller's commit.
        """
        item_id = uuid.uuid4().hex
        item = SyncItem(
            id=item_id,
            kind=kind,
            payload=dict(payload),
            created_at=self._clock(),
            retry_count=0,
        )
        if db is not None:
            db.add(item)
            self._notify()
            return item_id

        with self._session_factory() as own:
            own.add(item)
            own.commit()
        self._notify()
        return item_id

    def pending_count(self) -> int:
        with self._session_factory() as db:
            return int(db.scalar(select(func.count()).select_from(SyncItem)) or 0)

    def items(self) -> list[SyncItem]:
        with self._session_factory() as db:
            rows = db.scalars(select(SyncItem).order_by(SyncItem.seq)).all()
            db.expunge_all()
            return list(rows)

    async def flush(self, client: TelemetryClient) -> FlushReport:
        """Attempt every queued item once, oldest first.

        Nothing is attempted while the client is disabled; items keep their
        retry counters untouched until an upstream is configured.
        """
        report = FlushReport()
        if not client.enabled:
            return report

        async with self._flush_lock:
            last_seq = 0
            while True:
                with self._session_factory() as db:
                    batch = db.execute(
                        select(SyncItem.seq, SyncItem.id, SyncItem.kind, SyncItem.payload)
                        .where(SyncItem.seq > last_seq)
                        .order_by(SyncItem.seq)
                        .limit(self.batch_size)
                    ).all()
                if not batch:
                    break

                for seq, item_id, kind, payload in batch:
                    last_seq = seq
                    report.attempted += 1
                    try:
                        accepted = await client.deliver(kind, item_id, payload)
                    except TelemetryDisabledError:
                        return report
                    except TelemetryError as exc:
                        logger.warning("Telemetry delivery of %s failed: %s", item_id, exc)
                        report.unreachable += 1
                        accepted = False

                    if accepted:
                        self._remove(seq)
                        report.delivered += 1
                    elif self._record_failure(seq, item_id):
                        report.dropped.append(item_id)
                    else:
                        report.failed += 1

        if report.attempted:
            logger.info(
                "Telemetry flush: %d delivered, %d pending retry, %d dropped",
                report.delivered,
                report.failed,
                len(report.dropped),
            )
        return report

    def _remove(self, seq: int) -> None:
        with self._session_factory() as db:
            db.execute(delete(SyncItem).where(SyncItem.seq == seq))
            db.commit()

    def _record_failure(self, seq: int, item_id: str) -> bool:
        """Increment the retry counter; drop the item at the ceiling."""
        with self._session_factory() as db:
            row = db.get(SyncItem, seq)
            if row is None:
                return False
            row.retry_count += 1
            if row.retry_count >= self.max_retries:
                logger.warning(
                    "Dropping %s item %s after %d failed attempts",
                    row.kind,
                    item_id,
                    row.retry_count,
                )
                db.delete(row)
                db.commit()
                return True
            db.commit()
            return False


def read_cpu_temperature(path: Path = CPU_TEMPERATURE_PATH) -> float | None:
    """Return the SoC temperature in degrees Celsius, if the board exposes it."""
    try:
        raw = path.read_text(encoding="utf-8").strip()
        return round(int(raw) / 1000.0, 1)
    except (OSError, ValueError):
        return None


class TelemetryWorker:
    """Periodically enqueues heartbeats and flushes the sync queue."""

    def __init__(
        self,
        queue: SyncQueue,
        client: TelemetryClient,
        *,
        metrics: Callable[[], dict[str, Any]] | None = None,
        flush_interval_seconds: float = 30.0,
        heartbeat_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.queue = queue
        self.client = client
        self._metrics = metrics or (lambda: {})
        self.flush_interval_seconds = max(0.1, flush_interval_seconds)
        self.heartbeat_interval_seconds = max(0.1, heartbeat_interval_seconds)
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._wake = asyncio.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._last_heartbeat: float | None = None
        self._last_flush: float | None = None
        # None until the first pass has talked to the upstream.
        self.upstream_reachable: bool | None = None
        self._started_at = clock()
        self._tick_seconds = min(self.flush_interval_seconds, self.heartbeat_interval_seconds)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background delivery loop."""

        if not self.client.enabled:
            logger.info("Telemetry not configured; sales stay queued locally")
            return

        if self._task is None or self._task.done():
            self._stopping.clear()
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background delivery loop."""

        if self._task is None:
            return

        self._stopping.set()
        self._wake.set()
        await self._task
        self._task = None
        self._loop = None
        await self.client.close()

    def notify_enqueued(self) -> None:
        """Deliver a freshly queued item promptly while the upstream is up.

        While the last pass could not reach the upstream, new items wait
        for the fixed flush interval so that a burst of sales does not
        spend the retry budget of older ones.
        """
        if self.upstream_reachable is False:
            return
        self.notify_online()

    def notify_online(self) -> None:
        """Trigger an immediate flush, e.g. once connectivity is confirmed.

        Safe to call from any thread.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._wake.set()
        else:
            loop.call_soon_threadsafe(self._wake.set)

    def collect_metrics(self) -> dict[str, Any]:
        metrics = {
            "uptime_seconds": int(self._clock() - self._started_at),
            "cpu_temperature": read_cpu_temperature(),
            "queued_items": self.queue.pending_count(),
        }
        metrics.update(self._metrics())
        return metrics

    def enqueue_heartbeat(self, status: str = "online") -> str:
        return self.queue.enqueue(
            SYNC_KIND_STATUS,
            {
                "machine_id": self.client.config.machine_id,
                "status": status,
                "timestamp": from_epoch(time.time()).isoformat(),
                "metrics": self.collect_metrics(),
            },
        )

    def stats(self) -> dict[str, Any]:
        return {
            "configured": self.client.enabled,
            "machine_id": self.client.config.machine_id,
            "heartbeat_active": self.running,
            "queued_items": self.queue.pending_count(),
        }

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                now = self._clock()
                if (
                    self._last_heartbeat is None
                    or now - self._last_heartbeat >= self.heartbeat_interval_seconds
                ):
                    await asyncio.to_thread(self.enqueue_heartbeat)
                    self._last_heartbeat = now
                woken = self._wake.is_set()
                self._wake.clear()
                if (
                    woken
                    or self._last_flush is None
                    or now - self._last_flush >= self.flush_interval_seconds
                ):
                    self._last_flush = now
                    report = await self.queue.flush(self.client)
                    if report.attempted:
                        self.upstream_reachable = report.delivered > 0 or not report.unreachable
            except (SQLAlchemyError, OSError, ValueError, TypeError, KeyError) as exc:
                logger.error("TelemetryWorker encountered an error: %s", exc, exc_info=True)

            if self._stopping.is_set():
                break
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._tick_seconds)
            except TimeoutError:
                pass
