"""Coin acceptor pulse aggregation.

A coin acceptor reports a coin as a burst of electrical pulses. Each
coin line gets its own task that folds pulses into a window and, after
``settle`` seconds of silence, emits exactly one :class:`CreditDetected`.
Pulses closer than ``debounce`` seconds to the previous one are contact
bounce and are ignored.

Hardware callbacks run on foreign threads; they hand events over through
:meth:`PulseAggregator.feed_threadsafe` into a bounded queue.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass

import serial

from pisogate.services.credit_spool import CreditSpool, spool_entry

logger = logging.getLogger(__name__)

SERIAL_BAUD_RATE = 115200
SERIAL_PULSE_MESSAGE = "PULSE"


@dataclass(frozen=True)
class PulseEvent:
    """Raw pulse(s) observed on one coin line.

    ``count`` above one is a burst already counted by an upstream coin
    module; such events are never treated as contact bounce.
    """

    line_id: str
    timestamp: float
    count: int = 1


@dataclass(frozen=True)
class CreditDetected:
    """A settled pulse window converted to currency units."""

    line_id: str
    pulses: int
    amount: int
    calibrated: bool
    detected_at: float


@dataclass
class PulseWindow:
    """Open accumulation window for one coin line."""

    line_id: str
    pulse_count: int
    window_deadline: float
    last_pulse_at: float
    bounces: int = 0


class DenominationTable:
    """Maps settled pulse counts to currency units.

    Counts missing from the calibration table fall back to
    ``count * fallback_units_per_pulse`` so uncalibrated hardware still
    credits the customer.
    """

    def __init__(self, denominations: Mapping[int, int], fallback_units_per_pulse: int = 1) -> None:
        self._denominations = {int(k): int(v) for k, v in denominations.items()}
        self.fallback_units_per_pulse = max(1, fallback_units_per_pulse)

    def amount_for(self, pulses: int) -> tuple[int, bool]:
        """Return ``(amount, calibrated)`` for a settled pulse count."""
        if pulses <= 0:
            raise ValueError("Pulse count must be positive")
        amount = self._denominations.get(pulses)
        if amount is not None and amount > 0:
            return amount, True
        return pulses * self.fallback_units_per_pulse, False

    def as_dict(self) -> dict[int, int]:
        return dict(self._denominations)


class LineDebouncer:
    """Window state machine for a single coin line.

    Pure and clock-free: callers pass timestamps in and get settled
    credits out, which keeps the timing rules testable without sleeping.
    """

    def __init__(
        self,
        line_id: str,
        table: DenominationTable,
        *,
        debounce_seconds: float,
        settle_seconds: float,
    ) -> None:
        self.line_id = line_id
        self.table = table
        self.debounce_seconds = debounce_seconds
        self.settle_seconds = settle_seconds
        self.window: PulseWindow | None = None

    def on_pulse(self, timestamp: float, count: int = 1) -> CreditDetected | None:
        """Fold a pulse into the window.

        Returns the previous window's credit when this pulse arrives after
        that window had already settled.
        """
        settled = None
        window = self.window
        if window is not None and timestamp >= window.window_deadline:
            settled = self.close(window.window_deadline)
            window = None

        if window is None:
            self.window = PulseWindow(
                line_id=self.line_id,
                pulse_count=count,
                window_deadline=timestamp + self.settle_seconds,
                last_pulse_at=timestamp,
            )
            return settled

        if count == 1 and timestamp - window.last_pulse_at < self.debounce_seconds:
            window.bounces += 1
            return settled

        window.pulse_count += count
        window.last_pulse_at = timestamp
        window.window_deadline = timestamp + self.settle_seconds
        return settled

    def on_tick(self, now: float) -> CreditDetected | None:
        """Close the window once its settle deadline has passed."""
        if self.window is not None and now >= self.window.window_deadline:
            return self.close(now)
        return None

    def close(self, now: float) -> CreditDetected | None:
        window, self.window = self.window, None
        if window is None or window.pulse_count <= 0:
            return None
        amount, calibrated = self.table.amount_for(window.pulse_count)
        if not calibrated:
            logger.warning(
                "Uncalibrated pulse count %d on line %s, crediting %d by fallback",
                window.pulse_count,
                self.line_id,
                amount,
            )
        if window.bounces:
            logger.debug("Ignored %d bounce pulses on line %s", window.bounces, self.line_id)
        return CreditDetected(
            line_id=self.line_id,
            pulses=window.pulse_count,
            amount=amount,
            calibrated=calibrated,
            detected_at=now,
        )


CreditSink = Callable[[CreditDetected], Awaitable[None]]


class PulseAggregator:
    """Routes pulse events to per-line debounce tasks and emits credits."""

    def __init__(
        self,
        table: DenominationTable,
        sink: CreditSink,
        *,
        spool: CreditSpool,
        debounce_seconds: float = 0.025,
        settle_seconds: float = 0.5,
        queue_size: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.table = table
        self._sink = sink
        self._spool = spool
        self.debounce_seconds = debounce_seconds
        self.settle_seconds = settle_seconds
        self._clock = clock
        self._queue: asyncio.Queue[PulseEvent | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._lines: dict[str, tuple[asyncio.Queue[PulseEvent | None], asyncio.Task[None]]] = {}
        self._task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.credits_emitted = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the dispatcher task."""

        if self._task is None or self._task.done():
            self._loop = asyncio.get_running_loop()
            self._task = asyncio.create_task(self._dispatch())

    async def stop(self) -> None:
        """Settle every open window, emit its credit and stop."""

        if self._task is None:
            return

        await self._queue.put(None)
        await self._task
        self._task = None

    async def push(self, line_id: str, *, count: int = 1, timestamp: float | None = None) -> None:
        if count <= 0:
            raise ValueError("Pulse count must be positive")
        event = PulseEvent(line_id, self._clock() if timestamp is None else timestamp, count)
        await self._queue.put(event)

    def feed_threadsafe(self, line_id: str, *, count: int = 1) -> Future[None]:
        """Submit a pulse from a hardware thread.

        The returned future completes once the event is queued; waiting on
        it applies backpressure when the queue is full.
        """
        if self._loop is None:
            raise RuntimeError("PulseAggregator is not running")
        return asyncio.run_coroutine_threadsafe(self.push(line_id, count=count), self._loop)

    async def _dispatch(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                break
            inbox = self._line_inbox(event.line_id)
            await inbox.put(event)

        for inbox, _ in self._lines.values():
            await inbox.put(None)
        await asyncio.gather(*(task for _, task in self._lines.values()))
        self._lines.clear()

    def _line_inbox(self, line_id: str) -> asyncio.Queue[PulseEvent | None]:
        entry = self._lines.get(line_id)
        if entry is None or entry[1].done():
            inbox: asyncio.Queue[PulseEvent | None] = asyncio.Queue()
            task = asyncio.create_task(self._drive_line(line_id, inbox))
            entry = (inbox, task)
            self._lines[line_id] = entry
        return entry[0]

    async def _drive_line(self, line_id: str, inbox: asyncio.Queue[PulseEvent | None]) -> None:
        debouncer = LineDebouncer(
            line_id,
            self.table,
            debounce_seconds=self.debounce_seconds,
            settle_seconds=self.settle_seconds,
        )
        while True:
            window = debouncer.window
            try:
                if window is None:
                    event = await inbox.get()
                else:
                    timeout = max(0.0, window.window_deadline - self._clock())
                    event = await asyncio.wait_for(inbox.get(), timeout=timeout)
            except TimeoutError:
                await self._emit(debouncer.on_tick(self._clock()))
                continue

            if event is None:
                await self._emit(debouncer.close(self._clock()))
                return
            await self._emit(debouncer.on_pulse(event.timestamp, event.count))

    async def _emit(self, credit: CreditDetected | None) -> None:
        if credit is None:
            return
        self.credits_emitted += 1
        logger.info(
            "Credit detected on line %s: %d pulses -> %d", credit.line_id, credit.pulses, credit.amount
        )
        try:
            await self._sink(credit)
        except Exception as exc:
            # The coin is already in the box; keep the credit for replay.
            logger.error("Credit sink failed for line %s: %s", credit.line_id, exc, exc_info=True)
            await asyncio.to_thread(
                self._spool.append,
                spool_entry(
                    credit.line_id,
                    credit.amount,
                    credit.pulses,
                    reason="sink_failed",
                ),
            )


def parse_serial_message(message: str) -> int | None:
    """Return the pulse count carried by one coin module line, if any."""
    message = message.strip()
    if message == SERIAL_PULSE_MESSAGE:
        return 1
    if message.isdigit():
        count = int(message)
        return count if count > 0 else None
    return None


class SerialPulseSource:
    """Reads pulse reports from a USB/serial coin module on a daemon thread."""

    def __init__(
        self,
        aggregator: PulseAggregator,
        port: str,
        *,
        line_id: str = "serial",
        baudrate: int = SERIAL_BAUD_RATE,
    ) -> None:
        self.aggregator = aggregator
        self.port = port
        self.line_id = line_id
        self.baudrate = baudrate
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._read_loop, name="serial-pulses", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stopping.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _read_loop(self) -> None:
        try:
            with serial.Serial(port=self.port, baudrate=self.baudrate, timeout=0.3) as port:
                logger.info("Listening for coin pulses on %s", self.port)
                while not self._stopping.is_set():
                    raw = port.readline()
                    if raw:
                        self.handle_line(raw.decode("ascii", errors="ignore"))
        except serial.SerialException as exc:
            logger.error("Serial coin module on %s failed: %s", self.port, exc)

    def handle_line(self, message: str) -> None:
        count = parse_serial_message(message)
        if count is None:
            logger.debug("Ignoring serial message %r", message)
            return
        self.aggregator.feed_threadsafe(self.line_id, count=count).result()
