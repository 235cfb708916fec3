import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from pisogate.services.credit_spool import CreditSpool
from pisogate.services.pulse import (
    CreditDetected,
    DenominationTable,
    LineDebouncer,
    PulseAggregator,
    SerialPulseSource,
    parse_serial_message,
)

DENOMINATIONS = {1: 1, 5: 5, 10: 10}


@pytest.fixture
def table() -> DenominationTable:
    return DenominationTable(DENOMINATIONS)


@pytest.fixture
def debouncer(table: DenominationTable) -> LineDebouncer:
    return LineDebouncer("main", table, debounce_seconds=0.025, settle_seconds=0.5)


def _insert(debouncer: LineDebouncer, pulses: int, start: float = 0.0, gap: float = 0.05) -> float:
    at = start
    for i in range(pulses):
        at = start + i * gap
        assert debouncer.on_pulse(at) is None
    return at


@pytest.mark.parametrize(
    ("pulses", "amount", "calibrated"),
    [(1, 1, True), (5, 5, True), (10, 10, True), (7, 7, False), (3, 3, False)],
)
def test_settled_window_maps_to_denomination(
    debouncer: LineDebouncer, pulses: int, amount: int, calibrated: bool
) -> None:
    last = _insert(debouncer, pulses)

    assert debouncer.on_tick(last + 0.49) is None
    credit = debouncer.on_tick(last + 0.5)

    assert credit == CreditDetected("main", pulses, amount, calibrated, last + 0.5)
    assert debouncer.window is None


def test_contact_bounce_is_ignored(debouncer: LineDebouncer) -> None:
    debouncer.on_pulse(0.0)
    debouncer.on_pulse(0.01)
    debouncer.on_pulse(0.06)
    debouncer.on_pulse(0.07)

    assert debouncer.window is not None
    assert debouncer.window.pulse_count == 2
    assert debouncer.window.bounces == 2
    assert debouncer.on_tick(0.6).pulses == 2


def test_bounce_does_not_extend_the_deadline(debouncer: LineDebouncer) -> None:
    debouncer.on_pulse(0.0)
    debouncer.on_pulse(0.02)

    credit = debouncer.on_tick(0.5)

    assert credit is not None
    assert credit.pulses == 1


def test_pulse_after_deadline_settles_previous_coin(debouncer: LineDebouncer) -> None:
    _insert(debouncer, 5)

    credit = debouncer.on_pulse(2.0)

    assert credit is not None
    assert credit.amount == 5
    assert credit.detected_at == pytest.approx(0.7)
    assert debouncer.window.pulse_count == 1


def test_precounted_burst_is_never_a_bounce(debouncer: LineDebouncer) -> None:
    debouncer.on_pulse(0.0, count=5)
    debouncer.on_pulse(0.001, count=5)

    assert debouncer.close(0.1).amount == 10


def test_close_without_window(debouncer: LineDebouncer) -> None:
    assert debouncer.close(1.0) is None
    assert debouncer.on_tick(1.0) is None


def test_fallback_units_per_pulse() -> None:
    table = DenominationTable(DENOMINATIONS, fallback_units_per_pulse=2)

    assert table.amount_for(7) == (14, False)
    assert table.amount_for(5) == (5, True)
    with pytest.raises(ValueError):
        table.amount_for(0)


def test_zero_denomination_falls_back() -> None:
    table = DenominationTable({1: 0})

    assert table.amount_for(1) == (1, False)


@pytest.mark.parametrize(
    ("message", "count"),
    [("PULSE", 1), ("PULSE\r\n", 1), ("5", 5), (" 10 \n", 10), ("0", None), ("READY", None), ("", None)],
)
def test_parse_serial_message(message: str, count: int | None) -> None:
    assert parse_serial_message(message) == count


@pytest.fixture
def sink() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def aggregator(table: DenominationTable, sink: AsyncMock, spool: CreditSpool) -> PulseAggregator:
    return PulseAggregator(
        table,
        sink,
        spool=spool,
        debounce_seconds=0.0,
        settle_seconds=0.05,
    )


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_aggregator_emits_one_credit_per_coin(
    aggregator: PulseAggregator, sink: AsyncMock
) -> None:
    await aggregator.start()
    for _ in range(5):
        await aggregator.push("main")

    await _wait_for(lambda: sink.await_count == 1)
    await aggregator.stop()

    credit = sink.await_args.args[0]
    assert (credit.line_id, credit.pulses, credit.amount) == ("main", 5, 5)
    assert aggregator.credits_emitted == 1


@pytest.mark.asyncio
async def test_lines_are_aggregated_independently(
    aggregator: PulseAggregator, sink: AsyncMock
) -> None:
    await aggregator.start()
    await aggregator.push("left")
    await aggregator.push("right", count=10)

    await _wait_for(lambda: sink.await_count == 2)
    await aggregator.stop()

    credits = {call.args[0].line_id: call.args[0].amount for call in sink.await_args_list}
    assert credits == {"left": 1, "right": 10}


@pytest.mark.asyncio
async def test_stop_settles_open_windows(
    table: DenominationTable, sink: AsyncMock, spool: CreditSpool
) -> None:
    aggregator = PulseAggregator(table, sink, spool=spool, debounce_seconds=0.0, settle_seconds=30)
    await aggregator.start()
    await aggregator.push("main", count=10)

    await aggregator.stop()

    sink.assert_awaited_once()
    assert sink.await_args.args[0].amount == 10
    assert not aggregator.running


@pytest.mark.asyncio
async def test_sink_failure_spools_credit(
    aggregator: PulseAggregator, sink: AsyncMock, spool: CreditSpool
) -> None:
    sink.side_effect = RuntimeError("database is locked")
    await aggregator.start()
    await aggregator.push("main", count=5)

    await _wait_for(lambda: len(spool) == 1)
    await aggregator.stop()

    (entry,) = spool.entries()
    assert (entry.line_id, entry.amount, entry.pulses, entry.reason) == ("main", 5, 5, "sink_failed")


@pytest.mark.asyncio
async def test_feed_from_hardware_thread(aggregator: PulseAggregator, sink: AsyncMock) -> None:
    await aggregator.start()

    def hardware_callback() -> None:
        aggregator.feed_threadsafe("gpio", count=1).result(timeout=1)

    await asyncio.to_thread(hardware_callback)
    await aggregator.stop()

    assert sink.await_args.args[0].line_id == "gpio"


def test_feed_before_start_is_refused(aggregator: PulseAggregator) -> None:
    with pytest.raises(RuntimeError):
        aggregator.feed_threadsafe("main")


@pytest.mark.asyncio
async def test_push_rejects_non_positive_count(aggregator: PulseAggregator) -> None:
    with pytest.raises(ValueError):
        await aggregator.push("main", count=0)


def test_serial_lines_are_forwarded() -> None:
    aggregator = MagicMock(spec=PulseAggregator)
    source = SerialPulseSource(aggregator, "/dev/ttyUSB0")

    source.handle_line("PULSE\r\n")
    source.handle_line("noise")
    source.handle_line("5\n")

    calls = aggregator.feed_threadsafe.call_args_list
    assert [call.kwargs["count"] for call in calls] == [1, 5]
    assert all(call.args == ("serial",) for call in calls)


def test_serial_read_loop(mocker) -> None:
    aggregator = MagicMock(spec=PulseAggregator)
    source = SerialPulseSource(aggregator, "/dev/ttyUSB0", line_id="usb")
    lines = [b"PULSE\r\n", b"", b"10\r\n"]

    def readline() -> bytes:
        if not lines:
            source._stopping.set()
            return b""
        return lines.pop(0)

    serial_cls = mocker.patch("pisogate.services.pulse.serial.Serial")
    serial_cls.return_value.__enter__.return_value.readline.side_effect = readline

    source._read_loop()

    serial_cls.assert_called_once_with(port="/dev/ttyUSB0", baudrate=115200, timeout=0.3)
    counts = [call.kwargs["count"] for call in aggregator.feed_threadsafe.call_args_list]
    assert counts == [1, 10]
