from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from pisogate.models import (
    SESSION_STATE_ACTIVE,
    SESSION_STATE_EXPIRED,
    SESSION_STATE_REVOKED,
    SyncItem,
    WifiSession,
)
from pisogate.services.ledger import (
    InvalidCreditError,
    SessionLedger,
    SessionNotFoundError,
)
from pisogate.services.rates import RateTable
from tests.conftest import FakeClock, RecordingSink

MAC = "AA:BB:CC:DD:EE:01"
OTHER_MAC = "AA:BB:CC:DD:EE:02"


def _rows(session_factory: sessionmaker[Session], mac: str) -> list[WifiSession]:
    with session_factory() as db:
        return list(
            db.scalars(select(WifiSession).where(WifiSession.mac == mac).order_by(WifiSession.id))
        )


def test_five_pesos_buys_thirty_minutes_with_one_grant(
    ledger: SessionLedger,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    snapshot = ledger.apply_credit(MAC, 5, ip="10.0.0.5")

    assert snapshot.remaining_seconds == 1800
    assert snapshot.state == SESSION_STATE_ACTIVE
    assert snapshot.total_paid == 5
    assert snapshot.token and len(snapshot.token) == 64
    assert sink.grants == [(MAC, "10.0.0.5")]
    assert sink.revokes == []

    with session_factory() as db:
        sale = db.scalars(select(SyncItem)).one()
    assert sale.kind == "sale"
    assert sale.payload["amount"] == 5
    assert sale.payload["machine_id"] == "test-machine"
    assert sale.payload["type"] == "coin_insert"
    assert sale.payload["minutes"] == 30
    assert sale.retry_count == 0


def test_extension_adds_time_without_regranting(ledger: SessionLedger, sink: RecordingSink) -> None:
    ledger.apply_credit(MAC, 5, ip="10.0.0.5")
    snapshot = ledger.apply_credit(MAC, 1, ip="10.0.0.5")

    assert snapshot.remaining_seconds == 1800 + 600
    assert snapshot.total_paid == 6
    assert sink.grants == [(MAC, "10.0.0.5")]


def test_unknown_amount_uses_fallback_minutes(ledger: SessionLedger) -> None:
    snapshot = ledger.apply_credit(MAC, 3)

    assert snapshot.remaining_seconds == 3 * 10 * 60


def test_mac_is_normalized_to_one_device_key(ledger: SessionLedger) -> None:
    ledger.apply_credit("aa-bb-cc-dd-ee-01", 1)
    snapshot = ledger.apply_credit("aabbccddee01", 1)

    assert snapshot.mac == MAC
    assert snapshot.remaining_seconds == 1200


@pytest.mark.parametrize("amount", [0, -5])
def test_non_positive_credit_is_rejected(ledger: SessionLedger, amount: int) -> None:
    with pytest.raises(InvalidCreditError):
        ledger.apply_credit(MAC, amount)


def test_invalid_mac_is_rejected(ledger: SessionLedger) -> None:
    with pytest.raises(InvalidCreditError):
        ledger.apply_credit("not-a-mac", 5)


def test_concurrent_credit_for_one_device_loses_no_updates(
    ledger: SessionLedger,
    sink: RecordingSink,
) -> None:
    workers = 16
    barrier = threading.Barrier(workers)

    def insert_coin() -> None:
        barrier.wait()
        ledger.apply_credit(MAC, 1)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        for future in [pool.submit(insert_coin) for _ in range(workers)]:
            future.result()

    status = ledger.get_status(MAC)
    assert status is not None
    assert status.remaining_seconds == workers * 600
    assert status.total_paid == workers
    assert len(sink.grants) == 1


def test_concurrent_credit_for_different_devices(ledger: SessionLedger) -> None:
    macs = [f"AA:BB:CC:DD:EE:{i:02X}" for i in range(4)]

    def insert_coins(mac: str) -> None:
        for amount in (1, 5, 10):
            ledger.apply_credit(mac, amount)

    with ThreadPoolExecutor(max_workers=len(macs)) as pool:
        for future in [pool.submit(insert_coins, mac) for mac in macs]:
            future.result()

    for mac in macs:
        status = ledger.get_status(mac)
        assert status is not None
        assert status.remaining_seconds == (10 + 30 + 75) * 60


def test_get_status_projects_without_mutating(
    ledger: SessionLedger,
    clock: FakeClock,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 5)
    clock.advance(100)

    status = ledger.get_status(MAC)

    assert status is not None
    assert status.remaining_seconds == 1700
    assert _rows(session_factory, MAC)[0].remaining_seconds == 1800


def test_get_status_for_unknown_device(ledger: SessionLedger) -> None:
    assert ledger.get_status(OTHER_MAC) is None


def test_sweep_is_idempotent_for_the_same_instant(
    ledger: SessionLedger,
    clock: FakeClock,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 5)
    now = clock.advance(100)

    assert ledger.expire_sweep(now) == []
    assert ledger.expire_sweep(now) == []

    row = _rows(session_factory, MAC)[0]
    assert row.remaining_seconds == 1700
    assert sink.revokes == []


def test_expiry_revokes_exactly_once(
    ledger: SessionLedger,
    clock: FakeClock,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 5, ip="10.0.0.5")
    now = clock.advance(1800)

    expired = ledger.expire_sweep(now)

    assert [s.mac for s in expired] == [MAC]
    assert sink.revokes == [(MAC, "10.0.0.5")]
    row = _rows(session_factory, MAC)[0]
    assert row.state == SESSION_STATE_EXPIRED
    assert row.remaining_seconds == 0
    assert row.end_reason == "expired"

    assert ledger.expire_sweep(now) == []
    assert ledger.expire_sweep(clock.advance(60)) == []
    assert sink.revokes == [(MAC, "10.0.0.5")]


def test_sweep_charges_elapsed_time_incrementally(
    ledger: SessionLedger,
    clock: FakeClock,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 1)
    for _ in range(5):
        ledger.expire_sweep(clock.advance(1.5))

    # 7.5 seconds elapsed; only whole seconds are charged.
    assert _rows(session_factory, MAC)[0].remaining_seconds == 600 - 7
    assert ledger.get_status(MAC).remaining_seconds == 600 - 7


def test_extension_between_sweeps_is_not_overwritten(
    ledger: SessionLedger,
    clock: FakeClock,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 5)
    now = clock.advance(10)
    ledger.apply_credit(MAC, 5)
    ledger.expire_sweep(now)

    assert _rows(session_factory, MAC)[0].remaining_seconds == 1800 - 10 + 1800


def test_expired_session_is_never_resurrected(
    ledger: SessionLedger,
    clock: FakeClock,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    first = ledger.apply_credit(MAC, 1)
    ledger.expire_sweep(clock.advance(600))

    second = ledger.apply_credit(MAC, 1)

    assert second.id != first.id
    assert second.remaining_seconds == 600
    assert second.total_paid == 1
    states = [row.state for row in _rows(session_factory, MAC)]
    assert states == [SESSION_STATE_EXPIRED, SESSION_STATE_ACTIVE]
    assert len(sink.grants) == 2


def test_credit_after_unswept_expiry_starts_new_session(
    ledger: SessionLedger,
    clock: FakeClock,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    first = ledger.apply_credit(MAC, 1, ip="10.0.0.5")
    clock.advance(900)

    second = ledger.apply_credit(MAC, 5, ip="10.0.0.5")

    assert second.id != first.id
    assert second.remaining_seconds == 1800
    assert sink.revokes == [(MAC, "10.0.0.5")]
    assert sink.grants == [(MAC, "10.0.0.5"), (MAC, "10.0.0.5")]
    assert ledger.expire_sweep() == []


def test_ip_change_on_extension_moves_binding(ledger: SessionLedger, sink: RecordingSink) -> None:
    ledger.apply_credit(MAC, 1, ip="10.0.0.5")
    snapshot = ledger.apply_credit(MAC, 1, ip="10.0.0.9")

    assert snapshot.ip == "10.0.0.9"
    assert sink.revokes == [(MAC, "10.0.0.5")]
    assert sink.grants == [(MAC, "10.0.0.5"), (MAC, "10.0.0.9")]


def test_sweep_cost_is_bounded_per_call(
    session_factory: sessionmaker[Session],
    rates: RateTable,
    sink: RecordingSink,
    clock: FakeClock,
) -> None:
    ledger = SessionLedger(session_factory, rates, enforcement=sink, sweep_batch_size=2, clock=clock)
    for i in range(3):
        ledger.apply_credit(f"AA:BB:CC:DD:EE:1{i}", 1)
    now = clock.advance(600)

    assert len(ledger.expire_sweep(now)) == 2
    assert len(ledger.expire_sweep(now)) == 1
    assert len(sink.revokes) == 3


def test_clock_stepping_backwards_charges_nothing(
    ledger: SessionLedger,
    clock: FakeClock,
    session_factory: sessionmaker[Session],
) -> None:
    ledger.apply_credit(MAC, 1)
    ledger.expire_sweep(clock.advance(-30))
    ledger.expire_sweep(clock.advance(10))

    assert _rows(session_factory, MAC)[0].remaining_seconds == 590


def test_revoke_ends_session_and_hands_off(
    ledger: SessionLedger,
    clock: FakeClock,
    sink: RecordingSink,
) -> None:
    ledger.apply_credit(MAC, 5, ip="10.0.0.5")
    clock.advance(60)

    revoked = ledger.revoke(MAC, reason="abuse")

    assert revoked.state == SESSION_STATE_REVOKED
    assert revoked.end_reason == "abuse"
    assert revoked.remaining_seconds == 1740
    assert sink.revokes == [(MAC, "10.0.0.5")]
    assert ledger.get_status(MAC) is None
    assert ledger.expire_sweep(clock.advance(3600)) == []
    assert len(sink.revokes) == 1


def test_revoke_without_session_raises(ledger: SessionLedger) -> None:
    with pytest.raises(SessionNotFoundError):
        ledger.revoke(MAC)


def test_admin_start_session_grants_minutes(
    ledger: SessionLedger,
    sink: RecordingSink,
    session_factory: sessionmaker[Session],
) -> None:
    snapshot = ledger.start_session(MAC, 45, ip="10.0.0.7")

    assert snapshot.remaining_seconds == 45 * 60
    assert snapshot.total_paid == 0
    assert sink.grants == [(MAC, "10.0.0.7")]
    with session_factory() as db:
        # Free grants are not sales.
        assert db.scalars(select(SyncItem)).all() == []


def test_rate_speed_limits_are_copied_onto_session(
    ledger: SessionLedger,
    rates: RateTable,
    db_session: Session,
) -> None:
    rate = next(r for r in rates.list_rates(db_session) if r.pesos == 10)
    rates.update_rate(db_session, rate.id, download_limit=2048, upload_limit=512)

    snapshot = ledger.apply_credit(MAC, 10)
    rates.update_rate(db_session, rate.id, download_limit=1)

    assert snapshot.download_limit == 2048
    assert ledger.get_status(MAC).download_limit == 2048
    assert snapshot.upload_limit == 512


def test_rebind_mac_moves_session(ledger: SessionLedger, sink: RecordingSink) -> None:
    original = ledger.apply_credit(MAC, 5, ip="10.0.0.5", device_id="dev-1")

    moved = ledger.rebind_mac(MAC, OTHER_MAC, ip="10.0.0.6")

    assert moved.id == original.id
    assert moved.mac == OTHER_MAC
    assert ledger.get_status(MAC) is None
    assert ledger.find_by_device_id("dev-1").mac == OTHER_MAC
    assert sink.revokes == [(MAC, "10.0.0.5")]
    assert sink.grants[-1] == (OTHER_MAC, "10.0.0.6")


def test_rebind_keeps_existing_session_on_new_mac(ledger: SessionLedger) -> None:
    ledger.apply_credit(MAC, 1)
    existing = ledger.apply_credit(OTHER_MAC, 5)

    result = ledger.rebind_mac(MAC, OTHER_MAC)

    assert result.id == existing.id
    assert ledger.get_status(MAC) is not None


def test_find_by_token(ledger: SessionLedger) -> None:
    snapshot = ledger.apply_credit(MAC, 1)

    assert ledger.find_by_token(snapshot.token).id == snapshot.id
    assert ledger.find_by_token("0" * 64) is None


def test_active_bindings_exclude_logically_expired(ledger: SessionLedger, clock: FakeClock) -> None:
    ledger.apply_credit(MAC, 1, ip="10.0.0.5")
    clock.advance(300)
    ledger.apply_credit(OTHER_MAC, 5, ip="10.0.0.6")
    clock.advance(400)

    assert ledger.active_bindings() == [(OTHER_MAC, "10.0.0.6")]


def test_purge_ended_removes_old_history(
    session_factory: sessionmaker[Session],
    rates: RateTable,
    clock: FakeClock,
) -> None:
    ledger = SessionLedger(session_factory, rates, ended_retention_seconds=3600, clock=clock)
    ledger.apply_credit(MAC, 1)
    ledger.apply_credit(OTHER_MAC, 10)
    ledger.expire_sweep(clock.advance(600))

    assert ledger.purge_ended(clock.advance(60)) == 0
    assert ledger.purge_ended(clock.advance(3600)) == 1
    assert _rows(session_factory, MAC) == []
    assert len(ledger.list_sessions(include_ended=True)) == 1
