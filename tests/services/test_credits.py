import pytest

from pisogate.services.credit_spool import CreditSpool, spool_entry
from pisogate.services.credits import CoinSlotBusyError, CreditRouter
from pisogate.services.ledger import LedgerError, SessionLedger
from pisogate.services.pulse import CreditDetected
from tests.conftest import FakeClock, RecordingSink

MAC = "AA:BB:CC:DD:EE:01"
OTHER_MAC = "AA:BB:CC:DD:EE:02"


def _coin(amount: int, line_id: str = "main") -> CreditDetected:
    return CreditDetected(
        line_id=line_id, pulses=amount, amount=amount, calibrated=True, detected_at=1.0
    )


@pytest.fixture
def slot_clock() -> FakeClock:
    return FakeClock(start=500.0)


@pytest.fixture
def router(ledger: SessionLedger, spool: CreditSpool, slot_clock: FakeClock) -> CreditRouter:
    return CreditRouter(ledger, spool, claim_seconds=60, clock=slot_clock)


def test_claim_is_exclusive_until_it_expires(router: CreditRouter, slot_clock: FakeClock) -> None:
    router.claim("main", MAC, ip="10.0.0.5")
    slot_clock.advance(20)

    with pytest.raises(CoinSlotBusyError) as exc_info:
        router.claim("main", OTHER_MAC)
    assert exc_info.value.retry_after == 40

    slot_clock.advance(41)
    claim, _ = router.claim("main", OTHER_MAC)
    assert claim.mac == OTHER_MAC


def test_same_device_may_reclaim(router: CreditRouter) -> None:
    router.claim("main", MAC)
    claim, applied = router.claim("main", MAC.lower())

    assert claim.mac == MAC
    assert applied == []
    assert len(router.claims()) == 1


def test_release_only_by_holder(router: CreditRouter) -> None:
    router.claim("main", MAC)

    assert router.release("main", OTHER_MAC) is False
    assert router.release("main", MAC) is True
    assert router.active_claim("main") is None


def test_lines_are_claimed_independently(router: CreditRouter) -> None:
    router.claim("left", MAC)
    router.claim("right", OTHER_MAC)

    assert {c.line_id: c.mac for c in router.claims()} == {"left": MAC, "right": OTHER_MAC}


@pytest.mark.asyncio
async def test_claimed_coin_credits_the_claimant(
    router: CreditRouter, ledger: SessionLedger, sink: RecordingSink, slot_clock: FakeClock
) -> None:
    router.claim("main", MAC, ip="10.0.0.5", device_id="dev-1")
    slot_clock.advance(50)

    snapshot = await router.handle(_coin(5))

    assert snapshot is not None
    assert snapshot.remaining_seconds == 1800
    assert snapshot.device_id == "dev-1"
    assert sink.grants == [(MAC, "10.0.0.5")]
    # The coin extended the claim.
    assert router.active_claim("main").expires_at == slot_clock.now + 60


@pytest.mark.asyncio
async def test_unclaimed_coin_is_spooled_then_handed_to_next_claimant(
    router: CreditRouter, ledger: SessionLedger, spool: CreditSpool
) -> None:
    assert await router.handle(_coin(5)) is None
    assert [(e.amount, e.reason, e.assigned) for e in spool.entries()] == [(5, "unassigned", False)]

    _, applied = router.claim("main", MAC)

    assert [s.remaining_seconds for s in applied] == [1800]
    assert len(spool) == 0
    assert ledger.get_status(MAC).total_paid == 5


@pytest.mark.asyncio
async def test_unclaimed_coin_stays_on_its_line(router: CreditRouter, spool: CreditSpool) -> None:
    await router.handle(_coin(1, line_id="left"))

    _, applied = router.claim("right", MAC)

    assert applied == []
    assert len(spool) == 1


@pytest.mark.asyncio
async def test_ledger_failure_spools_with_device_and_replays(
    router: CreditRouter, ledger: SessionLedger, spool: CreditSpool, mocker
) -> None:
    router.claim("main", MAC, ip="10.0.0.5")
    patched = mocker.patch.object(ledger, "apply_credit", side_effect=LedgerError("disk full"))

    assert await router.handle(_coin(10)) is None

    (entry,) = spool.entries()
    assert (entry.amount, entry.mac, entry.reason) == (10, MAC, "ledger_failed")

    # Still failing: the entry stays put.
    assert router.replay_spool() == 0
    assert len(spool) == 1

    mocker.stop(patched)
    assert router.replay_spool() == 1
    assert len(spool) == 0
    assert ledger.get_status(MAC).remaining_seconds == 75 * 60


def test_failed_handover_keeps_unassigned_credit(
    router: CreditRouter, ledger: SessionLedger, spool: CreditSpool, mocker
) -> None:
    spool.append(spool_entry("main", 5, 5, reason="unassigned"))
    mocker.patch.object(ledger, "apply_credit", side_effect=LedgerError("locked"))

    _, applied = router.claim("main", MAC)

    assert applied == []
    (entry,) = spool.entries()
    assert entry.mac == MAC
    assert entry.reason == "ledger_failed"


def test_webhook_credit_goes_straight_to_ledger(router: CreditRouter, sink: RecordingSink) -> None:
    snapshot = router.apply_webhook(MAC, 1, ip="10.0.0.5", device_id="esp-1")

    assert snapshot.remaining_seconds == 600
    assert sink.grants == [(MAC, "10.0.0.5")]


def test_spool_survives_reopen(spool: CreditSpool) -> None:
    first = spool.append(spool_entry("main", 5, 5, reason="unassigned", detected_at=1.0))
    spool.append(spool_entry("main", 1, 1, reason="ledger_failed", mac=MAC))

    reopened = CreditSpool(spool.path)

    assert [e.amount for e in reopened.entries()] == [5, 1]
    assert [e.mac for e in reopened.assigned()] == [MAC]
    assert reopened.remove(first.id) is True
    assert reopened.remove(first.id) is False
    assert len(spool) == 1


def test_spool_skips_corrupt_lines(spool: CreditSpool) -> None:
    spool.append(spool_entry("main", 5, 5, reason="unassigned"))
    with spool.path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")

    assert [e.amount for e in spool.entries()] == [5]


def test_invalid_spooled_credit_is_set_aside(
    router: CreditRouter, ledger: SessionLedger, spool: CreditSpool
) -> None:
    bad = spool.append(spool_entry("main", 5, 5, reason="ledger_failed", mac="not-a-mac"))
    spool.append(spool_entry("main", 1, 1, reason="ledger_failed", mac=MAC))

    assert router.replay_spool() == 1
    for _ in range(3):
        assert router.replay_spool() == 0

    (entry,) = spool.entries()
    assert (entry.id, entry.attempts) == (bad.id, 4)
    assert entry.last_error
    assert spool.rejected() == []

    assert router.replay_spool() == 0

    assert len(spool) == 0
    (parked,) = spool.rejected()
    assert (parked.id, parked.reason, parked.attempts, parked.amount) == (
        bad.id,
        "invalid_credit",
        5,
        5,
    )
    assert ledger.get_status(MAC).total_paid == 1


def test_transient_failures_are_counted_but_never_set_aside(
    router: CreditRouter, ledger: SessionLedger, spool: CreditSpool, mocker
) -> None:
    spool.append(spool_entry("main", 5, 5, reason="ledger_failed", mac=MAC))
    mocker.patch.object(ledger, "apply_credit", side_effect=LedgerError("database is locked"))

    for _ in range(8):
        router.replay_spool()

    (entry,) = spool.entries()
    assert entry.attempts == 8
    assert entry.last_error == "database is locked"
    assert spool.rejected() == []
