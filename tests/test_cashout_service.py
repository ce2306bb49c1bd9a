"""
Test cashout submission, round settlement and payouts.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select, text, update

from oilfield.core.exceptions import (
    ValidationError, InsufficientBalanceError, StateConflictError,
    RateLimitError, FeatureDisabledError, RoundNotFoundError, NotFoundError,
    SettlementPartialFailure
)
from oilfield.models.cashout import CashoutRound, Payout, RedemptionRequest
from oilfield.models.player import PlayerLedger
from oilfield.models.purchase import FuelPurchase
from oilfield.services.cashout_service import CashoutService, distribute_pool


def test_distribute_pool_proportionally():
    assert distribute_pool(Decimal("10"), [30, 70]) == [Decimal("3"), Decimal("7")]


def test_distribute_pool_last_share_takes_remainder():
    shares = distribute_pool(Decimal("10"), [1, 1, 1])

    assert shares == [Decimal("3.33333333"), Decimal("3.33333333"), Decimal("3.33333334")]
    assert sum(shares) == Decimal("10")


def test_distribute_pool_without_weight():
    assert distribute_pool(Decimal("10"), [0, 0]) == [Decimal("0"), Decimal("0")]
    assert distribute_pool(Decimal("10"), []) == []


async def _ledger(session, player_id):
    result = await session.execute(
        select(PlayerLedger).where(PlayerLedger.player_id == player_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _payouts(session, round_id):
    result = await session.execute(
        select(Payout).where(Payout.round_id == round_id).order_by(Payout.player_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_submit_burns_claim_tokens_into_todays_round(session, config, clock, make_player):
    player = await make_player(claim_tokens=40)
    service = CashoutService(session, config, clock)

    request = await service.submit_cashout_request(player.id, 30)
    await session.commit()

    assert request.status == "pending"
    assert request.amount_submitted == 30
    assert (await _ledger(session, player.id)).claim_tokens == 10

    round_ = await service.get_round(request.round_id)
    assert round_.round_date == clock.now().date()
    assert round_.is_open
    assert round_.total_claim_tokens_submitted == 30
    # Exchange-rate estimate: 30 * 0.1
    assert round_.payout_pool_in_currency == Decimal("3")


@pytest.mark.asyncio
async def test_submissions_share_the_days_round(session, config, clock, make_player):
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)

    first = await service.submit_cashout_request(a.id, 30)
    clock.advance(minutes=5)
    second = await service.submit_cashout_request(b.id, 70)

    assert first.round_id == second.round_id
    round_ = await service.get_round(first.round_id)
    assert round_.total_claim_tokens_submitted == 100


@pytest.mark.asyncio
async def test_submit_validation(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"min_claim_tokens": 5, "max_claim_tokens": 50}})
    player = await make_player(claim_tokens=100)
    service = CashoutService(session, config, clock)

    for amount in (4, 51, 0, "10", 2.5, True):
        with pytest.raises(ValidationError):
            await service.submit_cashout_request(player.id, amount)


@pytest.mark.asyncio
async def test_submit_insufficient_claim_tokens(session, config, clock, make_player):
    player = await make_player(claim_tokens=3)

    with pytest.raises(InsufficientBalanceError):
        await CashoutService(session, config, clock).submit_cashout_request(player.id, 4)


@pytest.mark.asyncio
async def test_submit_when_cashout_disabled(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"enabled": False}})
    player = await make_player(claim_tokens=10)

    with pytest.raises(FeatureDisabledError):
        await CashoutService(session, config, clock).submit_cashout_request(player.id, 1)


@pytest.mark.asyncio
async def test_submit_rate_limits(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"requests_per_day": 1}})
    player = await make_player(claim_tokens=10)
    service = CashoutService(session, config, clock)

    await service.submit_cashout_request(player.id, 1)
    await session.commit()
    clock.advance(hours=23)
    with pytest.raises(RateLimitError):
        await service.submit_cashout_request(player.id, 1)
    await session.rollback()

    clock.advance(hours=1, minutes=1)
    await service.submit_cashout_request(player.id, 1)


@pytest.mark.asyncio
async def test_submit_cooldown(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"cooldown_days": 3, "requests_per_day": 5}})
    player = await make_player(claim_tokens=10)
    service = CashoutService(session, config, clock)

    await service.submit_cashout_request(player.id, 1)
    await session.commit()
    clock.advance(days=2)
    with pytest.raises(RateLimitError):
        await service.submit_cashout_request(player.id, 1)


@pytest.mark.asyncio
async def test_submit_into_closed_round(session, config, clock, make_player):
    player = await make_player(claim_tokens=10)
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()
    await service.close_round(round_.id)
    await session.commit()

    with pytest.raises(StateConflictError):
        await service.submit_cashout_request(player.id, 1)
    await session.rollback()
    assert (await _ledger(session, player.id)).claim_tokens == 10


@pytest.mark.asyncio
async def test_close_round_with_manual_pool(session, config, clock, make_player):
    """Pool of 10 over 30 and 70 claim-tokens pays 3 and 7."""
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request_a = await service.submit_cashout_request(a.id, 30)
    await service.submit_cashout_request(b.id, 70)
    await session.commit()

    settlement = await service.close_round(request_a.round_id, manual_pool=Decimal("10"))
    await session.commit()

    assert settlement.status == "closed"
    assert settlement.total_claim_tokens == 100
    assert settlement.payout_pool == Decimal("10")
    assert settlement.payouts_written == 2

    payouts = await _payouts(session, request_a.round_id)
    assert [(p.player_id, p.payout_amount) for p in payouts] == [(a.id, Decimal("3")), (b.id, Decimal("7"))]
    assert [p.claim_tokens_burned for p in payouts] == [30, 70]

    requests = await service.list_player_requests(a.id)
    assert [r.status for r in requests] == ["approved"]

    round_ = await service.get_round(request_a.round_id)
    assert not round_.is_open
    assert round_.closed_at == clock.now()


@pytest.mark.asyncio
async def test_close_round_uses_exchange_rate_pool(session, config, clock, make_player):
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request = await service.submit_cashout_request(a.id, 30)
    await service.submit_cashout_request(b.id, 70)

    settlement = await service.close_round(request.round_id)

    assert settlement.payout_pool == Decimal("10")
    assert [p.payout_amount for p in await _payouts(session, request.round_id)] == [Decimal("3"), Decimal("7")]


@pytest.mark.asyncio
async def test_close_round_uses_revenue_share_pool(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"pool_mode": "revenue_share"}, "treasury": {"payout_percentage": "0.5"}})
    buyer = await make_player()
    player = await make_player(claim_tokens=5)
    session.add(FuelPurchase(
        player_id=buyer.id,
        reference="ref-1",
        amount_currency=Decimal("20"),
        fuel_amount=Decimal("20000"),
        status="confirmed",
        initiated_at=clock.now(),
        confirmed_at=clock.now(),
    ))
    await session.commit()
    service = CashoutService(session, config, clock)
    clock.advance(minutes=1)
    request = await service.submit_cashout_request(player.id, 5)

    settlement = await service.close_round(request.round_id)

    assert settlement.revenue == Decimal("20")
    assert settlement.payout_pool == Decimal("10")
    assert (await _payouts(session, request.round_id))[0].payout_amount == Decimal("10")


@pytest.mark.asyncio
async def test_close_groups_requests_per_player(session, config_factory, clock, make_player):
    config = config_factory({"cashout": {"requests_per_day": 3}})
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request = await service.submit_cashout_request(a.id, 10)
    await service.submit_cashout_request(b.id, 70)
    await service.submit_cashout_request(a.id, 20)

    await service.close_round(request.round_id, manual_pool=Decimal("10"))

    payouts = await _payouts(session, request.round_id)
    assert [(p.player_id, p.claim_tokens_burned, p.payout_amount) for p in payouts] == [
        (a.id, 30, Decimal("3")),
        (b.id, 70, Decimal("7")),
    ]


@pytest.mark.asyncio
async def test_close_round_without_requests(session, config, clock):
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()

    settlement = await service.close_round(round_.id)

    assert settlement.status == "closed"
    assert settlement.payout_pool == Decimal("0")
    assert settlement.payouts_written == 0
    assert await _payouts(session, round_.id) == []


@pytest.mark.asyncio
async def test_close_round_twice(session, config, clock):
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()
    await service.close_round(round_.id)

    with pytest.raises(StateConflictError):
        await service.close_round(round_.id)


@pytest.mark.asyncio
async def test_close_unknown_round(session, config, clock):
    with pytest.raises(RoundNotFoundError):
        await CashoutService(session, config, clock).close_round(404)


@pytest.mark.asyncio
async def test_close_round_rejects_negative_pool(session, config, clock):
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()

    with pytest.raises(ValidationError):
        await service.close_round(round_.id, manual_pool=Decimal("-1"))


@pytest.mark.asyncio
async def test_recalculate_closed_round(session, config, clock, make_player):
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request = await service.submit_cashout_request(a.id, 30)
    await service.submit_cashout_request(b.id, 70)
    await service.close_round(request.round_id, manual_pool=Decimal("10"))
    await session.commit()

    settlement = await service.recalculate_round(request.round_id, Decimal("25"))
    await session.commit()

    assert settlement.status == "closed"
    assert settlement.payout_pool == Decimal("25")
    payouts = await _payouts(session, request.round_id)
    assert [p.payout_amount for p in payouts] == [Decimal("7.5"), Decimal("17.5")]
    assert sum(p.payout_amount for p in payouts) == Decimal("25")
    assert (await service.get_round(request.round_id)).payout_pool_in_currency == Decimal("25")


@pytest.mark.asyncio
async def test_recalculate_round_without_payouts(session, config, clock):
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()

    with pytest.raises(StateConflictError):
        await service.recalculate_round(round_.id, Decimal("5"))


@pytest.mark.asyncio
async def test_mark_payout_paid(session, config, clock, make_player):
    player = await make_player(claim_tokens=10)
    service = CashoutService(session, config, clock)
    request = await service.submit_cashout_request(player.id, 10)
    await service.close_round(request.round_id)
    payout = (await _payouts(session, request.round_id))[0]

    paid = await service.mark_payout_paid(payout.id, "tx-123")
    await session.commit()

    assert paid.status == "paid"
    assert paid.tx_reference == "tx-123"
    assert paid.paid_at == clock.now()
    result = await session.execute(
        select(RedemptionRequest.status).where(RedemptionRequest.id == request.id)
    )
    assert result.scalar_one() == "paid"

    with pytest.raises(StateConflictError):
        await service.mark_payout_paid(payout.id, "tx-456")


@pytest.mark.asyncio
async def test_mark_unknown_payout_paid(session, config, clock):
    with pytest.raises(NotFoundError):
        await CashoutService(session, config, clock).mark_payout_paid(12345, "tx")


@pytest.mark.asyncio
async def test_rounds_roll_over_by_calendar_day(session, config, clock, make_player):
    player = await make_player(claim_tokens=10)
    service = CashoutService(session, config, clock)
    first = await service.submit_cashout_request(player.id, 1)
    clock.advance(days=1, minutes=1)
    second = await service.submit_cashout_request(player.id, 1)

    assert first.round_id != second.round_id
    rounds = await service.list_rounds()
    assert [r.id for r in rounds] == [second.round_id, first.round_id]
    assert [r.id for r in await service.list_rounds(status="open")] == [second.round_id, first.round_id]


@pytest.mark.asyncio
async def test_round_lookup_by_id(session, config, clock):
    service = CashoutService(session, config, clock)
    round_ = await service.get_or_open_round()

    assert (await service.get_round(round_.id)).id == round_.id
    assert (await session.get(CashoutRound, round_.id)).window_end == clock.now()


async def _request_rows(session, round_id):
    result = await session.execute(
        select(RedemptionRequest).where(RedemptionRequest.round_id == round_id).order_by(RedemptionRequest.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_close_round_recovers_approved_requests(session, config, clock, make_player):
    """Approved requests in a still-open round are paid out without re-approval."""
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request_a = await service.submit_cashout_request(a.id, 30)
    await service.submit_cashout_request(b.id, 70)
    await session.execute(
        update(RedemptionRequest).where(RedemptionRequest.id == request_a.id).values(status="approved")
    )
    await session.commit()

    clock.advance(minutes=5)
    settlement = await service.close_round(request_a.round_id, manual_pool=Decimal("10"))
    await session.commit()

    assert settlement.status == "closed"
    assert settlement.total_claim_tokens == 100
    payouts = await _payouts(session, request_a.round_id)
    assert [(p.player_id, p.payout_amount) for p in payouts] == [(a.id, Decimal("3")), (b.id, Decimal("7"))]

    rows = await _request_rows(session, request_a.round_id)
    assert [r.status for r in rows] == ["approved", "approved"]
    assert rows[0].processed_at is None
    assert rows[1].processed_at == clock.now()


@pytest.mark.asyncio
async def test_close_round_partial_failure_then_retry(session, config, clock, make_player):
    a = await make_player(claim_tokens=30)
    b = await make_player(claim_tokens=70)
    service = CashoutService(session, config, clock)
    request_a = await service.submit_cashout_request(a.id, 30)
    await service.submit_cashout_request(b.id, 70)
    await session.commit()
    round_id = request_a.round_id

    build_upsert = service._payout_upsert

    def failing_for_b(values):
        if values["player_id"] == b.id:
            return text("INSERT INTO missing_payouts_table VALUES (1)")
        return build_upsert(values)

    service._payout_upsert = failing_for_b
    with pytest.raises(SettlementPartialFailure) as exc_info:
        await service.close_round(round_id, manual_pool=Decimal("10"))

    assert exc_info.value.failed_items == [f"payout:{b.id}"]
    assert exc_info.value.details["round_id"] == round_id
    assert [(p.player_id, p.payout_amount) for p in await _payouts(session, round_id)] == [(a.id, Decimal("3"))]
    assert [r.status for r in await _request_rows(session, round_id)] == ["approved", "pending"]
    assert (await service.get_round(round_id)).is_open

    service._payout_upsert = build_upsert
    settlement = await service.close_round(round_id, manual_pool=Decimal("10"))
    await session.commit()

    payouts = await _payouts(session, round_id)
    assert [(p.player_id, p.payout_amount) for p in payouts] == [(a.id, Decimal("3")), (b.id, Decimal("7"))]
    assert sum(p.payout_amount for p in payouts) == settlement.payout_pool
    assert [r.status for r in await _request_rows(session, round_id)] == ["approved", "approved"]
    assert settlement.status == "closed"
