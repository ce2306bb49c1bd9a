"""
Cashout rounds: redemption submission, round settlement and payouts.

Players burn claim-tokens into the current calendar-day round. An operator
closes the round, which fixes the payout pool and splits it across players
in proportion to the claim-tokens each submitted. The split is exact: every
share but the last is rounded down to the amount quantum and the last share
takes whatever is left, so payouts always sum to the pool.

Settlement writes one row at a time inside its own savepoint. Rows that fail
are reported together in ``SettlementPartialFailure`` and the rows that
succeeded are committed; re-running the close is safe because payouts are
upserted on ``(round_id, player_id)``.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select, func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.core.clock import Clock, system_clock
from oilfield.core.exceptions import (
    ValidationError, InsufficientBalanceError, StateConflictError, RateLimitError,
    FeatureDisabledError, NotFoundError, RoundNotFoundError, SettlementPartialFailure
)
from oilfield.models.base import quantize_amount
from oilfield.models.cashout import (
    CashoutRound, RedemptionRequest, Payout,
    RoundStatus, RedemptionStatus, PayoutStatus, PoolMode
)
from oilfield.services.config_provider import GameConfig
from oilfield.services.ledger import lock_ledger, atomic_increment
from oilfield.services.mining_service import MiningService
from oilfield.services.purchase_service import observed_revenue

logger = structlog.get_logger(__name__)

DAY = timedelta(hours=24)

SETTLED_STATUSES = (RedemptionStatus.PENDING.value, RedemptionStatus.APPROVED.value)


def distribute_pool(pool: Decimal, weights: Sequence[int]) -> List[Decimal]:
    """
    Split ``pool`` proportionally to ``weights``.

    Every share except the last is ``pool * w / total`` rounded down to the
    quantum; the last share is the remainder. Returns zeros when the total
    weight is zero.
    """
    pool = Decimal(pool)
    total = sum(weights)
    if total <= 0:
        return [Decimal("0") for _ in weights]

    shares: List[Decimal] = []
    remaining = pool
    last = len(weights) - 1
    for i, weight in enumerate(weights):
        if i == last:
            share = max(Decimal("0"), remaining)
        else:
            share = quantize_amount(pool * weight / total)
        remaining -= share
        shares.append(share)
    return shares


@dataclass
class PlayerWeight:
    """One player's stake in a round, built from their requests."""

    player_id: int
    claim_tokens: int
    pending_request_ids: List[int] = field(default_factory=list)


@dataclass
class RoundSettlement:
    round_id: int
    status: str
    total_claim_tokens: int
    payout_pool: Decimal
    revenue: Decimal
    payouts_written: int = 0
    message: str = ""


def parse_pool(value) -> Decimal:
    try:
        pool = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("Invalid pool value", {"pool": str(value)})
    if not pool.is_finite() or pool < 0:
        raise ValidationError("Pool must be a non-negative number", {"pool": str(value)})
    return quantize_amount(pool)


class CashoutService:
    """Redemption requests, round settlement and payout bookkeeping."""

    def __init__(
        self,
        db: AsyncSession,
        config: GameConfig,
        clock: Clock = system_clock,
        mining: Optional[MiningService] = None
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.mining = mining or MiningService(db, config, clock)
        self.logger = logger.bind(service="cashout_service")

    # Submission

    def _validate_amount(self, amount) -> int:
        cashout = self.config.cashout
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError("Claim-token amount must be an integer", {"amount": amount})

        minimum = max(1, cashout.min_claim_tokens)
        if amount < minimum:
            raise ValidationError(
                f"Minimum {minimum} claim-tokens required",
                {"amount": amount, "minimum": minimum}
            )
        if amount > cashout.max_claim_tokens:
            raise ValidationError(
                f"Maximum cashout request is {cashout.max_claim_tokens} claim-tokens",
                {"amount": amount, "maximum": cashout.max_claim_tokens}
            )
        return amount

    async def _count_requests_since(self, player_id: int, since: datetime) -> int:
        result = await self.db.execute(
            select(func.count(RedemptionRequest.id))
            .where(
                RedemptionRequest.player_id == player_id,
                RedemptionRequest.requested_at >= since
            )
        )
        return result.scalar() or 0

    async def submit_cashout_request(self, player_id: int, amount) -> RedemptionRequest:
        """Burn claim-tokens into today's round as a pending request."""
        amount = self._validate_amount(amount)
        if not self.config.cashout.enabled:
            raise FeatureDisabledError("cashout")

        await self.mining.process_mining_tick(player_id)
        await self.db.commit()

        now = self.clock.now()
        ledger = await lock_ledger(self.db, player_id, self.clock)
        if ledger.claim_tokens < amount:
            raise InsufficientBalanceError("claim_tokens", amount, ledger.claim_tokens)

        cooldown_days = self.config.cashout.cooldown_days
        if cooldown_days > 0:
            if await self._count_requests_since(player_id, now - timedelta(days=cooldown_days)) > 0:
                raise RateLimitError("Cashout cooldown active", {"cooldown_days": cooldown_days})

        per_day = self.config.cashout.requests_per_day
        if await self._count_requests_since(player_id, now - DAY) >= per_day:
            raise RateLimitError("Daily cashout limit reached", {"requests_per_day": per_day})

        round_ = await self.get_or_open_round(now)
        if not round_.is_open:
            raise StateConflictError("Cashout round is closed", {"round_id": round_.id})

        ledger.claim_tokens = ledger.claim_tokens - amount
        request = RedemptionRequest(
            round_id=round_.id,
            player_id=player_id,
            amount_submitted=amount,
            status=RedemptionStatus.PENDING.value,
            requested_at=now,
        )
        self.db.add(request)
        await self.db.flush()

        await atomic_increment(self.db, CashoutRound.total_claim_tokens_submitted, round_.id, amount)
        await self.db.refresh(round_)

        round_.window_end = now
        round_.revenue_in_currency = await observed_revenue(self.db, round_.window_start, now)
        round_.payout_pool_in_currency = self.resolve_pool(round_, round_.total_claim_tokens_submitted)
        await self.db.flush()

        self.logger.info(
            "Cashout request submitted",
            player_id=player_id,
            round_id=round_.id,
            request_id=request.id,
            amount=amount
        )
        return request

    async def get_or_open_round(self, now: Optional[datetime] = None) -> CashoutRound:
        """Today's round, opened on first use with a trailing 24h revenue window."""
        now = now or self.clock.now()
        round_date = now.date()

        round_ = await self._round_by_date(round_date)
        if round_ is not None:
            return round_

        try:
            async with self.db.begin_nested():
                self.db.add(CashoutRound(
                    round_date=round_date,
                    status=RoundStatus.OPEN.value,
                    window_start=now - DAY,
                    window_end=now,
                    revenue_in_currency=Decimal("0"),
                    payout_pool_in_currency=Decimal("0"),
                    total_claim_tokens_submitted=0,
                ))
            self.logger.info("Cashout round opened", round_date=str(round_date))
        except IntegrityError:
            self.logger.debug("Cashout round opened concurrently", round_date=str(round_date))

        round_ = await self._round_by_date(round_date)
        if round_ is None:
            raise NotFoundError("Cashout round could not be opened", {"round_date": str(round_date)})
        return round_

    async def _round_by_date(self, round_date) -> Optional[CashoutRound]:
        result = await self.db.execute(
            select(CashoutRound).where(CashoutRound.round_date == round_date)
        )
        return result.scalar_one_or_none()

    # Settlement

    def resolve_pool(
        self,
        round_: CashoutRound,
        total_claim_tokens: int,
        manual_pool: Optional[Decimal] = None
    ) -> Decimal:
        """Manual override, else the configured pool mode."""
        if manual_pool is not None:
            return manual_pool
        if self.config.cashout.pool_mode == PoolMode.REVENUE_SHARE:
            return quantize_amount(round_.revenue_in_currency * self.config.treasury.payout_percentage)
        return quantize_amount(total_claim_tokens * self.config.cashout.exchange_rate)

    async def _get_round_for_update(self, round_id: int) -> CashoutRound:
        result = await self.db.execute(
            select(CashoutRound)
            .where(CashoutRound.id == round_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        round_ = result.scalar_one_or_none()
        if round_ is None:
            raise RoundNotFoundError(round_id)
        return round_

    async def _player_weights(self, round_id: int) -> List[PlayerWeight]:
        result = await self.db.execute(
            select(RedemptionRequest)
            .where(
                RedemptionRequest.round_id == round_id,
                RedemptionRequest.status.in_(SETTLED_STATUSES)
            )
            .order_by(RedemptionRequest.id)
        )
        weights: Dict[int, PlayerWeight] = {}
        for request in result.scalars().all():
            weight = weights.get(request.player_id)
            if weight is None:
                weight = weights[request.player_id] = PlayerWeight(request.player_id, 0)
            weight.claim_tokens += request.amount_submitted
            if request.status == RedemptionStatus.PENDING.value:
                weight.pending_request_ids.append(request.id)
        # Dicts keep insertion order, i.e. each player's first submission
        return list(weights.values())

    def _payout_upsert(self, values: Dict):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(Payout).values(**values)
        elif dialect == "sqlite":
            stmt = sqlite.insert(Payout).values(**values)
        else:
            raise NotImplementedError(f"Payout upsert not supported on {dialect}")
        return stmt.on_conflict_do_update(
            index_elements=[Payout.round_id, Payout.player_id],
            set_={
                "claim_tokens_burned": stmt.excluded.claim_tokens_burned,
                "payout_amount": stmt.excluded.payout_amount,
                "status": stmt.excluded.status,
                "updated_at": stmt.excluded.updated_at,
            }
        )

    async def close_round(self, round_id: int, manual_pool=None) -> RoundSettlement:
        """
        Settle an open round.

        - No pending or approved requests: the round closes as a no-op.
        - Approved requests left by an interrupted close are re-distributed
          together with any still-pending ones; only pending ones are
          approved.
        """
        manual = parse_pool(manual_pool) if manual_pool is not None else None
        round_ = await self._get_round_for_update(round_id)
        if not round_.is_open:
            raise StateConflictError(
                f"Round {round_id} is already {round_.status}",
                {"round_id": round_id, "status": round_.status}
            )

        now = self.clock.now()
        round_.window_end = now
        round_.revenue_in_currency = await observed_revenue(self.db, round_.window_start, now)

        weights = await self._player_weights(round_id)
        total = sum(w.claim_tokens for w in weights)

        if not weights:
            round_.payout_pool_in_currency = Decimal("0")
            round_.total_claim_tokens_submitted = 0
            round_.status = RoundStatus.CLOSED.value
            round_.closed_at = now
            await self.db.flush()
            self.logger.warning("Closing round with no requests to settle", round_id=round_id)
            return RoundSettlement(
                round_id=round_id,
                status=round_.status,
                total_claim_tokens=0,
                payout_pool=Decimal("0"),
                revenue=round_.revenue_in_currency,
                message="No pending requests, round closed without payouts"
            )

        pool = self.resolve_pool(round_, total, manual)
        round_.payout_pool_in_currency = pool
        await self.db.flush()

        shares = distribute_pool(pool, [w.claim_tokens for w in weights])
        self.logger.info(
            "Settling cashout round",
            round_id=round_id,
            players=len(weights),
            total_claim_tokens=total,
            payout_pool=str(pool),
            manual_pool=manual is not None
        )

        failures: List[str] = []
        written = 0
        for weight, share in zip(weights, shares):
            try:
                async with self.db.begin_nested():
                    await self.db.execute(self._payout_upsert({
                        "round_id": round_id,
                        "player_id": weight.player_id,
                        "claim_tokens_burned": weight.claim_tokens,
                        "payout_amount": share,
                        "status": PayoutStatus.PENDING.value,
                        "created_at": now,
                        "updated_at": now,
                    }))
                    if weight.pending_request_ids:
                        await self.db.execute(
                            update(RedemptionRequest)
                            .where(RedemptionRequest.id.in_(weight.pending_request_ids))
                            .values(status=RedemptionStatus.APPROVED.value, processed_at=now)
                        )
                written += 1
            except SQLAlchemyError as e:
                self.logger.error(
                    "Failed to settle player in round",
                    round_id=round_id,
                    player_id=weight.player_id,
                    error=str(e)
                )
                failures.append(f"payout:{weight.player_id}")

        if failures:
            await self.db.commit()
            raise SettlementPartialFailure(round_id, failures)

        round_.total_claim_tokens_submitted = total
        round_.status = RoundStatus.CLOSED.value
        round_.closed_at = now
        await self.db.flush()

        self.logger.info("Cashout round closed", round_id=round_id, payouts=written)
        return RoundSettlement(
            round_id=round_id,
            status=round_.status,
            total_claim_tokens=total,
            payout_pool=pool,
            revenue=round_.revenue_in_currency,
            payouts_written=written,
            message=f"Processed {written} payouts"
        )

    async def recalculate_round(self, round_id: int, new_pool) -> RoundSettlement:
        """Re-split a new pool over the round's existing payouts, in place."""
        pool = parse_pool(new_pool)
        round_ = await self._get_round_for_update(round_id)

        result = await self.db.execute(
            select(Payout).where(Payout.round_id == round_id).order_by(Payout.id)
        )
        payouts = list(result.scalars().all())
        total = sum(p.claim_tokens_burned for p in payouts)
        if total <= 0:
            raise StateConflictError(
                "Round has no payouts to recalculate",
                {"round_id": round_id}
            )

        round_.payout_pool_in_currency = pool
        await self.db.flush()

        now = self.clock.now()
        shares = distribute_pool(pool, [p.claim_tokens_burned for p in payouts])
        failures: List[str] = []
        for payout, share in zip(payouts, shares):
            payout_id = payout.id
            try:
                async with self.db.begin_nested():
                    payout.payout_amount = share
                    payout.updated_at = now
            except SQLAlchemyError as e:
                self.logger.error("Failed to update payout", payout_id=payout_id, error=str(e))
                failures.append(f"payout:{payout_id}")

        if failures:
            await self.db.commit()
            raise SettlementPartialFailure(round_id, failures)

        self.logger.info(
            "Cashout round recalculated",
            round_id=round_id,
            payout_pool=str(pool),
            payouts=len(payouts)
        )
        return RoundSettlement(
            round_id=round_id,
            status=round_.status,
            total_claim_tokens=total,
            payout_pool=pool,
            revenue=round_.revenue_in_currency,
            payouts_written=len(payouts),
            message=f"Recalculated {len(payouts)} payouts"
        )

    # Payouts and listings

    async def mark_payout_paid(self, payout_id: int, tx_reference: str) -> Payout:
        if not tx_reference:
            raise ValidationError("Transaction reference is required")

        result = await self.db.execute(
            select(Payout).where(Payout.id == payout_id).with_for_update()
        )
        payout = result.scalar_one_or_none()
        if payout is None:
            raise NotFoundError(f"Payout not found: {payout_id}", {"payout_id": payout_id})
        if payout.status == PayoutStatus.PAID.value:
            raise StateConflictError("Payout already paid", {"payout_id": payout_id})

        round_ = await self.db.get(CashoutRound, payout.round_id)
        if round_ is not None and round_.is_open:
            raise StateConflictError("Round is still open", {"round_id": payout.round_id})

        now = self.clock.now()
        payout.status = PayoutStatus.PAID.value
        payout.tx_reference = tx_reference
        payout.paid_at = now

        await self.db.execute(
            update(RedemptionRequest)
            .where(
                RedemptionRequest.round_id == payout.round_id,
                RedemptionRequest.player_id == payout.player_id,
                RedemptionRequest.status == RedemptionStatus.APPROVED.value
            )
            .values(status=RedemptionStatus.PAID.value)
        )
        await self.db.flush()

        self.logger.info(
            "Payout marked paid",
            payout_id=payout_id,
            round_id=payout.round_id,
            player_id=payout.player_id,
            amount=str(payout.payout_amount)
        )
        return payout

    async def get_round(self, round_id: int) -> CashoutRound:
        round_ = await self.db.get(CashoutRound, round_id)
        if round_ is None:
            raise RoundNotFoundError(round_id)
        return round_

    async def list_rounds(self, status: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[CashoutRound]:
        stmt = select(CashoutRound).order_by(CashoutRound.round_date.desc())
        if status:
            stmt = stmt.where(CashoutRound.status == status)
        result = await self.db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def list_player_requests(self, player_id: int, limit: int = 50, offset: int = 0) -> List[RedemptionRequest]:
        result = await self.db.execute(
            select(RedemptionRequest)
            .where(RedemptionRequest.player_id == player_id)
            .order_by(RedemptionRequest.requested_at.desc(), RedemptionRequest.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_round_payouts(self, round_id: int) -> List[Payout]:
        await self.get_round(round_id)
        result = await self.db.execute(
            select(Payout).where(Payout.round_id == round_id).order_by(Payout.id)
        )
        return list(result.scalars().all())
