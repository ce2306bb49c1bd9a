"""
Cashout models: rounds, redemption requests and payouts.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Date, ForeignKey, Index, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, TimestampMixin, Amount


class RoundStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PoolMode(str, Enum):
    """How a round's payout pool is sourced when no override is given."""
    EXCHANGE_RATE = "exchange_rate"
    REVENUE_SHARE = "revenue_share"


class CashoutRound(BaseModel, TimestampMixin):
    """A time-boxed settlement batch, one per calendar day."""

    __tablename__ = "cashout_rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_date: Mapped[date] = mapped_column(
        Date,
        unique=True,
        comment="Calendar day this round collects requests for"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=RoundStatus.OPEN.value,
        comment="open or closed"
    )

    window_start: Mapped[datetime] = mapped_column(comment="Revenue window start")
    window_end: Mapped[datetime] = mapped_column(comment="Revenue window end")

    revenue_in_currency: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Observed confirmed purchase revenue inside the window"
    )

    payout_pool_in_currency: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Pool distributed across the round's payouts"
    )

    total_claim_tokens_submitted: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Claim-tokens submitted into this round"
    )

    closed_at: Mapped[Optional[datetime]] = mapped_column(comment="When the round was closed")

    requests: Mapped[List["RedemptionRequest"]] = relationship(
        "RedemptionRequest",
        back_populates="round",
        order_by="RedemptionRequest.id"
    )

    payouts: Mapped[List["Payout"]] = relationship(
        "Payout",
        back_populates="round",
        order_by="Payout.id"
    )

    __table_args__ = (
        Index("idx_cashout_rounds_status", "status"),
    )

    @property
    def is_open(self) -> bool:
        return self.status == RoundStatus.OPEN.value

    def __repr__(self) -> str:
        return f"<CashoutRound(id={self.id}, date={self.round_date}, status={self.status})>"


class RedemptionRequest(BaseModel, TimestampMixin):
    """A player's ask to redeem claim-tokens in a round."""

    __tablename__ = "redemption_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("cashout_rounds.id", ondelete="CASCADE"),
        comment="Round this request belongs to"
    )

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE"),
        comment="Requesting player"
    )

    amount_submitted: Mapped[int] = mapped_column(
        Integer,
        comment="Claim-tokens burned into the round"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=RedemptionStatus.PENDING.value
    )

    requested_at: Mapped[datetime] = mapped_column(comment="Submission time")
    processed_at: Mapped[Optional[datetime]] = mapped_column(comment="Approval time")

    round: Mapped["CashoutRound"] = relationship("CashoutRound", back_populates="requests")

    __table_args__ = (
        CheckConstraint("amount_submitted > 0", name="ck_redemption_amount_positive"),
        Index("idx_redemption_round_status", "round_id", "status"),
        Index("idx_redemption_player_time", "player_id", "requested_at"),
    )

    @validates("amount_submitted")
    def _validate_amount(self, key, value):
        if int(value) != value or value <= 0:
            raise ValueError("amount_submitted must be a positive integer")
        return int(value)

    def __repr__(self) -> str:
        return f"<RedemptionRequest(id={self.id}, player={self.player_id}, amount={self.amount_submitted}, status={self.status})>"


class Payout(BaseModel, TimestampMixin):
    """One payout per (round, player)."""

    __tablename__ = "payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("cashout_rounds.id", ondelete="CASCADE")
    )

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    claim_tokens_burned: Mapped[int] = mapped_column(
        Integer,
        comment="Weight of this payout in the round's distribution"
    )

    payout_amount: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Currency owed to the player"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=PayoutStatus.PENDING.value
    )

    tx_reference: Mapped[Optional[str]] = mapped_column(
        String(128),
        comment="Transfer reference once paid"
    )

    paid_at: Mapped[Optional[datetime]] = mapped_column()

    round: Mapped["CashoutRound"] = relationship("CashoutRound", back_populates="payouts")

    __table_args__ = (
        UniqueConstraint("round_id", "player_id", name="uq_payout_round_player"),
        CheckConstraint("payout_amount >= 0", name="ck_payout_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Payout(round={self.round_id}, player={self.player_id}, amount={self.payout_amount})>"
