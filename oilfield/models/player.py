"""
Player and player ledger models.

A player's ledger holds every balance the economy engine touches. It is
created lazily on first access and never destroyed.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import (
    String, Integer, Boolean, JSON, ForeignKey, CheckConstraint, Index
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, TimestampMixin, Amount


class Player(BaseModel, TimestampMixin):
    """A registered player. Identity and verification flags only."""

    __tablename__ = "players"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    wallet_address: Mapped[str] = mapped_column(
        String(42),
        unique=True,
        index=True,
        comment="Player's wallet address (0x-prefixed)"
    )

    display_name: Mapped[Optional[str]] = mapped_column(
        String(64),
        comment="Optional player name"
    )

    is_human_verified: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Whether the player passed humanity verification"
    )

    is_admin: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Whether the player may call admin operations"
    )

    ledger: Mapped[Optional["PlayerLedger"]] = relationship(
        "PlayerLedger",
        back_populates="player",
        uselist=False,
        cascade="all, delete-orphan"
    )

    machines: Mapped[List["Machine"]] = relationship(
        "Machine",
        back_populates="player",
        cascade="all, delete-orphan",
        order_by="Machine.id"
    )

    def __repr__(self) -> str:
        return f"<Player(id={self.id}, wallet={self.wallet_address})>"


class PlayerLedger(BaseModel, TimestampMixin):
    """All balances of one player."""

    __tablename__ = "player_ledgers"

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE"),
        primary_key=True
    )

    fuel_currency: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Spendable fuel currency (oil)"
    )

    claim_tokens: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Redeemable claim-token (diamond) balance"
    )

    secondary_resources: Mapped[Dict[str, int]] = mapped_column(
        JSON,
        default=dict,
        comment="Resource kind -> amount"
    )

    daily_claim_token_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Claim-tokens awarded in the current 24h window"
    )

    daily_reset_at: Mapped[datetime] = mapped_column(
        comment="Anchor of the current daily cap window"
    )

    total_converted_fuel: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Fuel currency gained from resource exchanges"
    )

    last_daily_claim_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Last daily reward claim"
    )

    last_active_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Last mining tick"
    )

    player: Mapped["Player"] = relationship("Player", back_populates="ledger")

    __table_args__ = (
        CheckConstraint("fuel_currency >= 0", name="ck_ledger_fuel_non_negative"),
        CheckConstraint("claim_tokens >= 0", name="ck_ledger_claim_tokens_non_negative"),
        CheckConstraint("daily_claim_token_count >= 0", name="ck_ledger_daily_count_non_negative"),
    )

    @validates("fuel_currency", "total_converted_fuel")
    def _validate_amount(self, key, value):
        value = Decimal(value)
        if value < 0:
            raise ValueError(f"{key} cannot be negative")
        return value

    @validates("claim_tokens", "daily_claim_token_count")
    def _validate_count(self, key, value):
        if value is None or int(value) != value or value < 0:
            raise ValueError(f"{key} must be a non-negative integer")
        return int(value)

    @validates("secondary_resources")
    def _validate_resources(self, key, value):
        value = dict(value or {})
        for kind, amount in value.items():
            if amount < 0:
                raise ValueError(f"resource {kind} cannot be negative")
        return value

    def resource(self, kind: str) -> int:
        return int((self.secondary_resources or {}).get(kind, 0))

    def __repr__(self) -> str:
        return (
            f"<PlayerLedger(player={self.player_id}, fuel={self.fuel_currency}, "
            f"claim_tokens={self.claim_tokens})>"
        )
