"""
Auto-exchange models: requests, fallback conversions, audit log and
per-player preferences.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Integer, Boolean, Text, JSON, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, TimestampMixin, Amount


MIN_SLIPPAGE_PERCENT = Decimal("0.1")
MAX_SLIPPAGE_PERCENT = Decimal("5.0")


class ExchangeStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FALLBACK = "fallback"


class FallbackStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class AuditAction(str, Enum):
    EXCHANGE_REQUESTED = "exchange_requested"
    EXCHANGE_EXECUTED = "exchange_executed"
    EXCHANGE_FALLBACK = "exchange_failed_fallback_initiated"
    PREFERENCES_UPDATED = "preferences_updated"


class ExchangeRequest(BaseModel, TimestampMixin):
    """A player's ask to auto-convert claim-tokens into currency."""

    __tablename__ = "exchange_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    claim_token_amount: Mapped[int] = mapped_column(
        Integer,
        comment="Claim-tokens to convert; debited only on completion"
    )

    target_amount: Mapped[Decimal] = mapped_column(
        Amount(),
        comment="Expected currency at the submission-time rate"
    )

    slippage_tolerance_percent: Mapped[Decimal] = mapped_column(
        Amount(),
        comment="Allowed shortfall against target, in percent"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=ExchangeStatus.PENDING.value
    )

    amount_received: Mapped[Optional[Decimal]] = mapped_column(Amount())

    tx_reference: Mapped[Optional[str]] = mapped_column(String(128))

    error_message: Mapped[Optional[str]] = mapped_column(Text)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    last_retry_at: Mapped[Optional[datetime]] = mapped_column()

    execution_started_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Start of the current execution attempt"
    )

    requested_at: Mapped[datetime] = mapped_column(comment="Submission time")

    fallback: Mapped[Optional["FallbackConversionRequest"]] = relationship(
        "FallbackConversionRequest",
        back_populates="exchange_request",
        uselist=False
    )

    __table_args__ = (
        CheckConstraint("claim_token_amount > 0", name="ck_exchange_amount_positive"),
        CheckConstraint("target_amount > 0", name="ck_exchange_target_positive"),
        CheckConstraint(
            "slippage_tolerance_percent >= 0.1 AND slippage_tolerance_percent <= 5.0",
            name="ck_exchange_slippage_range"
        ),
        Index("idx_exchange_requests_player_status", "player_id", "status"),
    )

    @validates("slippage_tolerance_percent")
    def _validate_slippage(self, key, value):
        value = Decimal(value)
        if not MIN_SLIPPAGE_PERCENT <= value <= MAX_SLIPPAGE_PERCENT:
            raise ValueError("slippage must be within [0.1, 5.0]")
        return value

    @property
    def minimum_acceptable(self) -> Decimal:
        """Smallest realized amount that still counts as success."""
        return self.target_amount * (1 - self.slippage_tolerance_percent / Decimal(100))

    def __repr__(self) -> str:
        return f"<ExchangeRequest(id={self.id}, player={self.player_id}, status={self.status})>"


class FallbackConversionRequest(BaseModel, TimestampMixin):
    """Manual-settlement record created when an auto-exchange fails."""

    __tablename__ = "fallback_conversion_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    exchange_request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("exchange_requests.id", ondelete="CASCADE"),
        unique=True,
        comment="Originating exchange request, at most one fallback each"
    )

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    claim_token_amount: Mapped[int] = mapped_column(Integer)

    reason: Mapped[str] = mapped_column(Text)

    status: Mapped[str] = mapped_column(
        String(16),
        default=FallbackStatus.PENDING.value
    )

    exchange_request: Mapped["ExchangeRequest"] = relationship(
        "ExchangeRequest",
        back_populates="fallback"
    )

    def __repr__(self) -> str:
        return f"<FallbackConversionRequest(id={self.id}, request={self.exchange_request_id})>"


class ExchangeAuditLog(BaseModel):
    """Append-only audit trail for auto-exchange activity."""

    __tablename__ = "exchange_audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    action: Mapped[str] = mapped_column(String(64))

    request_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("exchange_requests.id", ondelete="SET NULL")
    )

    details: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    logged_at: Mapped[datetime] = mapped_column()

    __table_args__ = (
        Index("idx_exchange_audit_player", "player_id", "logged_at"),
    )


class AutoExchangePreference(BaseModel, TimestampMixin):
    """A player's own auto-exchange switch and limits."""

    __tablename__ = "auto_exchange_preferences"

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE"),
        primary_key=True
    )

    enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    max_daily_claim_tokens: Mapped[int] = mapped_column(Integer, default=10000)

    default_slippage_percent: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("1.0")
    )
