"""
Fuel purchase records. Confirmed purchases are the revenue a cashout round
observes inside its window.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import String, Integer, JSON, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, Amount


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class FuelPurchase(BaseModel, TimestampMixin):
    """Purchase of fuel currency paid with external currency."""

    __tablename__ = "fuel_purchases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE")
    )

    reference: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        comment="Payment reference handed to the wallet"
    )

    amount_currency: Mapped[Decimal] = mapped_column(
        Amount(),
        comment="External currency to be paid"
    )

    fuel_amount: Mapped[Decimal] = mapped_column(
        Amount(),
        comment="Fuel currency credited on confirmation"
    )

    status: Mapped[str] = mapped_column(
        String(16),
        default=PurchaseStatus.PENDING.value
    )

    transaction_id: Mapped[Optional[str]] = mapped_column(String(128))

    verification: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    initiated_at: Mapped[datetime] = mapped_column()

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Revenue timestamp used by cashout windows"
    )

    __table_args__ = (
        Index("idx_fuel_purchases_status_time", "status", "confirmed_at"),
    )
