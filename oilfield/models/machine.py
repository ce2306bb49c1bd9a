"""
Machine model - a player-owned production unit.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, Boolean, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import BaseModel, TimestampMixin, Amount


class Machine(BaseModel, TimestampMixin):
    """Machine that burns fuel to produce resources."""

    __tablename__ = "machines"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    player_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("players.id", ondelete="CASCADE"),
        comment="Owning player"
    )

    type: Mapped[str] = mapped_column(
        String(32),
        comment="Machine kind, key into the game config machine table"
    )

    level: Mapped[int] = mapped_column(
        Integer,
        default=1,
        comment="Machine level, starts at 1"
    )

    fuel_level: Mapped[Decimal] = mapped_column(
        Amount(),
        default=Decimal("0"),
        comment="Fuel currently in the tank"
    )

    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Whether the machine is running"
    )

    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        comment="Accrual watermark, null until the first tick after activation"
    )

    player: Mapped["Player"] = relationship("Player", back_populates="machines")

    __table_args__ = (
        CheckConstraint("level >= 1", name="ck_machine_level_positive"),
        CheckConstraint("fuel_level >= 0", name="ck_machine_fuel_non_negative"),
        Index("idx_machines_player", "player_id"),
    )

    @validates("level")
    def _validate_level(self, key, value):
        if value < 1:
            raise ValueError("Machine level must be at least 1")
        return value

    @validates("fuel_level")
    def _validate_fuel(self, key, value):
        value = Decimal(value)
        if value < 0:
            raise ValueError("Fuel level cannot be negative")
        return value

    def __repr__(self) -> str:
        return f"<Machine(id={self.id}, type={self.type}, level={self.level}, fuel={self.fuel_level})>"
