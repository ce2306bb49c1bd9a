"""
Declarative base, shared mixins and column types.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN

from sqlalchemy import DateTime, Numeric, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# Currency and fuel amounts are kept to 8 decimal places everywhere
AMOUNT_SCALE = 8
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_SCALE)


def quantize_amount(value, rounding=ROUND_DOWN) -> Decimal:
    """Round an amount down to the storage quantum."""
    return Decimal(value).quantize(AMOUNT_QUANTUM, rounding=rounding)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite hands back naive values; they are re-tagged as UTC on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def Amount():
    """Column type for currency/fuel amounts."""
    return Numeric(24, AMOUNT_SCALE, asdecimal=True)


class Base(DeclarativeBase):
    type_annotation_map = {
        datetime: UTCDateTime(),
    }


class BaseModel(Base):
    """Abstract base for all tables."""

    __abstract__ = True


class TimestampMixin:
    """Adds created_at / updated_at columns."""

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        comment="Row creation time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        comment="Last modification time"
    )
