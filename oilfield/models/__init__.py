"""
Database models for the Oilfield backend.

SQLAlchemy models for player ledgers, machines, cashout settlement and
auto-exchange orchestration.
"""

from .base import Base, BaseModel, TimestampMixin
from .player import Player, PlayerLedger
from .machine import Machine
from .purchase import FuelPurchase, PurchaseStatus
from .cashout import (
    CashoutRound, RedemptionRequest, Payout,
    RoundStatus, RedemptionStatus, PayoutStatus, PoolMode
)
from .exchange import (
    ExchangeRequest, FallbackConversionRequest, ExchangeAuditLog,
    AutoExchangePreference, ExchangeStatus, FallbackStatus, AuditAction
)
from .game_config import GameConfigRecord

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "Player",
    "PlayerLedger",
    "Machine",
    "FuelPurchase",
    "PurchaseStatus",
    "CashoutRound",
    "RedemptionRequest",
    "Payout",
    "RoundStatus",
    "RedemptionStatus",
    "PayoutStatus",
    "PoolMode",
    "ExchangeRequest",
    "FallbackConversionRequest",
    "ExchangeAuditLog",
    "AutoExchangePreference",
    "ExchangeStatus",
    "FallbackStatus",
    "AuditAction",
    "GameConfigRecord",
]
