"""
Game state and machine action schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .common import APIResponse


MachineAction = Literal[
    "buy_machine",
    "fuel_machine",
    "start_machine",
    "stop_machine",
    "upgrade_machine",
    "exchange_resources",
    "claim_daily_reward",
]


class LedgerResponse(BaseModel):
    """A player's balances."""
    model_config = ConfigDict(from_attributes=True)

    fuel_currency: Decimal
    claim_tokens: int
    secondary_resources: Dict[str, int] = Field(default_factory=dict)
    daily_claim_token_count: int
    daily_reset_at: datetime
    total_converted_fuel: Decimal
    last_daily_claim_at: Optional[datetime] = None
    last_active_at: Optional[datetime] = None


class MachineResponse(BaseModel):
    """A machine with its level-scaled stats."""
    id: int
    type: str
    level: int
    fuel_level: Decimal
    is_active: bool
    last_processed_at: Optional[datetime] = None
    speed_per_hour: Optional[Decimal] = None
    burn_per_hour: Optional[Decimal] = None
    tank_capacity: Optional[Decimal] = None
    upgrade_cost: Optional[int] = Field(default=None, description="Null at max level or for unknown types")


class GameStateResponse(APIResponse):
    """Ledger and machines after a mining tick."""
    config_version: int
    ledger: LedgerResponse
    machines: List[MachineResponse]


class TickResponse(GameStateResponse):
    actions: int = 0
    claim_tokens_awarded: int = 0
    claim_tokens_converted: int = 0
    resources_gained: Dict[str, int] = Field(default_factory=dict)


class MachineActionRequest(BaseModel):
    """One player action. Which fields apply depends on ``action``."""
    action: MachineAction
    machine_type: Optional[str] = Field(default=None, description="buy_machine")
    machine_id: Optional[int] = Field(default=None, description="fuel/start/stop/upgrade")
    amount: Optional[Union[int, Decimal]] = Field(
        default=None,
        description="Fuel to add, or resource units to exchange"
    )
    resource: Optional[str] = Field(default=None, description="exchange_resources")


class PurchaseInitiateRequest(BaseModel):
    amount_currency: Decimal = Field(gt=0, description="External currency to pay")


class PurchaseResponse(APIResponse):
    model_config = ConfigDict(from_attributes=True)

    id: int
    reference: str
    amount_currency: Decimal
    fuel_amount: Decimal
    status: str
    initiated_at: datetime
    confirmed_at: Optional[datetime] = None


class PurchaseConfirmRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    transaction_id: str = Field(min_length=1, max_length=128)


class PurchaseConfirmResponse(APIResponse):
    reference: str
    status: str
    fuel_balance: Optional[Decimal] = None
