"""
Operator schemas: round settlement, payouts, exchange execution and game
config publishing.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .common import APIResponse
from .exchange import ExchangeRequestResponse, FallbackResponse
from .cashout import PayoutResponse


class CloseRoundRequest(BaseModel):
    manual_pool: Optional[Decimal] = Field(default=None, ge=0, description="Overrides the configured pool mode")


class RecalculateRoundRequest(BaseModel):
    new_pool: Decimal = Field(ge=0)


class SettlementResponse(APIResponse):
    round_id: int
    status: str
    total_claim_tokens: int
    payout_pool: Decimal
    revenue: Decimal
    payouts_written: int


class MarkPaidRequest(BaseModel):
    tx_reference: str = Field(min_length=1, max_length=128)


class MarkPaidResponse(APIResponse):
    payout: PayoutResponse


class ExecuteExchangeRequest(BaseModel):
    tx_reference: Optional[str] = Field(default=None, max_length=128)
    amount_received: Optional[Decimal] = Field(
        default=None,
        ge=0,
        description="Realized swap amount; the swap provider is called when omitted"
    )


class ExecuteExchangeResponse(APIResponse):
    status: str
    request: ExchangeRequestResponse
    fallback: Optional[FallbackResponse] = None


class PublishConfigRequest(BaseModel):
    value: Dict[str, Any]


class GameConfigResponse(APIResponse):
    version: int
    value: Dict[str, Any]
