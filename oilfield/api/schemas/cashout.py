"""
Cashout request, round and payout schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import APIResponse


class CashoutSubmitRequest(BaseModel):
    amount: int = Field(gt=0, description="Claim-tokens to burn into today's round")


class RedemptionRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    round_id: int
    player_id: int
    amount_submitted: int
    status: str
    requested_at: datetime
    processed_at: Optional[datetime] = None


class RoundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    round_date: date
    status: str
    window_start: datetime
    window_end: datetime
    revenue_in_currency: Decimal
    payout_pool_in_currency: Decimal
    total_claim_tokens_submitted: int
    closed_at: Optional[datetime] = None


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    round_id: int
    player_id: int
    claim_tokens_burned: int
    payout_amount: Decimal
    status: str
    tx_reference: Optional[str] = None
    paid_at: Optional[datetime] = None


class CashoutSubmitResponse(APIResponse):
    request: RedemptionRequestResponse
    round: RoundResponse


class RedemptionListResponse(APIResponse):
    requests: List[RedemptionRequestResponse]


class RoundListResponse(APIResponse):
    rounds: List[RoundResponse]


class PayoutListResponse(APIResponse):
    round: RoundResponse
    payouts: List[PayoutResponse]
