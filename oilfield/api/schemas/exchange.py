"""
Auto-exchange schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .common import APIResponse


class ExchangeSubmitRequest(BaseModel):
    claim_token_amount: int = Field(gt=0)
    slippage_tolerance_percent: Optional[Decimal] = Field(
        default=None,
        description="0.1 to 5.0; the player's default when omitted"
    )


class ExchangeRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    player_id: int
    claim_token_amount: int
    target_amount: Decimal
    slippage_tolerance_percent: Decimal
    status: str
    amount_received: Optional[Decimal] = None
    tx_reference: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    execution_started_at: Optional[datetime] = None
    requested_at: datetime


class FallbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    exchange_request_id: int
    claim_token_amount: int
    reason: str
    status: str


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    request_id: Optional[int] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    logged_at: datetime


class ExchangeSubmitResponse(APIResponse):
    request: ExchangeRequestResponse


class ExchangeHistoryResponse(APIResponse):
    requests: List[ExchangeRequestResponse]
    fallbacks: List[FallbackResponse]


class AuditLogResponse(APIResponse):
    entries: List[AuditEntryResponse]


class PreferencesResponse(APIResponse):
    enabled: bool
    max_daily_claim_tokens: int
    default_slippage_percent: Decimal


class PreferencesUpdateRequest(BaseModel):
    enabled: Optional[bool] = None
    max_daily_claim_tokens: Optional[int] = Field(default=None, gt=0)
    default_slippage_percent: Optional[Decimal] = None
