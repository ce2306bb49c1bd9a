"""
Cashout routes for players.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from oilfield.api.dependencies import get_database, get_cashout_service, get_pagination_params
from oilfield.api.schemas.cashout import (
    CashoutSubmitRequest,
    CashoutSubmitResponse,
    RedemptionRequestResponse,
    RedemptionListResponse,
    RoundResponse,
    RoundListResponse,
)
from oilfield.api.schemas.common import PaginationParams
from oilfield.auth import require_authenticated, require_human
from oilfield.models.player import Player
from oilfield.services.cashout_service import CashoutService


router = APIRouter()


@router.post(
    "/requests",
    response_model=CashoutSubmitResponse,
    summary="Submit Cashout Request",
    description="Burn claim-tokens into today's cashout round"
)
async def submit_cashout(
    body: CashoutSubmitRequest,
    player: Player = Depends(require_human),
    service: CashoutService = Depends(get_cashout_service),
    db: AsyncSession = Depends(get_database)
):
    request = await service.submit_cashout_request(player.id, body.amount)
    round_ = await service.get_round(request.round_id)
    await db.commit()
    return CashoutSubmitResponse(
        message="Cashout request submitted",
        request=RedemptionRequestResponse.model_validate(request),
        round=RoundResponse.model_validate(round_),
    )


@router.get(
    "/requests",
    response_model=RedemptionListResponse,
    summary="List My Cashout Requests"
)
async def list_my_requests(
    player: Player = Depends(require_authenticated),
    pagination: PaginationParams = Depends(get_pagination_params),
    service: CashoutService = Depends(get_cashout_service)
):
    requests = await service.list_player_requests(player.id, pagination.limit, pagination.offset)
    return RedemptionListResponse(
        requests=[RedemptionRequestResponse.model_validate(r) for r in requests]
    )


@router.get(
    "/rounds",
    response_model=RoundListResponse,
    summary="List Cashout Rounds"
)
async def list_rounds(
    status: Optional[str] = Query(None, pattern="^(open|closed)$"),
    player: Player = Depends(require_authenticated),
    pagination: PaginationParams = Depends(get_pagination_params),
    service: CashoutService = Depends(get_cashout_service)
):
    rounds = await service.list_rounds(status, pagination.limit, pagination.offset)
    return RoundListResponse(rounds=[RoundResponse.model_validate(r) for r in rounds])
