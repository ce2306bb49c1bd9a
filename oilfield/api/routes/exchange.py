"""
Auto-exchange routes for players.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from oilfield.api.dependencies import get_database, get_exchange_service, get_pagination_params
from oilfield.api.schemas.common import PaginationParams
from oilfield.api.schemas.exchange import (
    ExchangeSubmitRequest,
    ExchangeSubmitResponse,
    ExchangeRequestResponse,
    ExchangeHistoryResponse,
    FallbackResponse,
    PreferencesResponse,
    PreferencesUpdateRequest,
)
from oilfield.auth import require_authenticated, require_human
from oilfield.models.exchange import AutoExchangePreference
from oilfield.models.player import Player
from oilfield.services.exchange_service import ExchangeService


router = APIRouter()


def preferences_view(preference: AutoExchangePreference, message=None) -> PreferencesResponse:
    return PreferencesResponse(
        message=message,
        enabled=preference.enabled,
        max_daily_claim_tokens=preference.max_daily_claim_tokens,
        default_slippage_percent=preference.default_slippage_percent,
    )


@router.get(
    "/preferences",
    response_model=PreferencesResponse,
    summary="Get Auto-Exchange Preferences"
)
async def get_preferences(
    player: Player = Depends(require_authenticated),
    service: ExchangeService = Depends(get_exchange_service)
):
    return preferences_view(await service.get_preferences(player.id))


@router.put(
    "/preferences",
    response_model=PreferencesResponse,
    summary="Update Auto-Exchange Preferences"
)
async def update_preferences(
    body: PreferencesUpdateRequest,
    player: Player = Depends(require_human),
    service: ExchangeService = Depends(get_exchange_service),
    db: AsyncSession = Depends(get_database)
):
    preference = await service.update_preferences(
        player.id,
        enabled=body.enabled,
        max_daily_claim_tokens=body.max_daily_claim_tokens,
        default_slippage_percent=body.default_slippage_percent,
    )
    await db.commit()
    return preferences_view(preference, message="Preferences updated")


@router.post(
    "/requests",
    response_model=ExchangeSubmitResponse,
    summary="Submit Exchange Request",
    description="Queue claim-tokens for auto-exchange. Nothing is debited until execution"
)
async def submit_exchange(
    body: ExchangeSubmitRequest,
    player: Player = Depends(require_human),
    service: ExchangeService = Depends(get_exchange_service),
    db: AsyncSession = Depends(get_database)
):
    request = await service.submit_exchange_request(
        player.id,
        body.claim_token_amount,
        body.slippage_tolerance_percent
    )
    await db.commit()
    return ExchangeSubmitResponse(
        message="Exchange request submitted",
        request=ExchangeRequestResponse.model_validate(request)
    )


@router.get(
    "/requests",
    response_model=ExchangeHistoryResponse,
    summary="List My Exchange Requests"
)
async def list_exchange_requests(
    player: Player = Depends(require_authenticated),
    pagination: PaginationParams = Depends(get_pagination_params),
    service: ExchangeService = Depends(get_exchange_service)
):
    requests = await service.list_requests(player.id, pagination.limit, pagination.offset)
    fallbacks = await service.list_fallbacks(player.id)
    return ExchangeHistoryResponse(
        requests=[ExchangeRequestResponse.model_validate(r) for r in requests],
        fallbacks=[FallbackResponse.model_validate(f) for f in fallbacks],
    )
