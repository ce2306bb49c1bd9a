"""
Operator routes: round settlement, payouts, exchange execution and game
config publishing. Every route requires admin credentials.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.api.dependencies import (
    get_database,
    get_cashout_service,
    get_exchange_service,
    get_config_provider,
    get_game_config,
)
from oilfield.api.schemas.admin import (
    CloseRoundRequest,
    RecalculateRoundRequest,
    SettlementResponse,
    MarkPaidRequest,
    MarkPaidResponse,
    ExecuteExchangeRequest,
    ExecuteExchangeResponse,
    PublishConfigRequest,
    GameConfigResponse,
)
from oilfield.api.schemas.cashout import PayoutResponse, PayoutListResponse, RoundResponse
from oilfield.api.schemas.exchange import ExchangeRequestResponse, FallbackResponse, AuditLogResponse, AuditEntryResponse
from oilfield.auth import AdminContext, require_admin
from oilfield.services.cashout_service import CashoutService, RoundSettlement
from oilfield.services.config_provider import ConfigProvider, GameConfig
from oilfield.services.exchange_service import ExchangeService


logger = structlog.get_logger(__name__)

router = APIRouter()


def settlement_view(settlement: RoundSettlement) -> SettlementResponse:
    return SettlementResponse(
        message=settlement.message or None,
        round_id=settlement.round_id,
        status=settlement.status,
        total_claim_tokens=settlement.total_claim_tokens,
        payout_pool=settlement.payout_pool,
        revenue=settlement.revenue,
        payouts_written=settlement.payouts_written,
    )


@router.post(
    "/rounds/{round_id}/close",
    response_model=SettlementResponse,
    summary="Close Cashout Round",
    description="Fix the payout pool and write one payout per player"
)
async def close_round(
    round_id: int,
    body: CloseRoundRequest = CloseRoundRequest(),
    admin: AdminContext = Depends(require_admin),
    service: CashoutService = Depends(get_cashout_service),
    db: AsyncSession = Depends(get_database)
):
    logger.info("Admin closing round", round_id=round_id, actor=admin.actor)
    settlement = await service.close_round(round_id, body.manual_pool)
    await db.commit()
    return settlement_view(settlement)


@router.post(
    "/rounds/{round_id}/recalculate",
    response_model=SettlementResponse,
    summary="Recalculate Cashout Round",
    description="Re-split a corrected pool over the round's existing payouts"
)
async def recalculate_round(
    round_id: int,
    body: RecalculateRoundRequest,
    admin: AdminContext = Depends(require_admin),
    service: CashoutService = Depends(get_cashout_service),
    db: AsyncSession = Depends(get_database)
):
    logger.info("Admin recalculating round", round_id=round_id, actor=admin.actor, new_pool=str(body.new_pool))
    settlement = await service.recalculate_round(round_id, body.new_pool)
    await db.commit()
    return settlement_view(settlement)


@router.get(
    "/rounds/{round_id}/payouts",
    response_model=PayoutListResponse,
    summary="List Round Payouts"
)
async def list_round_payouts(
    round_id: int,
    admin: AdminContext = Depends(require_admin),
    service: CashoutService = Depends(get_cashout_service)
):
    payouts = await service.list_round_payouts(round_id)
    round_ = await service.get_round(round_id)
    return PayoutListResponse(
        round=RoundResponse.model_validate(round_),
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
    )


@router.post(
    "/payouts/{payout_id}/paid",
    response_model=MarkPaidResponse,
    summary="Mark Payout Paid"
)
async def mark_payout_paid(
    payout_id: int,
    body: MarkPaidRequest,
    admin: AdminContext = Depends(require_admin),
    service: CashoutService = Depends(get_cashout_service),
    db: AsyncSession = Depends(get_database)
):
    payout = await service.mark_payout_paid(payout_id, body.tx_reference)
    await db.commit()
    logger.info("Admin marked payout paid", payout_id=payout_id, actor=admin.actor)
    return MarkPaidResponse(payout=PayoutResponse.model_validate(payout))


@router.post(
    "/exchange/{request_id}/execute",
    response_model=ExecuteExchangeResponse,
    summary="Execute Exchange Request",
    description="Record a realized swap or call the swap provider; failures end in a fallback record"
)
async def execute_exchange(
    request_id: int,
    body: ExecuteExchangeRequest = ExecuteExchangeRequest(),
    admin: AdminContext = Depends(require_admin),
    service: ExchangeService = Depends(get_exchange_service),
    db: AsyncSession = Depends(get_database)
):
    result = await service.execute_exchange_request(request_id, body.tx_reference, body.amount_received)
    await db.commit()
    logger.info("Admin executed exchange", request_id=request_id, status=result.status, actor=admin.actor)
    return ExecuteExchangeResponse(
        status=result.status,
        request=ExchangeRequestResponse.model_validate(result.request),
        fallback=FallbackResponse.model_validate(result.fallback) if result.fallback else None,
    )


@router.get(
    "/exchange/audit/{player_id}",
    response_model=AuditLogResponse,
    summary="Player Exchange Audit Log"
)
async def exchange_audit_log(
    player_id: int,
    admin: AdminContext = Depends(require_admin),
    service: ExchangeService = Depends(get_exchange_service)
):
    entries = await service.list_audit_log(player_id)
    return AuditLogResponse(entries=[AuditEntryResponse.model_validate(e) for e in entries])


@router.get(
    "/config",
    response_model=GameConfigResponse,
    summary="Current Game Config"
)
async def get_config(
    admin: AdminContext = Depends(require_admin),
    config: GameConfig = Depends(get_game_config)
):
    return GameConfigResponse(version=config.version, value=config.payload())


@router.post(
    "/config",
    response_model=GameConfigResponse,
    summary="Publish Game Config",
    description="Validate and store a new config version"
)
async def publish_config(
    body: PublishConfigRequest,
    admin: AdminContext = Depends(require_admin),
    provider: ConfigProvider = Depends(get_config_provider),
    db: AsyncSession = Depends(get_database)
):
    config = await provider.publish_config(body.value, published_by=admin.actor)
    await db.commit()
    return GameConfigResponse(
        message=f"Published config version {config.version}",
        version=config.version,
        value=config.payload()
    )
