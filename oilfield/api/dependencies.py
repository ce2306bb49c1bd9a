"""
API dependencies for FastAPI endpoints.
Provides the database session, the game config snapshot for the request
and per-request service instances.
"""

from typing import AsyncGenerator

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.api.schemas.common import PaginationParams
from oilfield.cache import get_config_cache
from oilfield.core.clock import Clock, system_clock
from oilfield.core.database import get_async_session
from oilfield.services.cashout_service import CashoutService
from oilfield.services.config_provider import ConfigProvider, GameConfig
from oilfield.services.exchange_service import ExchangeService
from oilfield.services.mining_service import MiningService
from oilfield.services.purchase_service import PurchaseService


logger = structlog.get_logger(__name__)


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_async_session() as session:
        yield session


def get_clock(request: Request) -> Clock:
    """The app's clock; tests swap it through ``app.state.clock``."""
    return getattr(request.app.state, "clock", None) or system_clock


def get_config_provider(
    request: Request,
    db: AsyncSession = Depends(get_database),
    clock: Clock = Depends(get_clock)
) -> ConfigProvider:
    return ConfigProvider(db, cache=get_config_cache(), clock=clock)


async def get_game_config(provider: ConfigProvider = Depends(get_config_provider)) -> GameConfig:
    """One config snapshot per request."""
    return await provider.get_config()


def get_rng(request: Request):
    return getattr(request.app.state, "rng", None)


def get_swap_provider(request: Request):
    return getattr(request.app.state, "swap_provider", None)


def get_payment_verifier(request: Request):
    return getattr(request.app.state, "payment_verifier", None)


async def get_pagination_params(
    limit: int = Query(50, ge=1, le=500, description="Number of items per page"),
    offset: int = Query(0, ge=0, description="Number of items to skip")
) -> PaginationParams:
    """Get pagination parameters."""
    return PaginationParams(limit=limit, offset=offset)


def get_mining_service(
    request: Request,
    db: AsyncSession = Depends(get_database),
    config: GameConfig = Depends(get_game_config),
    clock: Clock = Depends(get_clock)
) -> MiningService:
    return MiningService(db, config, clock, rng=get_rng(request))


def get_purchase_service(
    request: Request,
    db: AsyncSession = Depends(get_database),
    config: GameConfig = Depends(get_game_config),
    clock: Clock = Depends(get_clock)
) -> PurchaseService:
    return PurchaseService(db, config, verifier=get_payment_verifier(request), clock=clock)


def get_cashout_service(
    db: AsyncSession = Depends(get_database),
    config: GameConfig = Depends(get_game_config),
    clock: Clock = Depends(get_clock),
    mining: MiningService = Depends(get_mining_service)
) -> CashoutService:
    return CashoutService(db, config, clock, mining=mining)


def get_exchange_service(
    request: Request,
    db: AsyncSession = Depends(get_database),
    config: GameConfig = Depends(get_game_config),
    clock: Clock = Depends(get_clock)
) -> ExchangeService:
    return ExchangeService(db, config, clock, swap_provider=get_swap_provider(request))
