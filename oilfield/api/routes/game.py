"""
Game routes: state reads, mining ticks and machine actions.
"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.api.dependencies import get_database, get_mining_service
from oilfield.api.schemas.game import (
    GameStateResponse,
    TickResponse,
    LedgerResponse,
    MachineResponse,
    MachineActionRequest,
)
from oilfield.auth import require_authenticated, require_human
from oilfield.models.machine import Machine
from oilfield.models.player import Player, PlayerLedger
from oilfield.services import machine_economics
from oilfield.services.config_provider import GameConfig
from oilfield.services.mining_service import MiningService


logger = structlog.get_logger(__name__)

router = APIRouter()


def machine_view(config: GameConfig, machine: Machine) -> MachineResponse:
    """Machine row plus its stats at the current level."""
    view = MachineResponse(
        id=machine.id,
        type=machine.type,
        level=machine.level,
        fuel_level=machine.fuel_level,
        is_active=machine.is_active,
        last_processed_at=machine.last_processed_at,
    )
    if config.machine(machine.type) is None:
        return view

    stats = machine_economics.machine_stats(config, machine.type, machine.level)
    view.speed_per_hour = stats.speed_per_hour
    view.burn_per_hour = stats.burn_per_hour
    view.tank_capacity = stats.tank_capacity
    if machine_economics.can_upgrade(config, machine.type, machine.level):
        view.upgrade_cost = machine_economics.upgrade_cost(config, machine.type, machine.level)
    return view


def state_view(config: GameConfig, ledger: PlayerLedger, machines: List[Machine], **extra) -> dict:
    return dict(
        config_version=config.version,
        ledger=LedgerResponse.model_validate(ledger),
        machines=[machine_view(config, m) for m in machines],
        **extra
    )


@router.get(
    "/state",
    response_model=GameStateResponse,
    summary="Get Game State",
    description="Run a mining tick and return the player's ledger and machines"
)
async def get_game_state(
    player: Player = Depends(require_authenticated),
    service: MiningService = Depends(get_mining_service),
    db: AsyncSession = Depends(get_database)
):
    state = await service.get_game_state(player.id)
    await db.commit()
    return GameStateResponse(**state_view(state.config, state.ledger, state.machines))


@router.post(
    "/tick",
    response_model=TickResponse,
    summary="Process Mining Tick",
    description="Advance the player's machines to now"
)
async def process_tick(
    player: Player = Depends(require_human),
    service: MiningService = Depends(get_mining_service),
    db: AsyncSession = Depends(get_database)
):
    tick = await service.process_mining_tick(player.id)
    await db.commit()
    return TickResponse(**state_view(
        service.config,
        tick.ledger,
        tick.machines,
        actions=tick.total_actions,
        claim_tokens_awarded=tick.claim_tokens_awarded,
        claim_tokens_converted=tick.claim_tokens_converted,
        resources_gained=tick.resources_gained,
    ))


@router.post(
    "/actions",
    response_model=GameStateResponse,
    summary="Perform Machine Action",
    description="Buy, fuel, start, stop or upgrade a machine, exchange resources or claim the daily reward"
)
async def perform_action(
    body: MachineActionRequest,
    player: Player = Depends(require_human),
    service: MiningService = Depends(get_mining_service),
    db: AsyncSession = Depends(get_database)
):
    params = body.model_dump(exclude={"action"}, exclude_none=True)
    result = await service.perform_machine_action(player.id, body.action, params)
    await db.commit()

    logger.debug("Action response ready", player_id=player.id, action=body.action)
    return GameStateResponse(
        message=f"{body.action} applied",
        **state_view(service.config, result.ledger, result.machines)
    )
