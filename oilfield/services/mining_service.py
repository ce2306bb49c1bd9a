"""
Mining accrual and player machine actions.

A mining tick brings a player's ledger and machines up to "now": every
active machine burns fuel for the time it could actually run, rolls resource
and claim-token drops per mining action, and advances its watermark by the
hours it ran so leftover time survives an empty tank.
"""

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.core.clock import Clock, system_clock
from oilfield.core.exceptions import (
    ValidationError, InsufficientBalanceError, StateConflictError,
    RateLimitError, FeatureDisabledError, MachineNotFoundError
)
from oilfield.models.base import quantize_amount
from oilfield.models.machine import Machine
from oilfield.models.player import PlayerLedger
from oilfield.services import machine_economics
from oilfield.services.config_provider import GameConfig, MiningConfig
from oilfield.services.ledger import lock_ledger

logger = structlog.get_logger(__name__)

DAY = timedelta(hours=24)


class RandomSource(Protocol):
    def random(self) -> float:
        ...


def elapsed_hours(start: datetime, end: datetime) -> Decimal:
    """Exact elapsed hours between two datetimes, microsecond resolution."""
    return Decimal((end - start) // timedelta(microseconds=1)) / Decimal(3_600_000_000)


def hours_to_timedelta(hours: Decimal) -> timedelta:
    return timedelta(microseconds=int(hours * 3_600_000_000))


@dataclass
class MachineAccrual:
    """Outcome of advancing one machine."""

    machine_id: int
    actions: int = 0
    effective_hours: Decimal = Decimal("0")
    fuel_used: Decimal = Decimal("0")
    starved: bool = False


@dataclass
class DropRolls:
    """Raw drops rolled for a batch of mining actions."""

    resources: Dict[str, int] = field(default_factory=dict)
    claim_tokens: int = 0


@dataclass
class TickResult:
    """Ledger and machines as of the tick, plus what changed."""

    ledger: PlayerLedger
    machines: List[Machine]
    accruals: List[MachineAccrual] = field(default_factory=list)
    claim_tokens_awarded: int = 0
    claim_tokens_converted: int = 0
    claim_tokens_discarded: int = 0
    resources_gained: Dict[str, int] = field(default_factory=dict)

    @property
    def total_actions(self) -> int:
        return sum(a.actions for a in self.accruals)


@dataclass
class GameState:
    config: GameConfig
    ledger: PlayerLedger
    machines: List[Machine]


def advance_machine(
    machine: Machine,
    speed_per_hour: Decimal,
    burn_per_hour: Decimal,
    now: datetime
) -> Optional[MachineAccrual]:
    """
    Advance an active machine's fuel and watermark to ``now``.

    Returns None when there is nothing to do (clock skew or a first tick,
    which only stamps the watermark). Drops are rolled by the caller from
    ``actions``.
    """
    if machine.last_processed_at is None:
        machine.last_processed_at = now
        return None

    hours = elapsed_hours(machine.last_processed_at, now)
    if hours <= 0:
        return None

    fuel = Decimal(machine.fuel_level)
    if burn_per_hour > 0:
        max_hours_by_fuel = fuel / burn_per_hour
        effective_hours = min(hours, max_hours_by_fuel)
    else:
        # Zero burn never runs dry
        max_hours_by_fuel = None
        effective_hours = hours

    if effective_hours <= 0:
        machine.is_active = False
        return MachineAccrual(machine_id=machine.id, starved=True)

    actions = int(effective_hours * speed_per_hour)

    if max_hours_by_fuel is not None and effective_hours == max_hours_by_fuel:
        remaining = Decimal("0")
    else:
        remaining = max(Decimal("0"), quantize_amount(fuel - effective_hours * burn_per_hour))

    machine.fuel_level = remaining
    machine.last_processed_at = machine.last_processed_at + hours_to_timedelta(effective_hours)
    machine.is_active = remaining > 0

    return MachineAccrual(
        machine_id=machine.id,
        actions=actions,
        effective_hours=effective_hours,
        fuel_used=fuel - remaining,
    )


def roll_drops(actions: int, mining: MiningConfig, rng: RandomSource) -> DropRolls:
    """Independent draws per action: every resource, then the claim-token."""
    rolls = DropRolls(resources={kind: 0 for kind in mining.resources})
    claim_rate = mining.claim_token.drop_rate

    for _ in range(actions):
        for kind, drop in mining.resources.items():
            if rng.random() < drop.drop_rate:
                rolls.resources[kind] += 1
        if rng.random() < claim_rate:
            rolls.claim_tokens += 1

    return rolls


class MiningService:
    """Mining ticks and machine actions for one player at a time."""

    ACTIONS = (
        "buy_machine",
        "fuel_machine",
        "start_machine",
        "stop_machine",
        "upgrade_machine",
        "exchange_resources",
        "claim_daily_reward",
    )

    def __init__(
        self,
        db: AsyncSession,
        config: GameConfig,
        clock: Clock = system_clock,
        rng: Optional[RandomSource] = None
    ):
        self.db = db
        self.config = config
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = logger.bind(service="mining_service")

    async def get_ledger_for_update(self, player_id: int) -> PlayerLedger:
        return await lock_ledger(self.db, player_id, self.clock)

    async def get_machines_for_update(self, player_id: int) -> List[Machine]:
        result = await self.db.execute(
            select(Machine)
            .where(Machine.player_id == player_id)
            .order_by(Machine.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def process_mining_tick(self, player_id: int) -> TickResult:
        """Advance the player's ledger and machines to now and flush."""
        now = self.clock.now()
        ledger = await self.get_ledger_for_update(player_id)
        machines = await self.get_machines_for_update(player_id)

        if now - ledger.daily_reset_at >= DAY:
            ledger.daily_claim_token_count = 0
            ledger.daily_reset_at = now

        result = TickResult(ledger=ledger, machines=machines)
        resources = {kind: 0 for kind in self.config.mining.resources}
        resources.update(ledger.secondary_resources or {})
        fuel_currency = Decimal(ledger.fuel_currency)
        claim_tokens = ledger.claim_tokens
        daily_count = ledger.daily_claim_token_count
        daily_cap = self.config.claim_token_controls.daily_cap
        excess_value = self.config.claim_token_controls.excess_conversion_value

        for machine in machines:
            if not machine.is_active:
                continue

            if self.config.machine(machine.type) is None:
                self.logger.warning(
                    "Skipping machine with unknown type",
                    player_id=player_id, machine_id=machine.id, machine_type=machine.type
                )
                continue

            stats = machine_economics.machine_stats(self.config, machine.type, machine.level)
            accrual = advance_machine(machine, stats.speed_per_hour, stats.burn_per_hour, now)
            if accrual is None:
                continue
            result.accruals.append(accrual)
            if accrual.actions == 0:
                continue

            rolls = roll_drops(accrual.actions, self.config.mining, self.rng)
            for kind, amount in rolls.resources.items():
                if amount:
                    resources[kind] = resources.get(kind, 0) + amount
                    result.resources_gained[kind] = result.resources_gained.get(kind, 0) + amount

            for _ in range(rolls.claim_tokens):
                if daily_count < daily_cap:
                    claim_tokens += 1
                    daily_count += 1
                    result.claim_tokens_awarded += 1
                elif excess_value > 0:
                    fuel_currency += excess_value
                    result.claim_tokens_converted += 1
                else:
                    result.claim_tokens_discarded += 1

        ledger.secondary_resources = resources
        ledger.fuel_currency = quantize_amount(fuel_currency)
        ledger.claim_tokens = claim_tokens
        ledger.daily_claim_token_count = daily_count
        ledger.last_active_at = now
        await self.db.flush()

        if result.accruals:
            self.logger.info(
                "Mining tick processed",
                player_id=player_id,
                machines=len(result.accruals),
                actions=result.total_actions,
                claim_tokens_awarded=result.claim_tokens_awarded,
                claim_tokens_converted=result.claim_tokens_converted,
                claim_tokens_discarded=result.claim_tokens_discarded,
            )
        return result

    async def get_game_state(self, player_id: int) -> GameState:
        tick = await self.process_mining_tick(player_id)
        return GameState(config=self.config, ledger=tick.ledger, machines=tick.machines)

    async def perform_machine_action(
        self,
        player_id: int,
        action: str,
        params: Optional[Dict[str, Any]] = None
    ) -> TickResult:
        """
        Run a tick, then apply one player action under the ledger lock.

        The tick is committed on its own first, so a rejected action never
        rolls back production already earned.
        """
        if action not in self.ACTIONS:
            raise ValidationError(f"Unknown action: {action}", {"action": action})
        params = params or {}

        await self.process_mining_tick(player_id)
        await self.db.commit()

        ledger = await self.get_ledger_for_update(player_id)
        handler = getattr(self, f"_{action}")
        await handler(ledger, params)
        await self.db.flush()

        machines = await self.get_machines_for_update(player_id)
        self.logger.info("Machine action applied", player_id=player_id, action=action)
        return TickResult(ledger=ledger, machines=machines)

    async def _get_owned_machine(self, player_id: int, params: Dict[str, Any]) -> Machine:
        machine_id = params.get("machine_id")
        if machine_id is None:
            raise ValidationError("machine_id is required")
        result = await self.db.execute(
            select(Machine)
            .where(Machine.id == machine_id, Machine.player_id == player_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        machine = result.scalar_one_or_none()
        if machine is None:
            raise MachineNotFoundError(machine_id)
        return machine

    def _debit_fuel_currency(self, ledger: PlayerLedger, cost: Decimal) -> None:
        if ledger.fuel_currency < cost:
            raise InsufficientBalanceError("fuel_currency", cost, ledger.fuel_currency)
        ledger.fuel_currency = ledger.fuel_currency - cost

    async def _buy_machine(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        machine_type = params.get("machine_type")
        definition = machine_economics.get_definition(self.config, machine_type)
        self._debit_fuel_currency(ledger, definition.cost)

        self.db.add(Machine(
            player_id=ledger.player_id,
            type=machine_type,
            level=1,
            fuel_level=Decimal("0"),
            is_active=False,
            last_processed_at=None,
        ))

    async def _fuel_machine(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        machine = await self._get_owned_machine(ledger.player_id, params)
        capacity = machine_economics.tank_capacity(self.config, machine.type, machine.level)
        needed = max(Decimal("0"), capacity - machine.fuel_level)

        requested = params.get("amount")
        if requested is None:
            requested = needed
        else:
            requested = Decimal(str(requested))
            if requested <= 0:
                raise ValidationError("Fuel amount must be positive", {"amount": str(requested)})

        fill = quantize_amount(min(needed, requested, ledger.fuel_currency))
        if fill <= 0:
            raise InsufficientBalanceError("fuel_currency", min(needed, requested), ledger.fuel_currency)

        ledger.fuel_currency = ledger.fuel_currency - fill
        machine.fuel_level = machine.fuel_level + fill

    async def _start_machine(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        machine = await self._get_owned_machine(ledger.player_id, params)
        if machine.fuel_level <= 0:
            raise StateConflictError("Machine has no fuel", {"machine_id": machine.id})
        machine.is_active = True
        machine.last_processed_at = self.clock.now()

    async def _stop_machine(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        machine = await self._get_owned_machine(ledger.player_id, params)
        machine.is_active = False
        machine.last_processed_at = self.clock.now()

    async def _upgrade_machine(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        machine = await self._get_owned_machine(ledger.player_id, params)
        machine_economics.ensure_upgradable(self.config, machine.type, machine.level)
        cost = Decimal(machine_economics.upgrade_cost(self.config, machine.type, machine.level))
        self._debit_fuel_currency(ledger, cost)
        machine.level = machine.level + 1

    async def _exchange_resources(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        kind = params.get("resource")
        drop = self.config.mining.resources.get(kind)
        if drop is None:
            raise ValidationError(f"Unknown resource: {kind}", {"resource": kind})

        amount = params.get("amount")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("Resource amount must be a positive integer", {"amount": amount})

        available = ledger.resource(kind)
        if available < amount:
            raise InsufficientBalanceError(kind, amount, available)

        gain = quantize_amount(drop.fuel_value * amount)
        ledger.secondary_resources = {**(ledger.secondary_resources or {}), kind: available - amount}
        ledger.fuel_currency = ledger.fuel_currency + gain
        ledger.total_converted_fuel = ledger.total_converted_fuel + gain

    async def _claim_daily_reward(self, ledger: PlayerLedger, params: Dict[str, Any]) -> None:
        reward = self.config.daily_reward.fuel_amount
        if reward <= 0:
            raise FeatureDisabledError("daily_reward")

        now = self.clock.now()
        if ledger.last_daily_claim_at is not None and now - ledger.last_daily_claim_at < DAY:
            next_claim_at = ledger.last_daily_claim_at + DAY
            raise RateLimitError(
                "Daily reward already claimed",
                {"next_claim_at": next_claim_at.isoformat()}
            )

        ledger.fuel_currency = ledger.fuel_currency + reward
        ledger.last_daily_claim_at = now
