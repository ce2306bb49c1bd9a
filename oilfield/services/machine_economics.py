"""
Machine leveling formulas.

Pure functions over a ``GameConfig`` snapshot: level-scaled speed, burn rate
and tank capacity, and the integer upgrade cost. Nothing here touches the
database.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR

from oilfield.core.exceptions import StateConflictError, ValidationError
from oilfield.services.config_provider import GameConfig, MachineDefinition


@dataclass(frozen=True)
class MachineStats:
    """Effective stats of one machine type at one level."""

    speed_per_hour: Decimal
    burn_per_hour: Decimal
    tank_capacity: Decimal


def scaled(base: Decimal, level: int, per_level_multiplier: Decimal) -> Decimal:
    """``base * (1 + max(0, level - 1) * multiplier)``."""
    return Decimal(base) * (1 + max(0, level - 1) * Decimal(per_level_multiplier))


def get_definition(config: GameConfig, machine_type: str) -> MachineDefinition:
    definition = config.machine(machine_type)
    if definition is None:
        raise ValidationError(
            f"Unknown machine type: {machine_type}",
            {"machine_type": machine_type}
        )
    return definition


def machine_stats(config: GameConfig, machine_type: str, level: int) -> MachineStats:
    definition = get_definition(config, machine_type)
    progression = config.progression
    return MachineStats(
        speed_per_hour=scaled(definition.speed_per_hour, level, progression.speed_multiplier),
        burn_per_hour=scaled(definition.burn_per_hour, level, progression.burn_multiplier),
        tank_capacity=scaled(definition.tank_capacity, level, progression.capacity_multiplier),
    )


def tank_capacity(config: GameConfig, machine_type: str, level: int) -> Decimal:
    return machine_stats(config, machine_type, level).tank_capacity


def upgrade_cost(config: GameConfig, machine_type: str, level: int) -> int:
    """
    Cost to go from ``level`` to ``level + 1``.

    Linear in the current level, floored to a whole currency unit.
    """
    definition = get_definition(config, machine_type)
    raw = definition.cost * level * config.progression.upgrade_cost_multiplier
    return int(raw.to_integral_value(rounding=ROUND_FLOOR))


def can_upgrade(config: GameConfig, machine_type: str, level: int) -> bool:
    return level < get_definition(config, machine_type).max_level


def ensure_upgradable(config: GameConfig, machine_type: str, level: int) -> None:
    """Raise StateConflictError when the machine is already at max level."""
    max_level = get_definition(config, machine_type).max_level
    if level >= max_level:
        raise StateConflictError(
            "Machine is already at max level",
            {"machine_type": machine_type, "level": level, "max_level": max_level}
        )
