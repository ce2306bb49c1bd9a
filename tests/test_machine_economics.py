"""
Test machine leveling formulas and the pure accrual helpers.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from oilfield.core.exceptions import StateConflictError, ValidationError
from oilfield.models.machine import Machine
from oilfield.services import machine_economics
from oilfield.services.mining_service import advance_machine, elapsed_hours, roll_drops

from conftest import ScriptedRandom

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_level_one_uses_base_stats(config):
    stats = machine_economics.machine_stats(config, "mini", 1)
    assert stats.speed_per_hour == Decimal("10")
    assert stats.burn_per_hour == Decimal("5")
    assert stats.tank_capacity == Decimal("50")


def test_stats_scale_linearly_with_level(config):
    stats = machine_economics.machine_stats(config, "mini", 3)
    # 10 * (1 + 2 * 0.1), 5 * (1 + 2 * 0.05), 50 * (1 + 2 * 0.1)
    assert stats.speed_per_hour == Decimal("12")
    assert stats.burn_per_hour == Decimal("5.5")
    assert stats.tank_capacity == Decimal("60")


def test_upgrade_cost_is_floored(config_factory):
    config = config_factory({"progression": {"upgrade_cost_multiplier": "0.333"}})
    # 100 * 3 * 0.333 = 99.9
    assert machine_economics.upgrade_cost(config, "mini", 3) == 99


def test_upgrade_cost_grows_with_level(config):
    assert machine_economics.upgrade_cost(config, "light", 1) == 250
    assert machine_economics.upgrade_cost(config, "light", 4) == 1000


def test_unknown_machine_type(config):
    with pytest.raises(ValidationError):
        machine_economics.machine_stats(config, "drill", 1)


def test_max_level_blocks_upgrade(config):
    assert machine_economics.can_upgrade(config, "mini", 9)
    assert not machine_economics.can_upgrade(config, "mini", 10)
    with pytest.raises(StateConflictError):
        machine_economics.ensure_upgradable(config, "mini", 10)


def test_elapsed_hours_is_exact():
    assert elapsed_hours(T0, T0 + timedelta(minutes=6)) == Decimal("0.1")
    assert elapsed_hours(T0, T0 + timedelta(hours=1, minutes=30)) == Decimal("1.5")
    assert elapsed_hours(T0, T0 - timedelta(minutes=1)) < 0


def test_fuel_bounded_accrual():
    """2 fuel at 5/h burn over one hour runs for 0.4h and empties the tank."""
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("2"), is_active=True, last_processed_at=T0)

    accrual = advance_machine(machine, Decimal("10"), Decimal("5"), T0 + timedelta(hours=1))

    assert accrual.effective_hours == Decimal("0.4")
    assert accrual.actions == 4
    assert machine.fuel_level == Decimal("0")
    assert machine.is_active is False
    assert machine.last_processed_at == T0 + timedelta(minutes=24)


def test_partial_hour_keeps_running():
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("10"), is_active=True, last_processed_at=T0)

    accrual = advance_machine(machine, Decimal("10"), Decimal("5"), T0 + timedelta(minutes=30))

    assert accrual.actions == 5
    assert machine.fuel_level == Decimal("7.5")
    assert machine.is_active is True
    assert machine.last_processed_at == T0 + timedelta(minutes=30)


def test_zero_burn_never_runs_dry():
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("1"), is_active=True, last_processed_at=T0)

    accrual = advance_machine(machine, Decimal("10"), Decimal("0"), T0 + timedelta(hours=3))

    assert accrual.actions == 30
    assert machine.fuel_level == Decimal("1")
    assert machine.is_active is True


def test_first_tick_only_stamps_watermark():
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("5"), is_active=True, last_processed_at=None)

    assert advance_machine(machine, Decimal("10"), Decimal("5"), T0) is None
    assert machine.last_processed_at == T0
    assert machine.fuel_level == Decimal("5")


def test_clock_skew_is_ignored():
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("5"), is_active=True, last_processed_at=T0)

    assert advance_machine(machine, Decimal("10"), Decimal("5"), T0 - timedelta(minutes=5)) is None
    assert machine.last_processed_at == T0


def test_empty_tank_starves_machine():
    machine = Machine(id=1, type="mini", level=1, fuel_level=Decimal("0"), is_active=True, last_processed_at=T0)

    accrual = advance_machine(machine, Decimal("10"), Decimal("5"), T0 + timedelta(hours=1))

    assert accrual.starved
    assert accrual.actions == 0
    assert machine.is_active is False
    assert machine.last_processed_at == T0


def test_roll_drops_draws_resources_then_claim_token(config_factory):
    config = config_factory({
        "mining": {
            "resources": {
                "bronze": {"drop_rate": 0.5, "fuel_value": "0.5"},
                "silver": {"drop_rate": 0.5, "fuel_value": "2"},
                "gold": {"drop_rate": 0.5, "fuel_value": "10"},
                "iron": {"drop_rate": 0.5, "fuel_value": "0.2"},
            },
            "claim_token": {"drop_rate": 0.5},
        }
    })
    # Two actions: bronze, silver, gold, iron, claim-token each
    rng = ScriptedRandom([0.1, 0.9, 0.9, 0.1, 0.1, 0.9, 0.9, 0.1, 0.9, 0.9])

    rolls = roll_drops(2, config.mining, rng)

    assert rolls.resources == {"bronze": 1, "silver": 0, "gold": 1, "iron": 1}
    assert rolls.claim_tokens == 1
    assert rng.draws == 10
