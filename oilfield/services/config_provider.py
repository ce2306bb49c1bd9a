"""
Game economy configuration provider.

The economy is described by a versioned, immutable ``GameConfig`` snapshot.
Each operation fetches one snapshot and threads it through every call it
makes; published snapshots are never edited in place, a change is a new
version.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, model_validator
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.core.clock import Clock, system_clock
from oilfield.core.config import settings
from oilfield.core.exceptions import ValidationError
from oilfield.models.cashout import PoolMode
from oilfield.models.game_config import GameConfigRecord

logger = structlog.get_logger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class PricingConfig(_Frozen):
    fuel_per_currency: Decimal = Field(gt=0, description="Fuel currency per unit of external currency")


class MachineDefinition(_Frozen):
    cost: Decimal = Field(ge=0, description="Purchase price in fuel currency, also the upgrade base cost")
    speed_per_hour: Decimal = Field(ge=0, description="Mining actions per hour at level 1")
    burn_per_hour: Decimal = Field(ge=0, description="Fuel burned per hour at level 1")
    tank_capacity: Decimal = Field(gt=0)
    max_level: int = Field(ge=1)


class ResourceDrop(_Frozen):
    drop_rate: float = Field(ge=0, le=1)
    fuel_value: Decimal = Field(ge=0, description="Fuel currency per unit when exchanged")


class ClaimTokenDrop(_Frozen):
    drop_rate: float = Field(ge=0, le=1)


class MiningConfig(_Frozen):
    resources: Dict[str, ResourceDrop]
    claim_token: ClaimTokenDrop


class ClaimTokenControls(_Frozen):
    daily_cap: int = Field(ge=0)
    excess_conversion_value: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Fuel currency granted per drop beyond the daily cap, 0 discards"
    )


class ProgressionConfig(_Frozen):
    speed_multiplier: Decimal = Field(ge=0)
    burn_multiplier: Decimal = Field(ge=0)
    capacity_multiplier: Decimal = Field(ge=0)
    upgrade_cost_multiplier: Decimal = Field(ge=0)


class CashoutConfig(_Frozen):
    enabled: bool = True
    min_claim_tokens: int = Field(default=1, ge=0)
    max_claim_tokens: int = Field(default=1_000_000, ge=1)
    cooldown_days: int = Field(default=0, ge=0)
    requests_per_day: int = Field(default=1, ge=1)
    pool_mode: PoolMode = PoolMode.EXCHANGE_RATE
    exchange_rate: Decimal = Field(default=Decimal("0.1"), ge=0, description="Currency per claim-token")


class TreasuryConfig(_Frozen):
    payout_percentage: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)


class AutoExchangeConfig(_Frozen):
    enabled: bool = False
    max_claim_tokens: int = Field(default=100_000, ge=1)


class DailyRewardConfig(_Frozen):
    fuel_amount: Decimal = Field(default=Decimal("0"), ge=0)


class GameConfig(_Frozen):
    """Immutable snapshot of every economy parameter."""

    version: int = 0
    pricing: PricingConfig
    machines: Dict[str, MachineDefinition]
    mining: MiningConfig
    claim_token_controls: ClaimTokenControls
    progression: ProgressionConfig
    cashout: CashoutConfig = CashoutConfig()
    treasury: TreasuryConfig = TreasuryConfig()
    auto_exchange: AutoExchangeConfig = AutoExchangeConfig()
    daily_reward: DailyRewardConfig = DailyRewardConfig()

    @model_validator(mode="after")
    def _check_tables(self) -> "GameConfig":
        if not self.machines:
            raise ValueError("at least one machine type is required")
        return self

    def machine(self, machine_type: str) -> Optional[MachineDefinition]:
        return self.machines.get(machine_type)

    def payload(self) -> Dict[str, Any]:
        """JSON-safe body without the version."""
        return self.model_dump(mode="json", exclude={"version"})


DEFAULT_GAME_CONFIG: Dict[str, Any] = {
    "pricing": {"fuel_per_currency": "1000"},
    "machines": {
        "mini": {"cost": "100", "speed_per_hour": "10", "burn_per_hour": "5",
                 "tank_capacity": "50", "max_level": 10},
        "light": {"cost": "500", "speed_per_hour": "30", "burn_per_hour": "12",
                  "tank_capacity": "150", "max_level": 10},
        "heavy": {"cost": "2000", "speed_per_hour": "80", "burn_per_hour": "28",
                  "tank_capacity": "400", "max_level": 15},
        "mega": {"cost": "10000", "speed_per_hour": "240", "burn_per_hour": "70",
                 "tank_capacity": "1200", "max_level": 20},
    },
    "mining": {
        "resources": {
            "bronze": {"drop_rate": 0.1, "fuel_value": "0.5"},
            "silver": {"drop_rate": 0.04, "fuel_value": "2"},
            "gold": {"drop_rate": 0.01, "fuel_value": "10"},
            "iron": {"drop_rate": 0.2, "fuel_value": "0.2"},
        },
        "claim_token": {"drop_rate": 0.001},
    },
    "claim_token_controls": {"daily_cap": 5, "excess_conversion_value": "0"},
    "progression": {
        "speed_multiplier": "0.1",
        "burn_multiplier": "0.05",
        "capacity_multiplier": "0.1",
        "upgrade_cost_multiplier": "0.5",
    },
    "cashout": {
        "enabled": True,
        "min_claim_tokens": 1,
        "max_claim_tokens": 1000000,
        "cooldown_days": 0,
        "requests_per_day": 1,
        "pool_mode": "exchange_rate",
        "exchange_rate": "0.1",
    },
    "treasury": {"payout_percentage": "0.5"},
    "auto_exchange": {"enabled": False, "max_claim_tokens": 100000},
    "daily_reward": {"fuel_amount": "25"},
}


def parse_game_config(value: Dict[str, Any], version: int) -> GameConfig:
    """Validate a raw snapshot body; raises ValidationError on bad input."""
    try:
        return GameConfig.model_validate({**value, "version": version})
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid game configuration",
            {"errors": e.errors(include_url=False, include_input=False, include_context=False)}
        )


class ConfigProvider:
    """Loads the current snapshot, optionally through a Redis cache."""

    CACHE_KEY = "game_config:current"

    def __init__(self, db: AsyncSession, cache=None, clock: Clock = system_clock):
        self.db = db
        self.cache = cache
        self.clock = clock
        self.logger = logger.bind(service="config_provider")

    async def get_config(self) -> GameConfig:
        """Current snapshot; built-in defaults (version 0) until one is published."""
        cached = await self._read_cache()
        if cached is not None:
            return cached

        result = await self.db.execute(
            select(GameConfigRecord).order_by(GameConfigRecord.version.desc()).limit(1)
        )
        record = result.scalar_one_or_none()

        if record is None:
            config = parse_game_config(DEFAULT_GAME_CONFIG, version=0)
        else:
            config = parse_game_config(record.value, version=record.version)

        await self._write_cache(config)
        return config

    async def publish_config(self, value: Dict[str, Any], published_by: Optional[str] = None) -> GameConfig:
        """Validate and store a new version. Returns the new snapshot."""
        result = await self.db.execute(select(func.max(GameConfigRecord.version)))
        next_version = (result.scalar() or 0) + 1

        config = parse_game_config(value, version=next_version)

        self.db.add(GameConfigRecord(
            version=next_version,
            value=config.payload(),
            published_by=published_by,
            published_at=self.clock.now()
        ))
        await self.db.flush()

        await self._invalidate_cache()
        self.logger.info("Game config published", version=next_version, published_by=published_by)
        return config

    async def _read_cache(self) -> Optional[GameConfig]:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get(self.CACHE_KEY)
        except Exception as e:
            self.logger.warning("Config cache read failed", error=str(e))
            return None
        if not raw:
            return None
        data = json.loads(raw)
        return parse_game_config(data["value"], version=data["version"])

    async def _write_cache(self, config: GameConfig) -> None:
        if self.cache is None:
            return
        body = json.dumps({"version": config.version, "value": config.payload()})
        try:
            await self.cache.set(self.CACHE_KEY, body, ex=settings.config_cache_ttl)
        except Exception as e:
            self.logger.warning("Config cache write failed", error=str(e))

    async def _invalidate_cache(self) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(self.CACHE_KEY)
        except Exception as e:
            self.logger.warning("Config cache invalidation failed", error=str(e))
