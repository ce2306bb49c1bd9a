"""
Shared fixtures: in-memory database, frozen clock, scripted randomness and
an HTTP client over the ASGI app.
"""

import copy
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from oilfield.api.dependencies import get_database
from oilfield.api.main import create_app
from oilfield.core.clock import FrozenClock
from oilfield.core.database import build_engine, session_factory
from oilfield.models import Base, Player, Machine
from oilfield.services.config_provider import DEFAULT_GAME_CONFIG, parse_game_config
from oilfield.services.ledger import lock_ledger


class ScriptedRandom:
    """Returns queued values, then ``default`` forever. Counts every draw."""

    def __init__(self, values: Iterable[float] = (), default: float = 0.99):
        self.values = list(values)
        self.default = default
        self.draws = 0

    def random(self) -> float:
        self.draws += 1
        if self.values:
            return self.values.pop(0)
        return self.default


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    async with session_factory(engine)() as session:
        yield session


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def rng():
    return ScriptedRandom()


@pytest.fixture
def config_factory():
    """Build a GameConfig from the defaults plus nested overrides."""

    def build(overrides: Optional[Dict[str, Any]] = None, version: int = 0):
        return parse_game_config(_merge(DEFAULT_GAME_CONFIG, overrides or {}), version=version)

    return build


@pytest.fixture
def config(config_factory):
    return config_factory()


@pytest.fixture
def make_player(session, clock):
    """Create a player and its ledger with the given balances."""
    counter = {"n": 0}

    async def create(
        fuel: Decimal = Decimal("0"),
        claim_tokens: int = 0,
        verified: bool = True,
        is_admin: bool = False,
        resources: Optional[Dict[str, int]] = None,
        daily_count: int = 0
    ) -> Player:
        counter["n"] += 1
        player = Player(
            wallet_address=f"0x{counter['n']:040x}",
            is_human_verified=verified,
            is_admin=is_admin,
        )
        session.add(player)
        await session.flush()

        ledger = await lock_ledger(session, player.id, clock)
        ledger.fuel_currency = Decimal(fuel)
        ledger.claim_tokens = claim_tokens
        ledger.secondary_resources = resources or {}
        ledger.daily_claim_token_count = daily_count
        await session.commit()
        return player

    return create


@pytest.fixture
def make_machine(session):
    async def create(
        player: Player,
        machine_type: str = "mini",
        level: int = 1,
        fuel: Decimal = Decimal("0"),
        active: bool = False,
        last_processed_at=None
    ) -> Machine:
        machine = Machine(
            player_id=player.id,
            type=machine_type,
            level=level,
            fuel_level=Decimal(fuel),
            is_active=active,
            last_processed_at=last_processed_at,
        )
        session.add(machine)
        await session.commit()
        return machine

    return create


@pytest.fixture
def auth_headers():
    def headers(player_or_token) -> Dict[str, str]:
        token = getattr(player_or_token, "wallet_address", player_or_token)
        return {"Authorization": f"Bearer {token}"}

    return headers


@pytest.fixture
def app(session, clock, rng):
    app = create_app()

    async def _test_database():
        yield session

    app.dependency_overrides[get_database] = _test_database
    app.state.clock = clock
    app.state.rng = rng
    return app


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
