"""
Row-locking and counter primitives shared by every service that touches a
player's balances.
"""

from decimal import Decimal
from typing import Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

import structlog

from oilfield.core.clock import Clock
from oilfield.core.exceptions import PlayerNotFoundError
from oilfield.models.player import Player, PlayerLedger

logger = structlog.get_logger(__name__)


async def _select_locked(db: AsyncSession, player_id: int) -> Optional[PlayerLedger]:
    result = await db.execute(
        select(PlayerLedger)
        .where(PlayerLedger.player_id == player_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def lock_ledger(db: AsyncSession, player_id: int, clock: Clock) -> PlayerLedger:
    """
    ``SELECT ... FOR UPDATE`` the player's ledger, creating it on first access.

    The lock is held until the caller's transaction ends.
    """
    ledger = await _select_locked(db, player_id)
    if ledger is not None:
        return ledger

    if await db.get(Player, player_id) is None:
        raise PlayerNotFoundError(player_id)

    try:
        async with db.begin_nested():
            db.add(PlayerLedger(
                player_id=player_id,
                fuel_currency=Decimal("0"),
                claim_tokens=0,
                secondary_resources={},
                daily_claim_token_count=0,
                daily_reset_at=clock.now(),
            ))
        logger.info("Player ledger created", player_id=player_id)
    except IntegrityError:
        logger.debug("Ledger created concurrently", player_id=player_id)

    ledger = await _select_locked(db, player_id)
    if ledger is None:
        raise PlayerNotFoundError(player_id)
    return ledger


async def atomic_increment(
    db: AsyncSession,
    column: InstrumentedAttribute,
    row_id: int,
    amount: Union[int, Decimal]
) -> None:
    """Single ``UPDATE t SET col = col + :amount WHERE id = :row_id``."""
    table = column.class_
    await db.execute(
        update(table)
        .where(table.id == row_id)
        .values({column.key: column + amount})
        .execution_options(synchronize_session=False)
    )
