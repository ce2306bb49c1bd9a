"""
Player and admin authentication dependencies.

Players authenticate with ``Authorization: Bearer <wallet-address>``; the
session layer that issues those tokens sits in front of this service. Admin
calls accept either the admin API key or a player flagged as admin.
"""

import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from oilfield.api.dependencies import get_database
from oilfield.core.config import settings
from oilfield.core.exceptions import AuthenticationError, AuthorizationError, NotVerifiedError
from oilfield.models.player import Player
from oilfield.utils.validation import validate_wallet_address, normalize_wallet_address

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class AdminContext:
    """Who is calling an admin endpoint, for audit logs."""

    auth_type: str
    player_id: Optional[int] = None
    wallet: Optional[str] = None

    @property
    def actor(self) -> str:
        return self.wallet or self.auth_type


def _token_preview(token: str) -> str:
    return token[:8] + "..." if len(token) > 8 else token


def is_valid_api_key(token: str) -> bool:
    if not settings.admin_api_key:
        return False
    return hmac.compare_digest(token.encode(), settings.admin_api_key.encode())


async def get_player_by_wallet(db: AsyncSession, wallet: str) -> Optional[Player]:
    result = await db.execute(
        select(Player).where(Player.wallet_address == normalize_wallet_address(wallet))
    )
    return result.scalar_one_or_none()


async def require_authenticated(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_database)
) -> Player:
    """Resolve the calling player from the bearer wallet address."""
    if credentials is None:
        raise AuthenticationError("Authentication required")

    token = credentials.credentials.strip()
    if not validate_wallet_address(token):
        logger.warning("Invalid wallet token", token_preview=_token_preview(token))
        raise AuthenticationError("Invalid wallet address format")

    player = await get_player_by_wallet(db, token)
    if player is None:
        raise AuthenticationError("Unknown player")

    return player


async def require_human(player: Player = Depends(require_authenticated)) -> Player:
    """Reject players that have not passed humanity verification."""
    if not player.is_human_verified:
        raise NotVerifiedError(player.id)
    return player


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_database)
) -> AdminContext:
    """Admin API key or a player flagged as admin."""
    if credentials is None:
        raise AuthenticationError("Admin authentication required")

    token = credentials.credentials.strip()
    if is_valid_api_key(token):
        return AdminContext(auth_type="api_key")

    if validate_wallet_address(token):
        player = await get_player_by_wallet(db, token)
        if player is not None and player.is_admin:
            logger.debug("Admin authenticated", player_id=player.id)
            return AdminContext(auth_type="wallet", player_id=player.id, wallet=player.wallet_address)

    logger.warning("Admin authentication failed", token_preview=_token_preview(token))
    raise AuthorizationError("Admin access required")
