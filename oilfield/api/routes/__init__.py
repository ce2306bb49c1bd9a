"""API routes package."""

from . import game, purchases, cashout, exchange, admin

__all__ = ["game", "purchases", "cashout", "exchange", "admin"]
