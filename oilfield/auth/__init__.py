"""
Wallet bearer authentication for players and admins.
"""

from .player_auth import AdminContext, require_authenticated, require_human, require_admin

__all__ = [
    "AdminContext",
    "require_authenticated",
    "require_human",
    "require_admin",
]
