"""
Append-only store of published game economy snapshots.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Integer, String, JSON
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel


class GameConfigRecord(BaseModel):
    """One published, never-mutated config version."""

    __tablename__ = "game_config"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)

    value: Mapped[Dict[str, Any]] = mapped_column(JSON)

    published_by: Mapped[Optional[str]] = mapped_column(String(64))

    published_at: Mapped[datetime] = mapped_column()

    def __repr__(self) -> str:
        return f"<GameConfigRecord(version={self.version})>"
