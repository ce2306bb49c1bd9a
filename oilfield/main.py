"""
Main FastAPI application entry point.
"""

import uvicorn

from oilfield.api.main import app
from oilfield.core.config import settings

__all__ = ["app", "run"]


def run() -> None:
    uvicorn.run(
        "oilfield.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
