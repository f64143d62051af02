from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

import uvicorn
from fastapi import FastAPI

from . import __version__
from .api.middleware import PointsDebitMiddleware
from .api.router import router
from .config import get_settings
from .engine import PointsEngine, build_engine
from .logging import setup_logging
from .models.transaction import TransactionKind


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    engine: PointsEngine = app.state.engine
    await engine.db.ensure_indexes()
    yield
    await engine.db.close()


def create_app(
    engine: Optional[PointsEngine] = None,
    billable_routes: Optional[Mapping[str, TransactionKind]] = None,
) -> FastAPI:
    """
    Build the HTTP application.

    ``billable_routes`` maps path prefixes of host-application routes to the
    action kind they bill; those requests pass through `PointsDebitMiddleware`.
    """
    app = FastAPI(title="Points Ledger", version=__version__, lifespan=_lifespan)
    app.state.engine = engine or build_engine()
    app.include_router(router)
    if billable_routes:
        app.add_middleware(PointsDebitMiddleware, billable_routes=billable_routes)
    return app


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(
        "points_ledger.app:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
