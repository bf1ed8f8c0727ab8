"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tradeguard.config import settings
from tradeguard.database import create_db_and_tables
from tradeguard.errors import (
    BrokerError,
    ConcurrencyConflict,
    NoMarketData,
    NotFoundError,
    PersistenceError,
    RiskLimitExceeded,
    TradeGuardError,
    ValidationError,
)
from tradeguard.utils.logging import setup_logging
from tradeguard.api import credentials, opportunities, positions, profit_takes, system

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    from tradeguard.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    yield

    stop_scheduler()


app = FastAPI(
    title="TradeGuard",
    description="Position risk control and order reconciliation service",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(opportunities.router)
app.include_router(positions.router)
app.include_router(profit_takes.router)
app.include_router(credentials.router)
app.include_router(system.router)


_STATUS_BY_ERROR: list[tuple[type[TradeGuardError], int]] = [
    (ValidationError, 422),
    (NotFoundError, 404),
    (RiskLimitExceeded, 409),
    (ConcurrencyConflict, 409),
    (BrokerError, 502),
    (NoMarketData, 503),
    (PersistenceError, 500),
]


@app.exception_handler(TradeGuardError)
async def tradeguard_error_handler(request: Request, exc: TradeGuardError):
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    body = {"detail": str(exc)}
    if isinstance(exc, RiskLimitExceeded):
        body["cap"] = exc.cap
    if isinstance(exc, BrokerError) and exc.status_code is not None:
        body["broker_status"] = exc.status_code
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content=body)
