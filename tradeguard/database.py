"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine, Session

from tradeguard.config import settings

logger = logging.getLogger(__name__)

# SQLite needs check_same_thread=False; PostgreSQL does not
connect_args = {}
engine_kwargs = {}
if settings.database_url.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    # In-memory SQLite must share one connection or every session sees an empty DB
    if settings.database_url in ("sqlite://", "sqlite:///:memory:"):
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(
    settings.database_url,
    echo=False,
    connect_args=connect_args,
    **engine_kwargs,
)


def _run_migrations():
    """Backfill indexes that create_all does not add to pre-existing tables."""
    from sqlalchemy import text

    inspector = inspect(engine)

    if "profit_take_request" not in inspector.get_table_names():
        return

    existing_indexes = inspector.get_indexes("profit_take_request")
    has_pending_idx = any(
        idx["name"] == "ix_profit_take_one_pending" for idx in existing_indexes
    )
    if not has_pending_idx:
        logger.info("Migrating: adding one-pending-request-per-position index")
        with engine.connect() as conn:
            conn.execute(text(
                "CREATE UNIQUE INDEX ix_profit_take_one_pending "
                "ON profit_take_request (position_id) WHERE status = 'PENDING'"
            ))
            conn.commit()


def create_db_and_tables():
    """Create all tables. Called on startup."""
    import tradeguard.models  # noqa: F401  registers every table on the metadata

    SQLModel.metadata.create_all(engine)
    _run_migrations()


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
