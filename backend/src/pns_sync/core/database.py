"""Async engine and session factory for the mapping store."""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every unit of work draws from.

    Args:
        db_url: postgresql+psycopg://... in production, sqlite+aiosqlite://... locally
        pool_size: Connection cap for pooled dialects; SQLite has no pool to size
    """
    pool_options = {}
    if not db_url.startswith("sqlite"):
        pool_options = {"pool_size": pool_size, "max_overflow": 0}

    engine = create_async_engine(
        db_url,
        pool_pre_ping=True,
        echo=False,
        **pool_options,
    )

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        # Jobs and domains are read after commit by the workers
        expire_on_commit=False,
    )


def dialect_insert(session: AsyncSession, model):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect.

    PostgreSQL in production, SQLite for local runs and tests. Both accept
    ``on_conflict_do_nothing`` / ``on_conflict_do_update``.
    """
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)
