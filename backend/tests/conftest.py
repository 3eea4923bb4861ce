"""pytest fixtures for sync engine tests.

Provides:
- database_url: Database the tests run against (see below)
- utc_timezone: Autouse fixture enforcing UTC timezone
- session: Function-scoped database session with table cleanup
- uow_factory: Function-scoped UnitOfWork factory
- log_source / submitter: In-memory chain collaborators

Database selection, first match wins:
- TEST_DATABASE_URL: an existing async database URL
- TEST_POSTGRES_CONTAINER=1: a throwaway PostgreSQL testcontainer
- otherwise: a SQLite file per test (sqlite+aiosqlite)
"""

import os

os.environ.setdefault("APP_ENV", "test")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import pns_sync.models  # noqa: E402,F401
from chain_fakes import FakeLogSource, FakeSubmitter  # noqa: E402
from pns_sync.core.database import setup_db_session  # noqa: E402
from pns_sync.uow import create_uow_factory  # noqa: E402


@pytest.fixture(scope="session")
def postgres_url():
    """Session-scoped PostgreSQL URL, or None when tests run on SQLite."""
    url = os.environ.get("TEST_DATABASE_URL")
    if url:
        yield url
        return

    if os.environ.get("TEST_POSTGRES_CONTAINER") != "1":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_pns_sync",
    ) as container:
        yield container.get_connection_url(driver="psycopg")


@pytest.fixture
def database_url(postgres_url, tmp_path):
    if postgres_url:
        return postgres_url
    return f"sqlite+aiosqlite:///{tmp_path / 'pns_sync.db'}"


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def session(database_url) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session on an empty schema.

    Tables are created from model metadata before the test and emptied after it.
    """
    session_factory = setup_db_session(database_url, pool_size=5)
    engine = session_factory.kw["bind"]

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes from the test
        await session.rollback()

    # Delete from dependent tables first
    async with engine.begin() as conn:
        for table in reversed(SQLModel.metadata.sorted_tables):
            await conn.execute(table.delete())
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session: AsyncSession):
    """Provide function-scoped UnitOfWork factory.

    Returns a callable that creates UoW instances on the test session's engine.
    """
    session_factory = async_sessionmaker(
        bind=session.bind,
        expire_on_commit=False,
    )
    return create_uow_factory(session_factory)


@pytest.fixture
def log_source():
    return FakeLogSource()


@pytest.fixture
def submitter():
    return FakeSubmitter()
