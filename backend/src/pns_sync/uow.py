"""One database transaction spanning every mapping-store repository.

A scan window, a dispatch outcome or an API read each run inside exactly one
``UnitOfWork``: either all of its writes land or none do.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pns_sync.repositories.domain import DomainRepository
from pns_sync.repositories.processed_event import ProcessedEventRepository
from pns_sync.repositories.record import RecordRepository
from pns_sync.repositories.scan_checkpoint import ScanCheckpointRepository
from pns_sync.repositories.sync_job import SyncJobRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Transaction scope over the mapping store.

    Commits when the ``async with`` block exits normally, rolls back and
    re-raises when it exits with an exception. The session is closed either way.

    Example:
        async with await uow_factory() as uow:
            domain = await uow.domains.get(name_hash)
            await uow.sync_jobs.enqueue(job)
    """

    def __init__(self, session: AsyncSession):
        self.session = session

        self.domains = DomainRepository(session)
        self.records = RecordRepository(session)
        self.sync_jobs = SyncJobRepository(session)
        self.processed_events = ProcessedEventRepository(session)
        self.checkpoints = ScanCheckpointRepository(session)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None:
                await self.session.rollback()
                logger.info("uow.rolled_back", exc_type=exc_type.__name__)
            else:
                await self.session.commit()
                logger.debug("uow.committed")
        finally:
            await self.session.close()

        # Never swallow the exception
        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Bind a session factory into a coroutine that opens a fresh ``UnitOfWork``.

    Workers, CLIs and API routes all take this callable instead of a session,
    so each caller controls its own transaction boundaries.
    """

    async def new_uow() -> UnitOfWork:
        return UnitOfWork(session_factory())

    return new_uow
