"""FastAPI application: read-only query API plus the background sync workers."""

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Awaitable, Callable

import structlog
from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from pns_sync.api.routes import domains, indexer
from pns_sync.core import timezone  # noqa: F401
from pns_sync.core.config import Settings, configure_logging
from pns_sync.core.database import setup_db_session
from pns_sync.models.domain import ChainSide
from pns_sync.services.sync.service import configured_targets
from pns_sync.uow import create_uow_factory
from pns_sync.workers.dispatch_worker import run_dispatch_worker
from pns_sync.workers.scan_worker import run_scan_worker

logger = structlog.get_logger()

WorkerFunc = Callable[..., Awaitable[None]]


class WorkerSupervisor:
    """Keeps long-running worker tasks alive.

    A worker loop only returns by being cancelled. Any other exit (a crash or
    an unexpected return) schedules a restart after ``restart_delay`` seconds
    until ``stop`` is called.
    """

    def __init__(self, session_factory, settings: Settings, restart_delay: float = 1.0):
        self.session_factory = session_factory
        self.settings = settings
        self.restart_delay = restart_delay
        self.tasks: dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    def start(self, name: str, worker: WorkerFunc) -> asyncio.Task:
        task = asyncio.create_task(worker(self.session_factory, self.settings))
        task.add_done_callback(partial(self._on_exit, name, worker))
        self.tasks[name] = task
        return task

    def _on_exit(self, name: str, worker: WorkerFunc, task: asyncio.Task) -> None:
        if self._stopping.is_set() or task.cancelled():
            logger.info("worker.exited", worker=name)
            return

        exc = task.exception()
        if exc is not None:
            logger.error(
                "worker.crashed",
                worker=name,
                error=str(exc),
                error_type=type(exc).__name__,
                restart_in_seconds=self.restart_delay,
                exc_info=exc,
            )
        else:
            logger.warning(
                "worker.returned", worker=name, restart_in_seconds=self.restart_delay
            )
        asyncio.create_task(self._restart(name, worker))

    async def _restart(self, name: str, worker: WorkerFunc) -> None:
        await asyncio.sleep(self.restart_delay)
        if self._stopping.is_set():
            return
        logger.info("worker.restarting", worker=name)
        self.start(name, worker)

    async def stop(self) -> None:
        self._stopping.set()
        for task in self.tasks.values():
            task.cancel()
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)


def worker_table(settings: Settings) -> dict[str, WorkerFunc]:
    """One scan worker per configured chain, one dispatch worker per target chain."""
    workers: dict[str, WorkerFunc] = {
        "scan_primary": partial(run_scan_worker, chain=ChainSide.PRIMARY)
    }
    if settings.mirror_enabled:
        workers["scan_mirror"] = partial(run_scan_worker, chain=ChainSide.MIRROR)
    for target in sorted(configured_targets(settings), key=lambda c: c.value):
        workers[f"dispatch_{target.value}"] = partial(run_dispatch_worker, target=target)
    return workers


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire the database into ``app.state`` and run the workers for the app's lifetime.

    Workers are not started under ``APP_ENV=test``.
    """
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    app.state.session_factory = session_factory
    app.state.uow_factory = create_uow_factory(session_factory)

    supervisor = WorkerSupervisor(session_factory, settings)
    workers = worker_table(settings)
    if settings.app_env not in ("test", "testing"):
        for name, worker in workers.items():
            supervisor.start(name, worker)

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        workers=sorted(workers),
        mirror_enabled=settings.mirror_enabled,
    )

    yield

    logger.info("application.shutdown")
    await supervisor.stop()


async def check_database(session_factory) -> None:
    async with session_factory() as session:
        (await session.execute(text("SELECT 1"))).scalar()


def create_app() -> FastAPI:
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="PNS Sync Engine",
        description="Cross-chain event ingestion and sync for the naming registry",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(domains.router)
    app.include_router(indexer.router)

    @app.get("/health")
    async def health(response: Response):
        """Database round trip; 503 with the error when it fails."""
        try:
            await check_database(app.state.session_factory)
        except Exception as e:
            logger.error("health.database_unreachable", error=str(e), error_type=type(e).__name__)
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {"status": "unhealthy", "error": {"type": type(e).__name__, "message": str(e)}}

        return {"status": "healthy"}

    return app


# Module-level instance for `uvicorn pns_sync.app:app`
app = create_app()
