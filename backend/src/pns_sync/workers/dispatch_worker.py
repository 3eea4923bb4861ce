"""Dispatch worker: submits sync jobs to their target chain.

Jobs are claimed (pending -> in_flight) in one short transaction, submitted
outside any transaction, and their outcome is written back with a status
compare-and-set in a second transaction.
"""

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable

import structlog

from pns_sync.core.config import Settings
from pns_sync.models.domain import ChainSide, WrapState
from pns_sync.models.sync_job import JobStatus, JobType, SyncJob
from pns_sync.services.blockchain.log_fetcher import backoff_delay
from pns_sync.services.blockchain.submitter import ChainSubmitter, Web3Submitter
from pns_sync.services.exceptions import (
    PermanentError,
    SubmissionError,
    SupersededError,
    TransientError,
)
from pns_sync.services.sync.service import SyncService, configured_targets
from pns_sync.uow import UnitOfWork, create_uow_factory

logger = structlog.get_logger()

ERROR_BACKOFF_SECONDS = 5


class Precheck(str, Enum):
    SUBMIT = "submit"
    SUPERSEDED = "superseded"
    POSTPONE = "postpone"


def build_submitter(settings: Settings, target: ChainSide) -> Web3Submitter:
    if target is ChainSide.PRIMARY:
        rpc_url, bridge, name = (
            settings.primary_rpc_url,
            settings.primary_bridge_address,
            settings.primary_chain_name,
        )
    else:
        rpc_url, bridge, name = (
            settings.mirror_rpc_url,
            settings.mirror_bridge_address,
            settings.mirror_chain_name,
        )
    return Web3Submitter(
        rpc_url=rpc_url,
        bridge_address=bridge,
        private_key=settings.submitter_private_key,
        chain_name=name,
        gas_buffer=settings.submit_gas_buffer,
        request_timeout=settings.rpc_timeout_seconds,
    )


class JobDispatcher:
    """Moves jobs for one target chain through their lifecycle.

    Args:
        target: Chain the jobs are submitted to
        submitter: Write side of that chain
        uow_factory: Factory producing a fresh unit of work
        max_retries: Transient failures allowed before a job fails
        backoff_base: First retry delay in seconds
        backoff_max: Retry delay cap in seconds
        submit_timeout: Timeout per submission attempt in seconds
        batch_size: Jobs claimed per poll
        postpone_seconds: Delay for wrap jobs waiting on the other chain
    """

    def __init__(
        self,
        target: ChainSide,
        submitter: ChainSubmitter,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        max_retries: int = 8,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        submit_timeout: float = 60.0,
        batch_size: int = 10,
        postpone_seconds: float = 10.0,
    ):
        self.target = target
        self.submitter = submitter
        self.uow_factory = uow_factory
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.submit_timeout = submit_timeout
        self.batch_size = batch_size
        self.postpone_seconds = postpone_seconds

    async def run_once(self) -> int:
        """Claim and process one batch.

        Returns:
            Number of jobs processed
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.sync_jobs.claim_batch(self.target, limit=self.batch_size)

        for job in jobs:
            await self.process(job)
        return len(jobs)

    async def precheck(self, uow: UnitOfWork, job: SyncJob) -> Precheck:
        """Decide from the store whether a claimed job still needs sending."""
        if job.job_type in (JobType.UPSERT_RECORD, JobType.DELETE_RECORD):
            if job.key_hash is None:
                raise ValueError(f"Record job {job.id} has no key_hash")
            record = await uow.records.get(job.name_hash, job.key_hash)
            if record is None:
                return Precheck.SUBMIT
            if record.version > job.version or record.chain_version(self.target) >= job.version:
                return Precheck.SUPERSEDED
            return Precheck.SUBMIT

        if job.job_type is JobType.MIRROR_DOMAIN:
            domain = await uow.domains.get(job.name_hash)
            if domain is None:
                return Precheck.SUBMIT
            if domain.version > job.version or domain.chain_version(self.target) >= job.version:
                return Precheck.SUPERSEDED
            return Precheck.SUBMIT

        if job.job_type is JobType.SET_WRAP_STATE:
            domain = await uow.domains.get(job.name_hash)
            if domain is None:
                return Precheck.SUBMIT
            wanted = WrapState(job.payload["state"])
            current = domain.wrap_state
            if wanted is WrapState.NONE:
                if job.payload.get("conflict"):
                    return Precheck.SUBMIT
                # Holder already released it
                if current is not WrapState.held_by(self.target):
                    return Precheck.SUPERSEDED
                return Precheck.SUBMIT
            if current is wanted:
                return Precheck.SUPERSEDED
            if current is WrapState.held_by(self.target.other):
                return Precheck.POSTPONE
            return Precheck.SUBMIT

        return Precheck.SUBMIT

    async def _save(self, job: SyncJob) -> None:
        async with await self.uow_factory() as uow:
            saved = await uow.sync_jobs.save_transition(job, JobStatus.IN_FLIGHT)
        if not saved:
            logger.warning(
                "dispatch.transition_lost",
                job_id=str(job.id),
                status=job.status.value,
                message="Job was moved by another process",
            )

    async def process(self, job: SyncJob) -> None:
        """Submit one in_flight job and record the outcome."""
        log = logger.bind(
            job_id=str(job.id),
            job_type=job.job_type.value,
            target=self.target.value,
            name_hash=job.name_hash,
            version=job.version,
        )

        async with await self.uow_factory() as uow:
            decision = await self.precheck(uow, job)

        if decision is Precheck.SUPERSEDED:
            job.mark_done(superseded=True)
            await self._save(job)
            log.info("dispatch.job_superseded", reason="store already past job version")
            return
        if decision is Precheck.POSTPONE:
            job.postpone(self.postpone_seconds, "waiting for the other chain to release the wrapper")
            await self._save(job)
            log.debug("dispatch.job_postponed", delay_seconds=self.postpone_seconds)
            return

        try:
            tx_id = await asyncio.wait_for(
                self.submitter.submit(job.job_type, job.payload), timeout=self.submit_timeout
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._handle_transient(
                job, SubmissionError(f"Submission timed out after {self.submit_timeout}s"), log
            )
        except SupersededError as e:
            job.mark_done(superseded=True)
            log.info("dispatch.job_superseded", reason=str(e)[:200])
        except TransientError as e:
            self._handle_transient(job, e, log)
        except PermanentError as e:
            job.mark_failed(str(e))
            log.error("dispatch.job_failed", error=str(e), error_type=type(e).__name__)
        except Exception as e:
            log.error(
                "dispatch.unexpected_error",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._handle_transient(job, e, log)
        else:
            job.mark_done(tx_id=tx_id)
            log.info("dispatch.job_submitted", tx_id=tx_id)

        await self._save(job)

    def _handle_transient(self, job: SyncJob, error: Exception, log) -> None:
        if job.retry_count >= self.max_retries:
            job.mark_failed(f"Retry ceiling reached: {error}")
            log.error(
                "dispatch.job_failed",
                error=str(error),
                retry_count=job.retry_count,
                max_retries=self.max_retries,
            )
            return
        delay = backoff_delay(job.retry_count, self.backoff_base, self.backoff_max)
        job.schedule_retry(str(error), delay)
        log.warning(
            "dispatch.job_retry_scheduled",
            error=str(error)[:200],
            retry_count=job.retry_count,
            delay_seconds=round(delay, 3),
        )


async def run_dispatch_worker(
    session_factory: Callable,
    settings: Settings,
    target: ChainSide = ChainSide.MIRROR,
    dispatcher: JobDispatcher | None = None,
) -> None:
    """Main entry point for a target chain's dispatch worker.

    Infinite polling loop that:
    1. Claims due pending jobs for the target chain
    2. Submits each one and records done / retry / failed
    3. Every RECONCILE_INTERVAL_SECONDS, enqueues catch-up jobs for rows the
       target chain has not reflected yet

    Orphaned in_flight jobs from a crashed run are returned to pending on start.

    Args:
        session_factory: Factory function to create new database sessions
        settings: Application settings
        target: Chain the jobs are submitted to
        dispatcher: Pre-built dispatcher (tests)
    """
    uow_factory = create_uow_factory(session_factory)
    if dispatcher is None:
        dispatcher = JobDispatcher(
            target=target,
            submitter=build_submitter(settings, target),
            uow_factory=uow_factory,
            max_retries=settings.job_max_retries,
            backoff_base=settings.job_backoff_base_seconds,
            backoff_max=settings.job_backoff_max_seconds,
            submit_timeout=settings.submit_timeout_seconds,
            batch_size=settings.dispatch_batch_size,
        )
    sync = SyncService(configured_targets(settings) & {target})
    poll_interval = settings.dispatch_poll_interval_seconds

    # Startup recovery
    try:
        async with await uow_factory() as uow:
            recovered = await uow.sync_jobs.recover_orphans(
                target, settings.job_in_flight_timeout_seconds
            )
        if recovered:
            logger.warning("worker.recovery_complete", target=target.value, recovered=recovered)
    except Exception as e:
        logger.error(
            "worker.recovery_error",
            error=str(e),
            message="Recovery failed, continuing with worker startup",
        )

    logger.info(
        "worker.started",
        worker=f"dispatch_{target.value}",
        poll_interval=poll_interval,
        batch_size=dispatcher.batch_size,
        max_retries=dispatcher.max_retries,
    )

    last_reconcile = 0.0
    try:
        while True:
            processed = 0
            try:
                if time.monotonic() - last_reconcile >= settings.reconcile_interval_seconds:
                    async with await uow_factory() as uow:
                        await sync.reconcile(
                            uow, redeliver_after_seconds=settings.job_in_flight_timeout_seconds
                        )
                    last_reconcile = time.monotonic()

                processed = await dispatcher.run_once()

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type=f"dispatch_{target.value}",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

            if not processed:
                await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info(
            "worker.stopped",
            worker=f"dispatch_{target.value}",
            message="Graceful shutdown requested",
        )
        raise
