"""CLI command for returning failed sync jobs to the queue.

Usage:
    python -m pns_sync.cli.requeue_jobs [--job-id ID ...] [--dry-run]

Examples:
    # Requeue every failed job
    python -m pns_sync.cli.requeue_jobs

    # Requeue two specific jobs
    python -m pns_sync.cli.requeue_jobs --job-id 5f0c... --job-id 9a1e...

    # List failed jobs only
    python -m pns_sync.cli.requeue_jobs --dry-run
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace
from uuid import UUID

import structlog

from pns_sync.core import timezone  # noqa: F401
from pns_sync.core.config import Settings, configure_logging
from pns_sync.core.database import setup_db_session
from pns_sync.models.sync_job import JobStatus
from pns_sync.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Move failed sync jobs back to pending")

    parser.add_argument(
        "--job-id",
        action="append",
        type=UUID,
        dest="job_ids",
        help="Job to requeue (repeatable; all failed jobs when omitted)",
    )

    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Failed jobs listed in dry-run mode (default: 100)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List failed jobs without requeueing",
    )

    return parser.parse_args(argv)


async def requeue(
    uow_factory, job_ids: list[UUID] | None, dry_run: bool, limit: int = 100
) -> int:
    """Requeue failed jobs.

    Returns:
        Number of jobs requeued (or listed, in dry-run mode)
    """
    async with await uow_factory() as uow:
        if dry_run:
            failed = await uow.sync_jobs.list_by_status(JobStatus.FAILED, limit=limit)
            if job_ids:
                failed = [job for job in failed if job.id in job_ids]
            for job in failed:
                logger.info(
                    "requeue_jobs.failed_job",
                    job_id=str(job.id),
                    job_type=job.job_type.value,
                    target=job.target_chain.value,
                    name_hash=job.name_hash,
                    retry_count=job.retry_count,
                    last_error=job.last_error,
                )
            logger.info("requeue_jobs.dry_run", count=len(failed), message="No changes made")
            return len(failed)

        count = await uow.sync_jobs.requeue_failed(job_ids)

    logger.info("requeue_jobs.requeued", count=count)
    return count


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    args = parse_args(argv)
    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    try:
        session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
        await requeue(create_uow_factory(session_factory), args.job_ids, args.dry_run, args.limit)
        return 0
    except Exception as e:
        logger.error("requeue_jobs.fatal_error", error=str(e), exc_info=True)
        return 1


def main() -> int:
    """Synchronous wrapper for async main."""
    return asyncio.run(async_main())


if __name__ == "__main__":
    sys.exit(main())
