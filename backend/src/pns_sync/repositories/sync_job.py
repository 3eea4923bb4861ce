"""SyncJob repository.

Provides append (deduplicated), claim and complete operations for the job queue.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pns_sync.core.database import dialect_insert
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide
from pns_sync.models.sync_job import JobStatus, JobType, SyncJob


class SyncJobRepository:
    """Repository for SyncJob entities.

    Status changes are compare-and-set on the status column so that two
    dispatchers can never both move the same job.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, job_id: UUID) -> SyncJob | None:
        result = await self.session.execute(
            select(SyncJob)
            .where(SyncJob.id == job_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_dedupe_key(self, dedupe_key: str) -> SyncJob | None:
        result = await self.session.execute(
            select(SyncJob).where(SyncJob.dedupe_key == dedupe_key)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def enqueue(self, job: SyncJob) -> tuple[SyncJob, bool]:
        """Append a job unless one with the same dedupe key exists.

        Uses INSERT ... ON CONFLICT (dedupe_key) DO NOTHING, so replaying the
        same mutation never produces a second job.

        Returns:
            Tuple of (stored job, created flag)
        """
        stmt = dialect_insert(self.session, SyncJob).values(**job.model_dump())
        stmt = stmt.on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        created = result.rowcount == 1  # type: ignore[attr-defined]
        stored = await self.get_by_dedupe_key(job.dedupe_key)
        if stored is None:
            raise RuntimeError(f"Sync job {job.dedupe_key} missing after insert")
        return stored, created

    async def claim_batch(self, target: ChainSide, limit: int = 10) -> list[SyncJob]:
        """Claim due pending jobs for a target chain and mark them in_flight.

        A job is due when its backoff delay has elapsed and the job it depends
        on (if any) is done.

        Query explanation:
        - WHERE status = 'pending' AND next_attempt_at <= now
        - AND (depends_on IS NULL OR depends_on IN done jobs)
        - ORDER BY created_at ASC: Process oldest first
        - FOR UPDATE SKIP LOCKED: Lock rows, skip already locked ones

        Each selected row is then moved with a status compare-and-set; rows
        another dispatcher moved in between are dropped from the batch.

        Returns:
            List of jobs now in_flight and owned by the caller
        """
        now = utcnow()
        done_ids = select(SyncJob.id).where(SyncJob.status == JobStatus.DONE)  # type: ignore[arg-type]
        result = await self.session.execute(
            select(SyncJob)
            .where(
                SyncJob.status == JobStatus.PENDING,  # type: ignore[arg-type]
                SyncJob.target_chain == target,  # type: ignore[arg-type]
                SyncJob.next_attempt_at <= now,  # type: ignore[arg-type]
                or_(
                    SyncJob.depends_on == None,  # type: ignore[arg-type]  # noqa: E711
                    SyncJob.depends_on.in_(done_ids),  # type: ignore[union-attr]
                ),
            )
            .order_by(SyncJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        candidates = list(result.scalars().all())

        claimed = []
        for job in candidates:
            job.mark_in_flight()
            if await self.save_transition(job, JobStatus.PENDING):
                claimed.append(job)
        return claimed

    async def save_transition(self, job: SyncJob, from_status: JobStatus) -> bool:
        """Persist a lifecycle transition made on a detached job.

        The job was mutated through its ``mark_*`` methods outside this
        session; the write only lands if the stored status is still
        ``from_status``.

        Returns:
            True if the transition was applied
        """
        if job in self.session:
            # Keep autoflush from writing the new status before the guarded update
            self.session.expunge(job)
        result = await self.session.execute(
            update(SyncJob)
            .where(
                SyncJob.id == job.id,  # type: ignore[arg-type]
                SyncJob.status == from_status,  # type: ignore[arg-type]
            )
            .values(
                status=job.status,
                retry_count=job.retry_count,
                last_error=job.last_error,
                tx_id=job.tx_id,
                superseded=job.superseded,
                next_attempt_at=job.next_attempt_at,
                completed_at=job.completed_at,
                updated_at=job.updated_at,
            )
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def find_echo(
        self, target: ChainSide, name_hash: str, key_hash: str | None, value_hash: str
    ) -> SyncJob | None:
        """Find the most recent job that wrote ``value_hash`` to ``target``.

        When a chain emits an event carrying no version, this recognises the
        event as the confirmation of one of our own propagation jobs.
        """
        stmt = select(SyncJob).where(
            SyncJob.target_chain == target,  # type: ignore[arg-type]
            SyncJob.name_hash == name_hash,  # type: ignore[arg-type]
            SyncJob.value_hash == value_hash,  # type: ignore[arg-type]
            SyncJob.job_type.in_([JobType.UPSERT_RECORD, JobType.DELETE_RECORD]),  # type: ignore[attr-defined]
        )
        if key_hash is not None:
            stmt = stmt.where(SyncJob.key_hash == key_hash)  # type: ignore[arg-type]
        result = await self.session.execute(
            stmt.order_by(SyncJob.version.desc()).limit(1)  # type: ignore[attr-defined]
        )
        return result.scalar_one_or_none()

    async def count_by_status(self, target: ChainSide | None = None) -> dict[JobStatus, int]:
        """Job counts per status, every status present (zero when empty)."""
        stmt = select(SyncJob.status, func.count()).group_by(SyncJob.status)  # type: ignore[arg-type]
        if target is not None:
            stmt = stmt.where(SyncJob.target_chain == target)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        counts = {status: 0 for status in JobStatus}
        for status, count in result.all():
            counts[JobStatus(status)] = count
        return counts

    async def list_by_status(self, status: JobStatus, limit: int = 100) -> list[SyncJob]:
        result = await self.session.execute(
            select(SyncJob)
            .where(SyncJob.status == status)  # type: ignore[arg-type]
            .order_by(SyncJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def requeue_failed(self, job_ids: list[UUID] | None = None) -> int:
        """Move failed jobs back to pending with a reset retry counter.

        Args:
            job_ids: Restrict to these jobs; all failed jobs when None

        Returns:
            Number of jobs requeued
        """
        now = utcnow()
        stmt = update(SyncJob).where(SyncJob.status == JobStatus.FAILED)  # type: ignore[arg-type]
        if job_ids:
            stmt = stmt.where(SyncJob.id.in_(job_ids))  # type: ignore[attr-defined]
        result = await self.session.execute(
            stmt.values(
                status=JobStatus.PENDING,
                retry_count=0,
                next_attempt_at=now,
                updated_at=now,
            )
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def recover_orphans(self, target: ChainSide, older_than_seconds: int) -> int:
        """Return in_flight jobs abandoned by a crashed dispatcher to pending.

        Returns:
            Number of jobs recovered
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=older_than_seconds)
        result = await self.session.execute(
            update(SyncJob)
            .where(
                SyncJob.status == JobStatus.IN_FLIGHT,  # type: ignore[arg-type]
                SyncJob.target_chain == target,  # type: ignore[arg-type]
                SyncJob.updated_at < cutoff,  # type: ignore[arg-type]
            )
            .values(status=JobStatus.PENDING, next_attempt_at=now, updated_at=now)
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]
