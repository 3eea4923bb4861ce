"""Cross-chain sync service.

Turns accepted mutations into idempotent ``SyncJob`` rows. It never talks to
a chain itself; the dispatch worker does that. Every job carries the source
version so a replay against a chain that already moved on is a no-op.
"""

from collections.abc import Iterable
from datetime import timedelta
from typing import Any
from uuid import UUID

import structlog

from pns_sync.core.config import Settings
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, Domain, WrapState
from pns_sync.models.record import Record
from pns_sync.models.sync_job import JobStatus, JobType, SyncJob
from pns_sync.services.mapping import Mutation, MutationKind
from pns_sync.services.namehash import value_hash
from pns_sync.services.sync.policy import Verdict, plan_wrap, should_propagate
from pns_sync.uow import UnitOfWork

logger = structlog.get_logger()


def configured_targets(settings: Settings) -> set[ChainSide]:
    """Chains this deployment can submit jobs to."""
    targets = set()
    if not settings.submitter_private_key:
        return targets
    if settings.primary_bridge_address:
        targets.add(ChainSide.PRIMARY)
    if settings.mirror_enabled:
        targets.add(ChainSide.MIRROR)
    return targets


def record_payload(record: Record) -> dict[str, Any]:
    """Target-chain instruction parameters for a record write or delete."""
    if record.tombstone:
        return {
            "name_hash": record.name_hash,
            "key_hash": record.key_hash,
            "version": record.version,
        }
    return {
        "name_hash": record.name_hash,
        "key_hash": record.key_hash,
        "key": record.key,
        "record_type": record.record_type.value,
        "value": record.value.hex(),
        "version": record.version,
    }


def domain_payload(domain: Domain) -> dict[str, Any]:
    return {
        "name_hash": domain.name_hash,
        "label": domain.label,
        "owner": domain.owner_primary,
        "expiration": domain.expiration,
        "version": domain.version,
    }


class SyncService:
    """Decides whether and how each accepted mutation is propagated.

    Args:
        targets: Chains a submitter is configured for. Jobs are only created
            for these.
    """

    def __init__(self, targets: Iterable[ChainSide]):
        self.targets = frozenset(targets)

    async def handle(self, uow: UnitOfWork, mutations: Iterable[Mutation]) -> list[SyncJob]:
        """Enqueue the jobs a batch of mutations calls for.

        Returns:
            Newly created jobs (already existing ones are not repeated)
        """
        created: list[SyncJob] = []
        for mutation in mutations:
            if mutation.kind is MutationKind.DOMAIN:
                domain = await uow.domains.get(mutation.name_hash)
                if domain is not None:
                    created.extend(await self.enqueue_domain(uow, domain))
            elif mutation.kind in (MutationKind.RECORD, MutationKind.RECORD_DELETE):
                if mutation.key_hash is None:
                    raise ValueError(f"Record mutation {mutation.event_id} has no key_hash")
                record = await uow.records.get(mutation.name_hash, mutation.key_hash)
                if record is not None:
                    created.extend(await self.enqueue_record(uow, record))
            elif mutation.kind is MutationKind.WRAP_REQUEST:
                if mutation.wrap_chain is None:
                    raise ValueError(f"Wrap request {mutation.event_id} names no chain")
                created.extend(
                    await self.enqueue_wrap_plan(
                        uow, mutation.name_hash, mutation.wrap_chain, mutation.event_id
                    )
                )
            elif mutation.kind is MutationKind.WRAP_CONFLICT:
                if mutation.wrap_chain is None:
                    raise ValueError(f"Wrap conflict {mutation.event_id} names no losing chain")
                job = await self.enqueue_unwrap(
                    uow, mutation.name_hash, mutation.wrap_chain, mutation.event_id
                )
                if job is not None:
                    created.append(job)
        return created

    async def _enqueue(self, uow: UnitOfWork, job: SyncJob) -> SyncJob | None:
        stored, created = await uow.sync_jobs.enqueue(job)
        if not created:
            logger.debug("sync.job_exists", dedupe_key=job.dedupe_key, status=stored.status.value)
            return None
        logger.info(
            "sync.job_enqueued",
            job_id=str(stored.id),
            job_type=stored.job_type.value,
            target=stored.target_chain.value,
            name_hash=stored.name_hash,
            version=stored.version,
        )
        return stored

    async def enqueue_record(self, uow: UnitOfWork, record: Record) -> list[SyncJob]:
        """Propagate a record to every chain that has not reflected its version."""
        jobs = []
        for target in sorted(self.targets, key=lambda c: c.value):
            if target == record.source_chain:
                continue
            if not should_propagate(record.version, record.chain_version(target)):
                logger.debug(
                    "sync.stale_discarded",
                    name_hash=record.name_hash,
                    key_hash=record.key_hash,
                    target=target.value,
                    version=record.version,
                )
                continue
            if target is ChainSide.MIRROR and record.oversize:
                logger.warning(
                    "sync.record_oversize_skipped",
                    name_hash=record.name_hash,
                    key=record.key,
                    size=len(record.value),
                )
                continue

            job_type = JobType.DELETE_RECORD if record.tombstone else JobType.UPSERT_RECORD
            job = await self._enqueue(
                uow,
                SyncJob(
                    dedupe_key=(
                        f"{job_type.value}:{target.value}:{record.name_hash}:"
                        f"{record.key_hash}:{record.version}"
                    ),
                    job_type=job_type,
                    target_chain=target,
                    name_hash=record.name_hash,
                    key_hash=record.key_hash,
                    version=record.version,
                    value_hash=value_hash(b"" if record.tombstone else record.value),
                    payload=record_payload(record),
                ),
            )
            if job is not None:
                jobs.append(job)
        return jobs

    async def enqueue_domain(self, uow: UnitOfWork, domain: Domain) -> list[SyncJob]:
        """Mirror a domain snapshot when the mirror is behind."""
        if ChainSide.MIRROR not in self.targets:
            return []
        if not should_propagate(domain.version, domain.mirror_version):
            return []
        job = await self._enqueue(
            uow,
            SyncJob(
                dedupe_key=f"mirror_domain:mirror:{domain.name_hash}:{domain.version}",
                job_type=JobType.MIRROR_DOMAIN,
                target_chain=ChainSide.MIRROR,
                name_hash=domain.name_hash,
                version=domain.version,
                payload=domain_payload(domain),
            ),
        )
        return [job] if job is not None else []

    def _wrap_job(
        self,
        domain: Domain,
        target: ChainSide,
        state: WrapState,
        origin: str,
        depends_on: UUID | None = None,
        conflict: bool = False,
    ) -> SyncJob:
        payload: dict[str, Any] = {
            "name_hash": domain.name_hash,
            "state": state.value,
            "version": domain.version,
        }
        if conflict:
            # The store never recorded this chain as holder, so dispatch must not skip it
            payload["conflict"] = True
        return SyncJob(
            dedupe_key=f"set_wrap_state:{target.value}:{domain.name_hash}:{state.value}:{origin}",
            job_type=JobType.SET_WRAP_STATE,
            target_chain=target,
            name_hash=domain.name_hash,
            version=domain.version,
            payload=payload,
            depends_on=depends_on,
        )

    async def enqueue_wrap_plan(
        self, uow: UnitOfWork, name_hash: str, requested_by: ChainSide, origin: str
    ) -> list[SyncJob]:
        """Move the wrapper to ``requested_by``, releasing it elsewhere first.

        The wrap job depends on the unwrap job, and the dispatcher only sends
        it once the store shows nobody holding the wrapper.
        """
        domain = await uow.domains.get(name_hash)
        if domain is None:
            return []

        plan = plan_wrap(domain.wrap_state, requested_by)
        if plan.verdict is Verdict.STALE:
            logger.info(
                "sync.wrap_already_held", name_hash=name_hash, chain=requested_by.value
            )
            return []

        missing = [step.chain for step in plan.steps if step.chain not in self.targets]
        if missing:
            logger.error(
                "sync.wrap_target_unavailable",
                name_hash=name_hash,
                missing=[c.value for c in missing],
            )
            return []

        jobs = []
        previous: SyncJob | None = None
        for step in plan.steps:
            candidate = self._wrap_job(
                domain, step.chain, step.state, origin, previous.id if previous else None
            )
            job = await self._enqueue(uow, candidate)
            previous = job or await uow.sync_jobs.get_by_dedupe_key(candidate.dedupe_key)
            if job is not None:
                jobs.append(job)

        logger.info(
            "sync.wrap_planned",
            name_hash=name_hash,
            verdict=plan.verdict.value,
            steps=[f"{s.chain.value}->{s.state.value}" for s in plan.steps],
        )
        return jobs

    async def enqueue_unwrap(
        self, uow: UnitOfWork, name_hash: str, loser: ChainSide, origin: str
    ) -> SyncJob | None:
        """Tell ``loser`` to release a wrapper it should not hold."""
        if loser not in self.targets:
            logger.error("sync.wrap_target_unavailable", name_hash=name_hash, missing=[loser.value])
            return None
        domain = await uow.domains.get(name_hash)
        if domain is None:
            return None
        job = self._wrap_job(domain, loser, WrapState.NONE, origin, conflict=True)
        return await self._enqueue(uow, job)

    async def enqueue_checkpoint(
        self, uow: UnitOfWork, source_chain: ChainSide, block_number: int
    ) -> SyncJob | None:
        """Publish how far ``source_chain`` has been applied to the other chain."""
        target = source_chain.other
        if target not in self.targets:
            return None
        return await self._enqueue(
            uow,
            SyncJob(
                dedupe_key=f"mark_checkpoint:{target.value}:{source_chain.value}:{block_number}",
                job_type=JobType.MARK_CHECKPOINT,
                target_chain=target,
                name_hash="0x" + "00" * 32,
                version=block_number,
                payload={"source_chain": source_chain.value, "block_number": block_number},
            ),
        )

    async def reconcile(
        self, uow: UnitOfWork, limit: int = 100, redeliver_after_seconds: int = 600
    ) -> int:
        """Catch-up pass over rows a chain has not reflected yet.

        Enqueues missing jobs, and reopens delivered jobs whose effect never
        showed up on the target chain within ``redeliver_after_seconds``.

        Returns:
            Number of jobs created or reopened
        """
        touched = 0
        cutoff = utcnow() - timedelta(seconds=redeliver_after_seconds)

        for target in sorted(self.targets, key=lambda c: c.value):
            for record in await uow.records.list_behind(target, limit):
                jobs = await self.enqueue_record(uow, record)
                touched += len(jobs)
                if not jobs:
                    touched += await self._redeliver(
                        uow,
                        (
                            f"{'delete_record' if record.tombstone else 'upsert_record'}:"
                            f"{target.value}:{record.name_hash}:{record.key_hash}:{record.version}"
                        ),
                        cutoff,
                    )

        if ChainSide.MIRROR in self.targets:
            for domain in await uow.domains.list_behind(ChainSide.MIRROR, limit):
                jobs = await self.enqueue_domain(uow, domain)
                touched += len(jobs)
                if not jobs:
                    touched += await self._redeliver(
                        uow, f"mirror_domain:mirror:{domain.name_hash}:{domain.version}", cutoff
                    )

        if touched:
            logger.info("sync.reconciled", jobs=touched)
        return touched

    async def _redeliver(self, uow: UnitOfWork, dedupe_key: str, cutoff) -> int:
        job = await uow.sync_jobs.get_by_dedupe_key(dedupe_key)
        if job is None or job.status != JobStatus.DONE or job.superseded:
            return 0
        if job.completed_at is None or job.completed_at > cutoff:
            return 0
        job.reopen("target chain never reflected this version")
        if not await uow.sync_jobs.save_transition(job, JobStatus.DONE):
            return 0
        logger.warning(
            "sync.job_reopened",
            job_id=str(job.id),
            job_type=job.job_type.value,
            target=job.target_chain.value,
            version=job.version,
        )
        return 1
