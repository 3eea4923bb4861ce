"""Read-only queries over the mapping store."""

import time
from dataclasses import dataclass, field
from datetime import datetime

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, Domain
from pns_sync.models.record import Record
from pns_sync.models.sync_job import JobStatus
from pns_sync.services.namehash import (
    full_domain_name,
    namehash,
    normalize_hash,
    validate_label,
)
from pns_sync.uow import UnitOfWork

HASH_LENGTH = 66


@dataclass
class ChainHealth:
    chain: ChainSide
    group: str
    last_processed_block: int
    events_processed: int
    last_tick_at: datetime | None
    seconds_since_tick: float | None
    last_error: str | None


@dataclass
class IndexerHealth:
    """What an operator watches: scan progress per chain and the job backlog."""

    healthy: bool
    chains: list[ChainHealth] = field(default_factory=list)
    total_events_processed: int = 0
    pending_jobs: int = 0
    in_flight_jobs: int = 0
    failed_jobs: int = 0


@dataclass
class Statistics:
    domains: int
    records: int
    events_processed: int


def _looks_like_hash(value: str) -> bool:
    if len(value) != HASH_LENGTH or not value.lower().startswith("0x"):
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


async def domains_by_owner(
    uow: UnitOfWork, owner: str, limit: int = 100, offset: int = 0
) -> list[Domain]:
    return await uow.domains.list_by_owner(owner, limit=limit, offset=offset)


async def domain_by_name_or_hash(uow: UnitOfWork, identifier: str) -> Domain | None:
    """Look up a domain by namehash, full name ("alice.poly") or bare label.

    Raises:
        ValueError: If a name is given whose label could never be registered
    """
    identifier = identifier.strip()
    if _looks_like_hash(identifier):
        return await uow.domains.get(normalize_hash(identifier))

    reason = validate_label(identifier.split(".")[0])
    if reason is not None:
        raise ValueError(reason)

    domain = await uow.domains.get(namehash(full_domain_name(identifier)))
    if domain is not None:
        return domain
    # Labels indexed before their TLD was known
    return await uow.domains.get_by_label(identifier.split(".")[0])


async def records_for_domain(
    uow: UnitOfWork, name_hash: str, include_deleted: bool = False
) -> list[Record]:
    return await uow.records.list_for_domain(
        normalize_hash(name_hash), include_tombstones=include_deleted
    )


async def expiring_domains(
    uow: UnitOfWork, within_seconds: int = 30 * 24 * 3600, limit: int = 100
) -> list[Domain]:
    return await uow.domains.list_expiring(int(time.time()), within_seconds, limit=limit)


async def expired_domains(uow: UnitOfWork, limit: int = 100, offset: int = 0) -> list[Domain]:
    return await uow.domains.list_expired(limit=limit, offset=offset)


async def indexer_health(uow: UnitOfWork, max_tick_age_seconds: float = 300.0) -> IndexerHealth:
    """Scan progress per chain plus pending and failed job counts.

    Unhealthy when a checkpoint has not ticked within ``max_tick_age_seconds``,
    its last tick faulted, or any job has failed.
    """
    now = utcnow()
    chains = []
    healthy = True
    for checkpoint in await uow.checkpoints.list_all():
        age = None
        if checkpoint.last_tick_at is not None:
            age = (now - checkpoint.last_tick_at).total_seconds()
        if age is None or age > max_tick_age_seconds or checkpoint.last_error:
            healthy = False
        chains.append(
            ChainHealth(
                chain=checkpoint.chain,
                group=checkpoint.contract_group,
                last_processed_block=checkpoint.last_processed_block,
                events_processed=checkpoint.events_processed,
                last_tick_at=checkpoint.last_tick_at,
                seconds_since_tick=age,
                last_error=checkpoint.last_error,
            )
        )

    counts = await uow.sync_jobs.count_by_status()
    if counts[JobStatus.FAILED]:
        healthy = False

    return IndexerHealth(
        healthy=healthy and bool(chains),
        chains=chains,
        total_events_processed=sum(c.events_processed for c in chains),
        pending_jobs=counts[JobStatus.PENDING],
        in_flight_jobs=counts[JobStatus.IN_FLIGHT],
        failed_jobs=counts[JobStatus.FAILED],
    )


async def statistics(uow: UnitOfWork) -> Statistics:
    return Statistics(
        domains=await uow.domains.count(),
        records=await uow.records.count(),
        events_processed=await uow.processed_events.count(),
    )
