"""Indexer status API endpoints.

- GET /api/indexer/status - Scan progress per chain and job backlog
- GET /api/indexer/stats - Row counts
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from pns_sync.api.dependencies import get_uow_factory
from pns_sync.services import queries

router = APIRouter(prefix="/api/indexer", tags=["indexer"])


class ChainStatusDTO(BaseModel):
    chain: str
    group: str
    last_processed_block: int
    events_processed: int
    last_tick_at: datetime | None
    seconds_since_tick: float | None
    last_error: str | None


class IndexerStatusResponse(BaseModel):
    healthy: bool
    chains: list[ChainStatusDTO]
    total_events_processed: int
    pending_jobs: int
    in_flight_jobs: int
    failed_jobs: int


class StatisticsResponse(BaseModel):
    domains: int
    records: int
    events_processed: int


@router.get("/status", response_model=IndexerStatusResponse)
async def get_indexer_status(
    max_tick_age_seconds: float = Query(default=300.0, gt=0),
    uow_factory=Depends(get_uow_factory),
) -> IndexerStatusResponse:
    """Is indexing healthy.

    A growing failed-job count or a stale ``seconds_since_tick`` is the signal
    an operator acts on.
    """
    async with await uow_factory() as uow:
        health = await queries.indexer_health(uow, max_tick_age_seconds)

    return IndexerStatusResponse(
        healthy=health.healthy,
        chains=[
            ChainStatusDTO(
                chain=c.chain.value,
                group=c.group,
                last_processed_block=c.last_processed_block,
                events_processed=c.events_processed,
                last_tick_at=c.last_tick_at,
                seconds_since_tick=c.seconds_since_tick,
                last_error=c.last_error,
            )
            for c in health.chains
        ],
        total_events_processed=health.total_events_processed,
        pending_jobs=health.pending_jobs,
        in_flight_jobs=health.in_flight_jobs,
        failed_jobs=health.failed_jobs,
    )


@router.get("/stats", response_model=StatisticsResponse)
async def get_statistics(uow_factory=Depends(get_uow_factory)) -> StatisticsResponse:
    async with await uow_factory() as uow:
        stats = await queries.statistics(uow)
    return StatisticsResponse(
        domains=stats.domains, records=stats.records, events_processed=stats.events_processed
    )
