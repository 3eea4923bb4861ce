"""Scan worker: one loop per chain driving the batch scanner.

Ticks back to back while the checkpoint lags the head, then waits
``SCAN_INTERVAL_SECONDS`` between ticks.
"""

import asyncio
from typing import Callable

import structlog

from pns_sync.core.config import Settings
from pns_sync.models.domain import ChainSide
from pns_sync.services.blockchain.event_decoder import ContractRole
from pns_sync.services.blockchain.log_source import ChainLogSource, Web3LogSource
from pns_sync.services.mapping import MappingService
from pns_sync.services.scanner import (
    MIRROR_GROUP,
    PRIMARY_GROUP,
    BatchScanner,
    ScanPhase,
    WatchedContract,
)
from pns_sync.services.sync.policy import ConflictPolicy
from pns_sync.services.sync.service import SyncService, configured_targets
from pns_sync.uow import create_uow_factory

logger = structlog.get_logger()

ERROR_BACKOFF_SECONDS = 5


def watched_contracts(settings: Settings, chain: ChainSide) -> list[WatchedContract]:
    """Contracts whose logs feed the given chain's scanner."""
    if chain is ChainSide.MIRROR:
        return [WatchedContract(settings.mirror_bridge_address, ContractRole.BRIDGE)]

    contracts = [WatchedContract(settings.primary_registry_address, ContractRole.REGISTRY)]
    if settings.primary_resolver_address:
        contracts.append(WatchedContract(settings.primary_resolver_address, ContractRole.RESOLVER))
    if settings.primary_nft_address:
        contracts.append(WatchedContract(settings.primary_nft_address, ContractRole.NFT))
    return contracts


def build_scanner(
    settings: Settings,
    chain: ChainSide,
    uow_factory,
    source: ChainLogSource | None = None,
) -> BatchScanner:
    """Wire a scanner for ``chain`` from settings."""
    if chain is ChainSide.PRIMARY:
        rpc_url, name = settings.primary_rpc_url, settings.primary_chain_name
        start_block, confirmations = settings.primary_start_block, settings.primary_confirmations
        group = PRIMARY_GROUP
    else:
        rpc_url, name = settings.mirror_rpc_url, settings.mirror_chain_name
        start_block, confirmations = settings.mirror_start_block, settings.mirror_confirmations
        group = MIRROR_GROUP

    if source is None:
        source = Web3LogSource(rpc_url, name, request_timeout=settings.rpc_timeout_seconds)

    return BatchScanner(
        chain=chain,
        group=group,
        contracts=watched_contracts(settings, chain),
        source=source,
        uow_factory=uow_factory,
        mapping=MappingService(ConflictPolicy(settings.conflict_policy)),
        sync=SyncService(configured_targets(settings)),
        start_block=start_block,
        batch_size=settings.scan_batch_size,
        confirmations=confirmations,
        fetch_options={
            "max_chunk_size": settings.log_max_chunk_size,
            "max_retries": settings.log_fetch_max_retries,
            "base_delay": settings.log_fetch_base_delay_seconds,
            "max_delay": settings.log_fetch_max_delay_seconds,
            "timeout": settings.rpc_timeout_seconds,
        },
        rpc_timeout=settings.rpc_timeout_seconds,
    )


async def run_scan_worker(
    session_factory: Callable,
    settings: Settings,
    chain: ChainSide = ChainSide.PRIMARY,
    scanner: BatchScanner | None = None,
) -> None:
    """Main entry point for a chain's scan worker.

    Worker lifecycle:
    - Starts with the FastAPI app (registered in lifespan), one per chain
    - Runs until asyncio.CancelledError (app shutdown)
    - A faulted tick leaves the checkpoint unmoved; the next tick retries it

    Args:
        session_factory: Factory function to create new database sessions
        settings: Application settings
        chain: Chain to scan
        scanner: Pre-built scanner (tests)
    """
    if scanner is None:
        scanner = build_scanner(settings, chain, create_uow_factory(session_factory))
    interval = settings.scan_interval_seconds
    state = scanner.initial_state()

    logger.info(
        "worker.started",
        worker=f"scan_{chain.value}",
        group=scanner.group,
        contracts=[c.address for c in scanner.contracts],
        batch_size=scanner.batch_size,
        interval=interval,
    )

    try:
        while True:
            try:
                state = await scanner.tick(state)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "worker.error",
                    worker_type=f"scan_{chain.value}",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)
                continue

            if state.phase is ScanPhase.IDLE and state.lag:
                # Still catching up
                await asyncio.sleep(0)
                continue
            await asyncio.sleep(interval)

    except asyncio.CancelledError:
        logger.info(
            "worker.stopped",
            worker=f"scan_{chain.value}",
            last_processed_block=state.last_processed_block,
            message="Graceful shutdown requested",
        )
        raise
