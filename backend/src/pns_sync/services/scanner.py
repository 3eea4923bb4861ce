"""Checkpointed batch scanner.

One scanner per chain. Each tick moves through
``IDLE -> SCANNING -> APPLYING -> IDLE``; any failure ends the tick in
``FAULTED`` with the checkpoint untouched, and the next tick retries the same
window. Scanner state is an explicit value passed into and returned from
``tick``; the durable part of it lives in the ``scan_checkpoints`` table.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import structlog

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide
from pns_sync.models.processed_event import ProcessedEvent
from pns_sync.services.blockchain.event_decoder import (
    ContractRole,
    DomainEvent,
    Unrecognized,
    decode,
    topics_for,
)
from pns_sync.services.blockchain.log_fetcher import fetch_all_logs, retry_call
from pns_sync.services.blockchain.log_source import ChainLogSource, RawLog
from pns_sync.services.exceptions import RpcTimeoutError
from pns_sync.services.mapping import MappingService
from pns_sync.services.sync.policy import ConflictPolicy
from pns_sync.services.sync.service import SyncService
from pns_sync.uow import UnitOfWork

logger = structlog.get_logger()

PRIMARY_GROUP = "primary_contracts"
MIRROR_GROUP = "bridge"

# Fetcher options that also govern single RPC queries
RETRY_OPTIONS = ("max_retries", "base_delay", "max_delay", "sleep")


class ScanPhase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    APPLYING = "applying"
    FAULTED = "faulted"


@dataclass(frozen=True)
class ScannerState:
    """Snapshot of one chain's scan loop between ticks."""

    chain: ChainSide
    group: str
    phase: ScanPhase = ScanPhase.IDLE
    last_processed_block: int | None = None
    head_block: int | None = None
    total_events_processed: int = 0
    last_tick_at: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0

    @property
    def lag(self) -> int | None:
        """Blocks between the checkpoint and the confirmed head."""
        if self.head_block is None or self.last_processed_block is None:
            return None
        return max(self.head_block - self.last_processed_block, 0)


@dataclass(frozen=True)
class WatchedContract:
    address: str
    role: ContractRole


class BatchScanner:
    """Reads one window of logs per tick and applies it atomically.

    Args:
        chain: Chain this scanner owns
        group: Checkpoint key for the set of watched contracts
        contracts: Contracts to read logs from, with their decoding role
        source: Chain log source
        uow_factory: Factory producing a fresh unit of work
        mapping: Applies decoded events to the store
        sync: Turns accepted mutations into sync jobs
        start_block: First block to scan on a fresh checkpoint
        batch_size: Largest window scanned per tick
        confirmations: Blocks kept back from the head
        fetch_options: Extra keyword arguments for the chunked fetcher
        rpc_timeout: Timeout for head and block timestamp queries
    """

    def __init__(
        self,
        chain: ChainSide,
        group: str,
        contracts: list[WatchedContract],
        source: ChainLogSource,
        uow_factory: Callable[[], Awaitable[UnitOfWork]],
        mapping: MappingService,
        sync: SyncService,
        start_block: int = 0,
        batch_size: int = 500,
        confirmations: int = 0,
        fetch_options: dict[str, Any] | None = None,
        rpc_timeout: float | None = None,
    ):
        self.chain = chain
        self.group = group
        self.contracts = contracts
        self.source = source
        self.uow_factory = uow_factory
        self.mapping = mapping
        self.sync = sync
        self.start_block = start_block
        self.batch_size = batch_size
        self.confirmations = confirmations
        self.fetch_options = fetch_options or {}
        self.rpc_timeout = rpc_timeout

    def initial_state(self) -> ScannerState:
        return ScannerState(chain=self.chain, group=self.group)

    async def _rpc(self, awaitable: Awaitable[int], what: str) -> int:
        if self.rpc_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self.rpc_timeout)
        except asyncio.TimeoutError as e:
            raise RpcTimeoutError(f"{what} timed out after {self.rpc_timeout}s") from e

    async def _block_time(self, block_number: int) -> int | None:
        # Only latest-write-wins compares block times
        if self.mapping.policy is not ConflictPolicy.LATEST_WRITE_WINS:
            return None
        retry_options = {
            key: value for key, value in self.fetch_options.items() if key in RETRY_OPTIONS
        }
        return await retry_call(
            lambda: self._rpc(self.source.get_block_timestamp(block_number), "get_block_timestamp"),
            "get_block_timestamp",
            **retry_options,
        )

    async def tick(self, state: ScannerState | None = None) -> ScannerState:
        """Run one scan step and return the next state.

        Never raises for a failed window (cancellation aside); the failure is
        logged, recorded on the checkpoint and returned as ``FAULTED``.
        """
        state = replace(state or self.initial_state(), phase=ScanPhase.SCANNING)

        try:
            async with await self.uow_factory() as uow:
                checkpoint = await uow.checkpoints.ensure(self.chain, self.group, self.start_block)
                last_block = checkpoint.last_processed_block
                total = checkpoint.events_processed

            head = await self._rpc(self.source.get_head(), "get_head") - self.confirmations
            state = replace(state, last_processed_block=last_block, head_block=head)

            if head - last_block < 1:
                async with await self.uow_factory() as uow:
                    await uow.checkpoints.touch(self.chain, self.group)
                logger.debug(
                    "scanner.at_head", chain=self.chain.value, group=self.group, block=last_block
                )
                return replace(
                    state,
                    phase=ScanPhase.IDLE,
                    total_events_processed=total,
                    last_tick_at=utcnow(),
                    last_error=None,
                    consecutive_failures=0,
                )

            window_start = last_block + 1
            window_end = min(last_block + self.batch_size, head)
            events = await self._read_window(window_start, window_end)

            state = replace(state, phase=ScanPhase.APPLYING)
            applied = await self._apply_window(events, last_block, window_end)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._fault(state, e)

        logger.info(
            "scanner.window_applied",
            chain=self.chain.value,
            group=self.group,
            from_block=window_start,
            to_block=window_end,
            events=len(events),
            applied=applied,
            lag=head - window_end,
        )
        return replace(
            state,
            phase=ScanPhase.IDLE,
            last_processed_block=window_end,
            total_events_processed=total + applied,
            last_tick_at=utcnow(),
            last_error=None,
            consecutive_failures=0,
        )

    async def _fault(self, state: ScannerState, error: Exception) -> ScannerState:
        failures = state.consecutive_failures + 1
        logger.error(
            "scanner.tick_faulted",
            chain=self.chain.value,
            group=self.group,
            phase=state.phase.value,
            checkpoint=state.last_processed_block,
            error_type=type(error).__name__,
            error=str(error),
            consecutive_failures=failures,
        )
        try:
            async with await self.uow_factory() as uow:
                await uow.checkpoints.record_error(
                    self.chain, self.group, f"{type(error).__name__}: {error}"
                )
        except Exception as record_error:
            logger.warning(
                "scanner.error_not_recorded",
                chain=self.chain.value,
                error=str(record_error),
            )
        return replace(
            state,
            phase=ScanPhase.FAULTED,
            last_error=str(error),
            consecutive_failures=failures,
        )

    async def _read_window(self, from_block: int, to_block: int) -> list[DomainEvent]:
        """Fetch and decode every watched contract's logs in chain order.

        A failed contract fetch cancels the others before the error propagates.
        """
        try:
            async with asyncio.TaskGroup() as group:
                fetches = [
                    group.create_task(
                        fetch_all_logs(
                            self.source,
                            contract.address,
                            topics_for(contract.role),
                            from_block,
                            to_block,
                            **self.fetch_options,
                        )
                    )
                    for contract in self.contracts
                ]
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from eg

        tagged: list[tuple[RawLog, ContractRole]] = [
            (log, contract.role)
            for contract, fetch in zip(self.contracts, fetches)
            for log in fetch.result()
        ]
        tagged.sort(key=lambda item: item[0].sort_key)

        timestamps: dict[int, int | None] = {}
        events: list[DomainEvent] = []
        for raw, role in tagged:
            if raw.block_number not in timestamps:
                timestamps[raw.block_number] = await self._block_time(raw.block_number)
            event = decode(raw, role, self.chain, timestamps[raw.block_number])
            if isinstance(event, Unrecognized):
                logger.debug(
                    "scanner.event_skipped",
                    chain=self.chain.value,
                    block_number=raw.block_number,
                    tx_hash=raw.tx_hash,
                    log_index=raw.log_index,
                    reason=event.reason,
                )
                continue
            events.append(event)
        return events

    async def _apply_window(
        self, events: list[DomainEvent], expected_block: int, window_end: int
    ) -> int:
        """Apply a decoded window and advance the checkpoint in one transaction.

        Events already in ``processed_events`` are skipped, so replaying a
        window after a crash has no further effect.

        Returns:
            Number of events applied by this call
        """
        applied = 0
        async with await self.uow_factory() as uow:
            for event in events:
                meta = event.meta
                if await uow.processed_events.exists(meta.chain, meta.tx_hash, meta.log_index):
                    logger.debug(
                        "scanner.event_already_applied",
                        chain=meta.chain.value,
                        tx_hash=meta.tx_hash,
                        log_index=meta.log_index,
                    )
                    continue

                mutations = await self.mapping.apply(uow, event)
                await self.sync.handle(uow, mutations)
                await uow.processed_events.record(
                    ProcessedEvent(
                        chain=meta.chain,
                        tx_hash=meta.tx_hash,
                        log_index=meta.log_index,
                        block_number=meta.block_number,
                        event_name=type(event).__name__,
                        name_hash=event.name_hash,
                    )
                )
                applied += 1

            if applied:
                await self.sync.enqueue_checkpoint(uow, self.chain, window_end)
            await uow.checkpoints.advance(
                self.chain, self.group, expected_block, window_end, applied
            )
            expired = await uow.domains.mark_expired(int(time.time()))
            if expired:
                logger.info("scanner.domains_expired", count=expired)
        return applied
