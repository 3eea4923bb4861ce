"""ScanCheckpoint repository.

Provides the per-chain scan cursor with compare-and-set advancement.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pns_sync.core.database import dialect_insert
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide
from pns_sync.models.scan_checkpoint import ScanCheckpoint
from pns_sync.services.exceptions import CheckpointConflictError


class ScanCheckpointRepository:
    """Repository for ScanCheckpoint entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, chain: ChainSide, group: str) -> ScanCheckpoint | None:
        result = await self.session.execute(
            select(ScanCheckpoint)
            .where(
                ScanCheckpoint.chain == chain,  # type: ignore[arg-type]
                ScanCheckpoint.contract_group == group,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def ensure(self, chain: ChainSide, group: str, start_block: int) -> ScanCheckpoint:
        """Return the checkpoint, creating it at ``start_block`` on first use.

        ``last_processed_block`` is the last block fully applied, so a fresh
        cursor sits one block before the configured start.
        """
        stmt = dialect_insert(self.session, ScanCheckpoint).values(
            chain=chain,
            contract_group=group,
            last_processed_block=max(start_block - 1, 0),
            events_processed=0,
            updated_at=utcnow(),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain", "contract_group"])
        await self.session.execute(stmt)
        await self.session.flush()
        checkpoint = await self.get(chain, group)
        if checkpoint is None:
            raise RuntimeError(f"Checkpoint {chain.value}/{group} missing after insert")
        return checkpoint

    async def advance(
        self,
        chain: ChainSide,
        group: str,
        expected_block: int,
        new_block: int,
        events_applied: int,
    ) -> None:
        """Move the cursor forward if nobody else moved it first.

        Query explanation:
        - UPDATE ... WHERE last_processed_block = :expected
        - rowcount 0 means a concurrent scanner owns this cursor

        Raises:
            CheckpointConflictError: If the stored block differs from ``expected_block``
        """
        now = utcnow()
        result = await self.session.execute(
            update(ScanCheckpoint)
            .where(
                ScanCheckpoint.chain == chain,  # type: ignore[arg-type]
                ScanCheckpoint.contract_group == group,  # type: ignore[arg-type]
                ScanCheckpoint.last_processed_block == expected_block,  # type: ignore[arg-type]
            )
            .values(
                last_processed_block=new_block,
                events_processed=ScanCheckpoint.events_processed + events_applied,
                last_tick_at=now,
                last_error=None,
                updated_at=now,
            )
        )
        await self.session.flush()
        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise CheckpointConflictError(chain.value, group, expected_block)

    async def touch(self, chain: ChainSide, group: str) -> None:
        """Record a successful no-op tick (already at head)."""
        now = utcnow()
        await self.session.execute(
            update(ScanCheckpoint)
            .where(
                ScanCheckpoint.chain == chain,  # type: ignore[arg-type]
                ScanCheckpoint.contract_group == group,  # type: ignore[arg-type]
            )
            .values(last_tick_at=now, last_error=None, updated_at=now)
        )
        await self.session.flush()

    async def record_error(self, chain: ChainSide, group: str, error: str) -> None:
        await self.session.execute(
            update(ScanCheckpoint)
            .where(
                ScanCheckpoint.chain == chain,  # type: ignore[arg-type]
                ScanCheckpoint.contract_group == group,  # type: ignore[arg-type]
            )
            .values(last_error=error[:1000], updated_at=utcnow())
        )
        await self.session.flush()

    async def reset(self, chain: ChainSide, group: str, from_block: int) -> int | None:
        """Rewind the cursor so the next tick rescans from ``from_block``.

        Returns:
            The previous last processed block, or None if no checkpoint existed
        """
        current = await self.get(chain, group)
        previous = current.last_processed_block if current else None
        await self.ensure(chain, group, from_block)
        await self.session.execute(
            update(ScanCheckpoint)
            .where(
                ScanCheckpoint.chain == chain,  # type: ignore[arg-type]
                ScanCheckpoint.contract_group == group,  # type: ignore[arg-type]
            )
            .values(last_processed_block=max(from_block - 1, 0), updated_at=utcnow())
        )
        await self.session.flush()
        return previous

    async def list_all(self) -> list[ScanCheckpoint]:
        result = await self.session.execute(
            select(ScanCheckpoint).order_by(ScanCheckpoint.chain, ScanCheckpoint.contract_group)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())
