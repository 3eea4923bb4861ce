"""ProcessedEvent repository.

Provides duplicate detection so that replayed windows never apply an event twice.
"""

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pns_sync.core.database import dialect_insert
from pns_sync.models.domain import ChainSide
from pns_sync.models.processed_event import ProcessedEvent


class ProcessedEventRepository:
    """Repository for ProcessedEvent entities.

    The (chain, tx_hash, log_index) triple uniquely identifies a chain event.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def exists(self, chain: ChainSide, tx_hash: str, log_index: int) -> bool:
        """Check if an event was already applied (duplicate detection).

        Args:
            chain: Chain the event was emitted on
            tx_hash: Transaction hash (0x...)
            log_index: Log index within the block

        Returns:
            True if event was applied before, False otherwise
        """
        result = await self.session.execute(
            select(
                exists().where(
                    ProcessedEvent.chain == chain,  # type: ignore[arg-type]
                    ProcessedEvent.tx_hash == tx_hash.lower(),  # type: ignore[arg-type]
                    ProcessedEvent.log_index == log_index,  # type: ignore[arg-type]
                )
            )
        )
        return result.scalar()  # type: ignore[return-value]

    async def record(self, event: ProcessedEvent) -> bool:
        """Record an applied event.

        Uses INSERT ... ON CONFLICT DO NOTHING on the identity triple.

        Returns:
            True if newly recorded, False if it was already present
        """
        event.tx_hash = event.tx_hash.lower()
        stmt = dialect_insert(self.session, ProcessedEvent).values(**event.model_dump())
        stmt = stmt.on_conflict_do_nothing(index_elements=["chain", "tx_hash", "log_index"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def get_by_block_range(
        self, chain: ChainSide, start_block: int, end_block: int
    ) -> list[ProcessedEvent]:
        """Retrieve applied events within a block range, in chain order."""
        result = await self.session.execute(
            select(ProcessedEvent)
            .where(
                ProcessedEvent.chain == chain,  # type: ignore[arg-type]
                ProcessedEvent.block_number >= start_block,  # type: ignore[arg-type]
                ProcessedEvent.block_number <= end_block,  # type: ignore[arg-type]
            )
            .order_by(ProcessedEvent.block_number.asc(), ProcessedEvent.log_index.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def count(self, chain: ChainSide | None = None) -> int:
        stmt = select(func.count()).select_from(ProcessedEvent)
        if chain is not None:
            stmt = stmt.where(ProcessedEvent.chain == chain)  # type: ignore[arg-type]
        result = await self.session.execute(stmt)
        return result.scalar_one()
