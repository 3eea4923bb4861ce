"""Record repository.

Provides data access methods for Record entities with version-guarded writes.
"""

from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pns_sync.core.database import dialect_insert
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide
from pns_sync.models.record import Record


class RecordRepository:
    """Repository for Record entities.

    The stored ``version`` for a (name_hash, key_hash) pair is the highest ever
    applied. Writers read the row, decide, then ``compare_and_set`` against the
    version they read.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, name_hash: str, key_hash: str) -> Record | None:
        result = await self.session.execute(
            select(Record)
            .where(
                Record.name_hash == name_hash,  # type: ignore[arg-type]
                Record.key_hash == key_hash,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_domain(
        self, name_hash: str, include_tombstones: bool = False
    ) -> list[Record]:
        """Retrieve records of a domain ordered by key.

        Args:
            name_hash: Domain namehash
            include_tombstones: Also return deleted records

        Returns:
            List of records
        """
        stmt = select(Record).where(Record.name_hash == name_hash)  # type: ignore[arg-type]
        if not include_tombstones:
            stmt = stmt.where(Record.tombstone == False)  # type: ignore[arg-type]  # noqa: E712
        result = await self.session.execute(stmt.order_by(Record.key.asc()))  # type: ignore[attr-defined]
        return list(result.scalars().all())

    async def insert_if_absent(self, record: Record) -> bool:
        """Insert the first version of a record.

        Uses INSERT ... ON CONFLICT (name_hash, key_hash) DO NOTHING; a caller
        that loses the race re-reads and retries as an update.

        Returns:
            True if this call created the row
        """
        stmt = dialect_insert(self.session, Record).values(**record.model_dump())
        stmt = stmt.on_conflict_do_nothing(index_elements=["name_hash", "key_hash"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def compare_and_set(
        self, name_hash: str, key_hash: str, expected_version: int, **values: Any
    ) -> bool:
        """Update a record only if its version still equals ``expected_version``.

        Returns:
            True if the row was updated
        """
        values.setdefault("updated_at", utcnow())
        result = await self.session.execute(
            update(Record)
            .where(
                Record.name_hash == name_hash,  # type: ignore[arg-type]
                Record.key_hash == key_hash,  # type: ignore[arg-type]
                Record.version == expected_version,  # type: ignore[arg-type]
            )
            .values(**values)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def observe_chain_version(
        self, name_hash: str, key_hash: str, chain: ChainSide, version: int
    ) -> None:
        """Raise the per-chain observed version, never lowering it."""
        column = Record.primary_version if chain is ChainSide.PRIMARY else Record.mirror_version
        await self.session.execute(
            update(Record)
            .where(
                Record.name_hash == name_hash,  # type: ignore[arg-type]
                Record.key_hash == key_hash,  # type: ignore[arg-type]
                column < version,  # type: ignore[operator]
            )
            .values({column: version})
        )
        await self.session.flush()

    async def list_behind(self, chain: ChainSide, limit: int = 100) -> list[Record]:
        """Records whose latest version has not been observed on ``chain``.

        Used by reconciliation to re-enqueue propagation that was lost or failed.
        """
        column = Record.primary_version if chain is ChainSide.PRIMARY else Record.mirror_version
        result = await self.session.execute(
            select(Record)
            .where(
                Record.version > column,  # type: ignore[arg-type,operator]
                Record.source_chain != chain,  # type: ignore[arg-type]
            )
            .order_by(Record.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count(self, include_tombstones: bool = False) -> int:
        stmt = select(func.count()).select_from(Record)
        if not include_tombstones:
            stmt = stmt.where(Record.tombstone == False)  # type: ignore[arg-type]  # noqa: E712
        result = await self.session.execute(stmt)
        return result.scalar_one()
