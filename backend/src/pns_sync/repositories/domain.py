"""Domain repository.

Provides data access methods for Domain entities with compare-and-set writes.
"""

from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pns_sync.core.database import dialect_insert
from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, Domain, WrapState


class DomainRepository:
    """Repository for Domain entities.

    Mutations are conditional: ``compare_and_set`` only succeeds if the row
    still carries the version the caller read, so concurrent writers for the
    same domain never overwrite each other silently.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, name_hash: str) -> Domain | None:
        """Retrieve domain by namehash, bypassing stale identity-map state."""
        result = await self.session.execute(
            select(Domain)
            .where(Domain.name_hash == name_hash.lower())  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_label(self, label: str) -> Domain | None:
        """Retrieve domain by its human-readable label (case-insensitive)."""
        result = await self.session.execute(
            select(Domain).where(func.lower(Domain.label) == label.strip().lower())  # type: ignore[arg-type]
        )
        return result.scalars().first()

    async def insert_if_absent(self, domain: Domain) -> bool:
        """Insert a new domain row unless one already exists.

        Uses INSERT ... ON CONFLICT (name_hash) DO NOTHING so that two scanners
        racing on the same registration create exactly one row.

        Returns:
            True if this call created the row
        """
        stmt = dialect_insert(self.session, Domain).values(**domain.model_dump())
        stmt = stmt.on_conflict_do_nothing(index_elements=["name_hash"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def compare_and_set(self, name_hash: str, expected_version: int, **values: Any) -> bool:
        """Update a domain only if its version still equals ``expected_version``.

        Query explanation:
        - UPDATE domains SET ... WHERE name_hash = :h AND version = :expected
        - rowcount 0 means another writer got there first

        Returns:
            True if the row was updated
        """
        values.setdefault("updated_at", utcnow())
        result = await self.session.execute(
            update(Domain)
            .where(
                Domain.name_hash == name_hash,  # type: ignore[arg-type]
                Domain.version == expected_version,  # type: ignore[arg-type]
            )
            .values(**values)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def observe_chain_version(self, name_hash: str, chain: ChainSide, version: int) -> None:
        """Raise the per-chain observed version, never lowering it."""
        column = Domain.primary_version if chain is ChainSide.PRIMARY else Domain.mirror_version
        await self.session.execute(
            update(Domain)
            .where(Domain.name_hash == name_hash, column < version)  # type: ignore[arg-type,operator]
            .values({column: version})
        )
        await self.session.flush()

    async def set_wrap_state(
        self, name_hash: str, expected: WrapState, new_state: WrapState
    ) -> bool:
        """Move the wrapper only if the stored state is still ``expected``.

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(Domain)
            .where(
                Domain.name_hash == name_hash,  # type: ignore[arg-type]
                Domain.wrap_state == expected,  # type: ignore[arg-type]
            )
            .values(wrap_state=new_state, updated_at=utcnow())
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def update_mirror_view(self, name_hash: str, slot: int, **values: Any) -> bool:
        """Update mirror-only fields, ignoring events older than the last applied slot."""
        values.update(last_mirror_slot=slot, last_synced_at=utcnow(), updated_at=utcnow())
        result = await self.session.execute(
            update(Domain)
            .where(
                Domain.name_hash == name_hash,  # type: ignore[arg-type]
                or_(
                    Domain.last_mirror_slot == None,  # type: ignore[arg-type]  # noqa: E711
                    Domain.last_mirror_slot <= slot,  # type: ignore[arg-type,operator]
                ),
            )
            .values(**values)
        )
        await self.session.flush()
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def list_by_owner(self, owner: str, limit: int = 100, offset: int = 0) -> list[Domain]:
        """Domains owned by an address on either chain, newest expiration first."""
        owner = owner.lower()
        result = await self.session.execute(
            select(Domain)
            .where(
                or_(
                    func.lower(Domain.owner_primary) == owner,  # type: ignore[arg-type]
                    func.lower(Domain.owner_mirror) == owner,  # type: ignore[arg-type]
                )
            )
            .order_by(Domain.expiration.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_expiring(self, now_ts: int, within_seconds: int, limit: int = 100) -> list[Domain]:
        """Unexpired domains whose expiration falls within the next window."""
        result = await self.session.execute(
            select(Domain)
            .where(
                Domain.expiration > now_ts,  # type: ignore[arg-type]
                Domain.expiration <= now_ts + within_seconds,  # type: ignore[arg-type]
            )
            .order_by(Domain.expiration.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_expired(self, limit: int = 100, offset: int = 0) -> list[Domain]:
        result = await self.session.execute(
            select(Domain)
            .where(Domain.expired == True)  # type: ignore[arg-type]  # noqa: E712
            .order_by(Domain.expiration.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def mark_expired(self, now_ts: int) -> int:
        """Flag domains whose expiration has passed. Rows are never deleted.

        Returns:
            Number of domains newly flagged
        """
        result = await self.session.execute(
            update(Domain)
            .where(
                Domain.expired == False,  # type: ignore[arg-type]  # noqa: E712
                Domain.expiration > 0,  # type: ignore[arg-type]
                Domain.expiration <= now_ts,  # type: ignore[arg-type]
            )
            .values(expired=True, updated_at=utcnow())
        )
        await self.session.flush()
        return result.rowcount  # type: ignore[attr-defined]

    async def list_behind(self, chain: ChainSide, limit: int = 100) -> list[Domain]:
        """Domains whose latest version has not been observed on ``chain``.

        Only domains written by the other chain qualify; a chain never needs
        its own writes propagated back to it.
        """
        column = Domain.primary_version if chain is ChainSide.PRIMARY else Domain.mirror_version
        result = await self.session.execute(
            select(Domain)
            .where(
                Domain.version > column,  # type: ignore[arg-type,operator]
                Domain.source_chain != chain,  # type: ignore[arg-type]
            )
            .order_by(Domain.updated_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(Domain))
        return result.scalar_one()
