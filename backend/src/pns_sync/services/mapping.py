"""Mapping service: applies decoded chain events to the mapping store.

Every write is a compare-and-set against the version read a moment before, so
independent domains never contend and a lost race is simply re-evaluated.
The service returns the accepted mutations; deciding what to propagate is the
sync service's job.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide, Domain, WrapState
from pns_sync.models.record import Record, RecordType
from pns_sync.services.blockchain.event_decoder import (
    AddressChanged,
    ContenthashChanged,
    DelegateUpdated,
    DomainEvent,
    DomainMirrored,
    EventMeta,
    NameRegistered,
    NameRenewed,
    NftTransfer,
    OwnershipTransferred,
    RecordDeleted,
    RecordUpdated,
    ResolverUpdated,
    TextChanged,
    WrapRequested,
    WrapStateChanged,
)
from pns_sync.services.exceptions import ConcurrentUpdateError, DomainNotIndexedError
from pns_sync.services.namehash import CONTENT_HASH_KEY, record_key_hash, value_hash
from pns_sync.services.sync.policy import (
    ConflictPolicy,
    Verdict,
    VersionStamp,
    next_version,
    resolve,
)
from pns_sync.uow import UnitOfWork

logger = structlog.get_logger()

MAX_CAS_ATTEMPTS = 3


class MutationKind(str, Enum):
    DOMAIN = "domain"
    RECORD = "record"
    RECORD_DELETE = "record_delete"
    WRAP_REQUEST = "wrap_request"
    WRAP_CONFLICT = "wrap_conflict"


@dataclass(frozen=True)
class Mutation:
    """An accepted change, tagged with its source chain and new version."""

    kind: MutationKind
    name_hash: str
    source_chain: ChainSide
    version: int
    event_id: str
    key_hash: str | None = None
    # Chain asking for the wrapper (WRAP_REQUEST) or losing it (WRAP_CONFLICT)
    wrap_chain: ChainSide | None = None


def event_id(meta: EventMeta) -> str:
    return f"{meta.chain.value}:{meta.tx_hash}:{meta.log_index}"


def _stamp(record: Record) -> VersionStamp:
    return VersionStamp(record.version, record.source_chain, record.observed_at)


def _version_column(chain: ChainSide) -> str:
    return "primary_version" if chain is ChainSide.PRIMARY else "mirror_version"


class MappingService:
    """Applies one decoded event at a time inside the caller's unit of work."""

    def __init__(self, policy: ConflictPolicy = ConflictPolicy.PRIMARY_PRIORITY):
        self.policy = policy

    async def apply(self, uow: UnitOfWork, event: DomainEvent) -> list[Mutation]:
        """Apply an event and return the mutations it produced.

        Raises:
            ConcurrentUpdateError: If a compare-and-set keeps losing
        """
        if isinstance(event, NameRegistered):
            return await self._apply_registration(uow, event)
        if isinstance(event, NameRenewed):
            return await self._apply_renewal(uow, event)
        if isinstance(event, OwnershipTransferred):
            return await self._update_domain(
                uow, event.meta, event.name_hash, owner_primary=event.new_owner
            )
        if isinstance(event, ResolverUpdated):
            return await self._update_domain(
                uow, event.meta, event.name_hash, resolver_address=event.resolver
            )
        if isinstance(event, TextChanged):
            value = event.value.encode("utf-8")
            return await self._write_record(
                uow,
                event.meta,
                event.name_hash,
                record_key_hash(RecordType.TEXT, event.key),
                event.key,
                RecordType.TEXT,
                value,
                version=None,
            )
        if isinstance(event, AddressChanged):
            key = str(event.coin_type)
            return await self._write_record(
                uow,
                event.meta,
                event.name_hash,
                record_key_hash(RecordType.ADDRESS, key),
                key,
                RecordType.ADDRESS,
                event.address,
                version=None,
            )
        if isinstance(event, ContenthashChanged):
            return await self._write_record(
                uow,
                event.meta,
                event.name_hash,
                record_key_hash(RecordType.CONTENT_HASH, CONTENT_HASH_KEY),
                CONTENT_HASH_KEY,
                RecordType.CONTENT_HASH,
                event.content_hash,
                version=None,
            )
        if isinstance(event, RecordUpdated):
            return await self._write_record(
                uow,
                event.meta,
                event.name_hash,
                event.key_hash,
                event.key,
                event.record_type,
                event.value,
                version=event.version,
            )
        if isinstance(event, RecordDeleted):
            return await self._write_record(
                uow,
                event.meta,
                event.name_hash,
                event.key_hash,
                None,
                None,
                b"",
                version=event.version,
            )
        if isinstance(event, DomainMirrored):
            return await self._apply_mirror_confirmation(uow, event)
        if isinstance(event, DelegateUpdated):
            if await uow.domains.get(event.name_hash) is None:
                return self._unknown_domain(event.meta, event.name_hash)
            await self._apply_mirror_view(
                uow, event.meta, event.name_hash, owner_mirror=event.delegate
            )
            return []
        if isinstance(event, NftTransfer):
            if event.is_mint:
                return await self._apply_wrap_fact(
                    uow, event.meta, event.name_hash, WrapState.PRIMARY
                )
            if event.is_burn:
                return await self._apply_wrap_fact(
                    uow, event.meta, event.name_hash, WrapState.NONE
                )
            return []
        if isinstance(event, WrapStateChanged):
            return await self._apply_wrap_fact(uow, event.meta, event.name_hash, event.state)
        if isinstance(event, WrapRequested):
            return await self._apply_wrap_request(uow, event)
        return []

    def _unknown_domain(self, meta: EventMeta, name_hash: str) -> list[Mutation]:
        """Handle an event naming a domain the store has not seen.

        Primary events for such a domain are dropped. Mirror events can
        overtake the primary registration, so they fail the window instead
        and are replayed once the primary scanner has indexed the domain.

        Raises:
            DomainNotIndexedError: For mirror-chain events
        """
        if meta.chain is ChainSide.MIRROR:
            raise DomainNotIndexedError(name_hash, meta.block_number)
        logger.warning(
            "mapping.unknown_domain",
            name_hash=name_hash,
            chain=meta.chain.value,
            tx_hash=meta.tx_hash,
        )
        return []

    async def _apply_registration(self, uow: UnitOfWork, event: NameRegistered) -> list[Mutation]:
        meta = event.meta
        existing = await uow.domains.get(event.name_hash)
        if existing is None:
            created = await uow.domains.insert_if_absent(
                Domain(
                    name_hash=event.name_hash,
                    label=event.label,
                    owner_primary=event.owner,
                    resolver_address=event.resolver,
                    expiration=event.expiration,
                    version=1,
                    primary_version=1,
                    source_chain=ChainSide.PRIMARY,
                    last_primary_block=meta.block_number,
                    last_primary_tx=meta.tx_hash,
                    last_synced_at=utcnow(),
                )
            )
            if created:
                logger.info(
                    "mapping.domain_registered",
                    name_hash=event.name_hash,
                    label=event.label,
                    owner=event.owner,
                    expiration=event.expiration,
                )
                mutation = Mutation(
                    MutationKind.DOMAIN, event.name_hash, ChainSide.PRIMARY, 1, event_id(meta)
                )
                return [mutation]

        # Re-registration after expiry, or a race with another writer
        return await self._update_domain(
            uow,
            meta,
            event.name_hash,
            label=event.label,
            owner_primary=event.owner,
            resolver_address=event.resolver,
            expiration=event.expiration,
            expired=False,
        )

    async def _apply_renewal(self, uow: UnitOfWork, event: NameRenewed) -> list[Mutation]:
        domain = await uow.domains.get(event.name_hash)
        if domain is not None and event.expiration <= domain.expiration:
            logger.warning(
                "mapping.expiration_not_forward",
                name_hash=event.name_hash,
                current=domain.expiration,
                incoming=event.expiration,
            )
            return []
        return await self._update_domain(
            uow, event.meta, event.name_hash, expiration=event.expiration, expired=False
        )

    async def _update_domain(
        self, uow: UnitOfWork, meta: EventMeta, name_hash: str, **changes
    ) -> list[Mutation]:
        """Bump the domain version and apply primary-chain field changes."""
        for _ in range(MAX_CAS_ATTEMPTS):
            domain = await uow.domains.get(name_hash)
            if domain is None:
                return self._unknown_domain(meta, name_hash)

            new_version = domain.version + 1
            updated = await uow.domains.compare_and_set(
                name_hash,
                domain.version,
                version=new_version,
                primary_version=new_version,
                source_chain=ChainSide.PRIMARY,
                last_primary_block=meta.block_number,
                last_primary_tx=meta.tx_hash,
                last_synced_at=utcnow(),
                **changes,
            )
            if updated:
                logger.info(
                    "mapping.domain_updated",
                    name_hash=name_hash,
                    version=new_version,
                    fields=sorted(changes),
                )
                mutation = Mutation(
                    MutationKind.DOMAIN, name_hash, ChainSide.PRIMARY, new_version, event_id(meta)
                )
                return [mutation]

        raise ConcurrentUpdateError(f"Domain {name_hash} kept changing during update")

    async def _apply_mirror_confirmation(
        self, uow: UnitOfWork, event: DomainMirrored
    ) -> list[Mutation]:
        domain = await uow.domains.get(event.name_hash)
        if domain is None:
            return self._unknown_domain(event.meta, event.name_hash)
        await uow.domains.observe_chain_version(event.name_hash, ChainSide.MIRROR, event.version)
        await self._apply_mirror_view(uow, event.meta, event.name_hash)
        logger.debug(
            "mapping.domain_mirror_confirmed", name_hash=event.name_hash, version=event.version
        )
        return []

    async def _apply_mirror_view(
        self, uow: UnitOfWork, meta: EventMeta, name_hash: str, **values
    ) -> None:
        if not await uow.domains.update_mirror_view(name_hash, meta.block_number, **values):
            logger.debug(
                "mapping.mirror_view_skipped",
                name_hash=name_hash,
                slot=meta.block_number,
            )

    async def _infer_primary_version(
        self,
        uow: UnitOfWork,
        current: Record | None,
        name_hash: str,
        key_hash: str,
        value: bytes,
    ) -> int:
        """Version for an unversioned primary resolver write.

        If the value is one that our jobs wrote to the primary chain, the
        event is that job's echo and carries the job's version. Otherwise it
        is a fresh primary write, numbered from the highest known counter.
        """
        confirmed = current.primary_version if current else 0
        echo = await uow.sync_jobs.find_echo(
            ChainSide.PRIMARY, name_hash, key_hash, value_hash(value)
        )
        if echo is not None and echo.version > confirmed:
            return echo.version
        if current is None:
            return 1
        return next_version(current.version, current.primary_version, current.mirror_version)

    async def _write_record(
        self,
        uow: UnitOfWork,
        meta: EventMeta,
        name_hash: str,
        key_hash: str,
        key: str | None,
        record_type: RecordType | None,
        value: bytes,
        version: int | None,
    ) -> list[Mutation]:
        """Apply a record write (empty value = delete) under the conflict policy."""
        chain = meta.chain
        tombstone = len(value) == 0

        if await uow.domains.get(name_hash) is None:
            return self._unknown_domain(meta, name_hash)

        for _ in range(MAX_CAS_ATTEMPTS):
            current = await uow.records.get(name_hash, key_hash)

            if current is not None and current.value == value and current.tombstone == tombstone:
                if version is None or version == current.version:
                    # The chain now reflects the stored value
                    await uow.records.observe_chain_version(
                        name_hash, key_hash, chain, current.version
                    )
                    logger.debug(
                        "mapping.record_confirmed",
                        name_hash=name_hash,
                        key_hash=key_hash,
                        chain=chain.value,
                        version=current.version,
                    )
                    return []

            incoming_version = version
            if incoming_version is None:
                incoming_version = await self._infer_primary_version(
                    uow, current, name_hash, key_hash, value
                )

            if current is None:
                if tombstone:
                    logger.info(
                        "mapping.delete_of_unknown_record", name_hash=name_hash, key_hash=key_hash
                    )
                    return []
                created = await uow.records.insert_if_absent(
                    Record(
                        name_hash=name_hash,
                        key_hash=key_hash,
                        key=key or "",
                        record_type=record_type or RecordType.CUSTOM,
                        value=value,
                        tombstone=False,
                        source_chain=chain,
                        version=incoming_version,
                        primary_version=incoming_version if chain is ChainSide.PRIMARY else 0,
                        mirror_version=incoming_version if chain is ChainSide.MIRROR else 0,
                        observed_at=meta.block_timestamp,
                    )
                )
                if not created:
                    continue
                logger.info(
                    "mapping.record_created",
                    name_hash=name_hash,
                    key=key,
                    chain=chain.value,
                    version=incoming_version,
                )
                return [
                    Mutation(
                        MutationKind.RECORD,
                        name_hash,
                        chain,
                        incoming_version,
                        event_id(meta),
                        key_hash=key_hash,
                    )
                ]

            incoming = VersionStamp(incoming_version, chain, meta.block_timestamp)
            verdict = resolve(incoming, _stamp(current), self.policy)
            if verdict is Verdict.STALE:
                await uow.records.observe_chain_version(
                    name_hash, key_hash, chain, incoming_version
                )
                logger.info(
                    "mapping.stale_discarded",
                    name_hash=name_hash,
                    key_hash=key_hash,
                    chain=chain.value,
                    incoming_version=incoming_version,
                    stored_version=current.version,
                )
                return []

            # A tie won on policy is re-stamped so stored versions stay strictly increasing
            new_version = max(incoming_version, current.version + 1)
            column = _version_column(chain)
            updated = await uow.records.compare_and_set(
                name_hash,
                key_hash,
                current.version,
                key=key or current.key,
                record_type=record_type or current.record_type,
                value=value,
                tombstone=tombstone,
                source_chain=chain,
                version=new_version,
                observed_at=meta.block_timestamp,
                **{column: max(new_version, current.chain_version(chain))},
            )
            if not updated:
                continue

            logger.info(
                "mapping.record_updated",
                name_hash=name_hash,
                key=key or current.key,
                chain=chain.value,
                version=new_version,
                previous_version=current.version,
                tombstone=tombstone,
            )
            return [
                Mutation(
                    MutationKind.RECORD_DELETE if tombstone else MutationKind.RECORD,
                    name_hash,
                    chain,
                    new_version,
                    event_id(meta),
                    key_hash=key_hash,
                )
            ]

        raise ConcurrentUpdateError(f"Record {name_hash}/{key_hash} kept changing during update")

    async def _apply_wrap_fact(
        self, uow: UnitOfWork, meta: EventMeta, name_hash: str, state: WrapState
    ) -> list[Mutation]:
        """Record that ``meta.chain`` took or released the wrapper.

        The store never holds two owners. When both chains claim the wrapper,
        the authoritative chain keeps it and the mirror is told to release.
        """
        chain = meta.chain
        if state not in (WrapState.NONE, WrapState.held_by(chain)):
            logger.warning(
                "mapping.wrap_state_foreign",
                name_hash=name_hash,
                chain=chain.value,
                state=state.value,
            )
            return []

        for _ in range(MAX_CAS_ATTEMPTS):
            domain = await uow.domains.get(name_hash)
            if domain is None:
                return self._unknown_domain(meta, name_hash)

            current = domain.wrap_state
            if state is WrapState.NONE:
                if current is not WrapState.held_by(chain):
                    return []
                if await uow.domains.set_wrap_state(name_hash, current, WrapState.NONE):
                    logger.info("mapping.unwrapped", name_hash=name_hash, chain=chain.value)
                    return []
                continue

            if current is state:
                return []
            if current is WrapState.NONE:
                if await uow.domains.set_wrap_state(name_hash, current, state):
                    logger.info("mapping.wrapped", name_hash=name_hash, chain=chain.value)
                    return []
                continue

            # Both chains claim the wrapper
            loser = ChainSide.MIRROR
            if chain is ChainSide.PRIMARY:
                if not await uow.domains.set_wrap_state(name_hash, current, state):
                    continue
            logger.warning(
                "mapping.wrap_conflict",
                name_hash=name_hash,
                claimed_by=chain.value,
                held_by=current.value,
                loser=loser.value,
            )
            return [
                Mutation(
                    MutationKind.WRAP_CONFLICT,
                    name_hash,
                    chain,
                    domain.version,
                    event_id(meta),
                    wrap_chain=loser,
                )
            ]

        raise ConcurrentUpdateError(f"Wrap state of {name_hash} kept changing during update")

    async def _apply_wrap_request(self, uow: UnitOfWork, event: WrapRequested) -> list[Mutation]:
        domain = await uow.domains.get(event.name_hash)
        if domain is None:
            return self._unknown_domain(event.meta, event.name_hash)
        logger.info(
            "mapping.wrap_requested",
            name_hash=event.name_hash,
            requested_by=event.meta.chain.value,
            current=domain.wrap_state.value,
        )
        return [
            Mutation(
                MutationKind.WRAP_REQUEST,
                event.name_hash,
                event.meta.chain,
                event.version,
                event_id(event.meta),
                wrap_chain=event.meta.chain,
            )
        ]
