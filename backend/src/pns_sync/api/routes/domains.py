"""Domain lookup API endpoints.

- GET /api/domains?owner=0x... - Domains owned by an address on either chain
- GET /api/domains/expiring - Domains expiring soon
- GET /api/domains/expired - Domains past their expiration
- GET /api/domains/{name_or_hash} - One domain by name, label or namehash
- GET /api/domains/{name_or_hash}/records - Records of a domain

All endpoints are read-only.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from pns_sync.api.dependencies import get_uow_factory
from pns_sync.models.domain import Domain
from pns_sync.models.record import Record, RecordType
from pns_sync.services import queries

logger = structlog.get_logger()
router = APIRouter(prefix="/api/domains", tags=["domains"])


# Response Models


class DomainDTO(BaseModel):
    """Data Transfer Object for a domain in API responses."""

    name_hash: str
    label: str
    owner: str = Field(..., description="Owner on the primary chain")
    mirror_owner: str | None = Field(default=None, description="Delegate on the mirror chain")
    expiration: int = Field(..., description="Unix timestamp")
    expired: bool
    resolver: str | None = None
    wrap_state: str
    version: int
    primary_version: int
    mirror_version: int

    @classmethod
    def from_model(cls, domain: Domain) -> "DomainDTO":
        return cls(
            name_hash=domain.name_hash,
            label=domain.label,
            owner=domain.owner_primary,
            mirror_owner=domain.owner_mirror,
            expiration=domain.expiration,
            expired=domain.expired,
            resolver=domain.resolver_address,
            wrap_state=domain.wrap_state.value,
            version=domain.version,
            primary_version=domain.primary_version,
            mirror_version=domain.mirror_version,
        )


class DomainsResponse(BaseModel):
    domains: list[DomainDTO]
    offset: int
    limit: int


class RecordDTO(BaseModel):
    key: str
    key_hash: str
    record_type: str
    value: str = Field(..., description="UTF-8 text for text records, 0x-hex otherwise")
    deleted: bool
    version: int
    source_chain: str
    oversize: bool = Field(..., description="Too large to mirror; stored on the primary only")

    @classmethod
    def from_model(cls, record: Record) -> "RecordDTO":
        if record.record_type is RecordType.TEXT:
            value = record.value.decode("utf-8", errors="replace")
        else:
            value = "0x" + record.value.hex()
        return cls(
            key=record.key,
            key_hash=record.key_hash,
            record_type=record.record_type.value,
            value=value,
            deleted=record.tombstone,
            version=record.version,
            source_chain=record.source_chain.value,
            oversize=record.oversize,
        )


# API Endpoints


@router.get("", response_model=DomainsResponse, status_code=status.HTTP_200_OK)
async def list_domains_by_owner(
    owner: str = Query(..., min_length=1, description="Owner address on either chain"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> DomainsResponse:
    """Domains owned by ``owner`` on either chain, newest expiration first."""
    async with await uow_factory() as uow:
        domains = await queries.domains_by_owner(uow, owner, limit=limit, offset=offset)

    logger.debug("domains.listed_by_owner", owner=owner, count=len(domains))
    return DomainsResponse(
        domains=[DomainDTO.from_model(d) for d in domains], offset=offset, limit=limit
    )


@router.get("/expiring", response_model=list[DomainDTO])
async def list_expiring_domains(
    within_days: int = Query(default=30, ge=1, le=365),
    limit: int = Query(default=50, ge=1, le=200),
    uow_factory=Depends(get_uow_factory),
) -> list[DomainDTO]:
    async with await uow_factory() as uow:
        domains = await queries.expiring_domains(uow, within_days * 24 * 3600, limit=limit)
    return [DomainDTO.from_model(d) for d in domains]


@router.get("/expired", response_model=list[DomainDTO])
async def list_expired_domains(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    uow_factory=Depends(get_uow_factory),
) -> list[DomainDTO]:
    async with await uow_factory() as uow:
        domains = await queries.expired_domains(uow, limit=limit, offset=offset)
    return [DomainDTO.from_model(d) for d in domains]


async def _find_domain(uow, identifier: str) -> Domain:
    try:
        domain = await queries.domain_by_name_or_hash(uow, identifier)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e
    if domain is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail=f"Domain not found: {identifier}"
        )
    return domain


@router.get("/{identifier}", response_model=DomainDTO)
async def get_domain(identifier: str, uow_factory=Depends(get_uow_factory)) -> DomainDTO:
    """Get a domain by namehash (0x...), full name (alice.poly) or label (alice).

    Raises:
        HTTPException 404: Domain not indexed
        HTTPException 422: Name is not a registrable label
    """
    async with await uow_factory() as uow:
        domain = await _find_domain(uow, identifier)
    return DomainDTO.from_model(domain)


@router.get("/{identifier}/records", response_model=list[RecordDTO])
async def get_domain_records(
    identifier: str,
    include_deleted: bool = Query(default=False),
    uow_factory=Depends(get_uow_factory),
) -> list[RecordDTO]:
    async with await uow_factory() as uow:
        domain = await _find_domain(uow, identifier)
        records = await queries.records_for_domain(
            uow, domain.name_hash, include_deleted=include_deleted
        )
    return [RecordDTO.from_model(r) for r in records]
