"""Domain entity - A registered name mirrored across the primary and mirror chains."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import field_validator
from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel

from pns_sync.core.timezone import utcnow


class ChainSide(str, Enum):
    """Which side of the deployment a chain plays."""

    PRIMARY = "primary"
    MIRROR = "mirror"

    @property
    def other(self) -> "ChainSide":
        return ChainSide.MIRROR if self is ChainSide.PRIMARY else ChainSide.PRIMARY


class WrapState(str, Enum):
    """Which chain currently holds the active NFT wrapper for a domain."""

    NONE = "none"
    PRIMARY = "primary"
    MIRROR = "mirror"

    @classmethod
    def held_by(cls, chain: ChainSide) -> "WrapState":
        return cls.PRIMARY if chain is ChainSide.PRIMARY else cls.MIRROR


class Domain(SQLModel, table=True):
    """Domain is a registered name keyed by its namehash.

    Domains are never deleted. An expired domain is flagged so its history
    stays queryable.
    """

    __tablename__ = "domains"  # type: ignore[assignment]

    name_hash: str = Field(primary_key=True, max_length=66)
    label: str = Field(max_length=255, index=True)
    owner_primary: str = Field(max_length=64, index=True)
    owner_mirror: Optional[str] = Field(default=None, max_length=64, index=True)
    expiration: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    resolver_address: Optional[str] = Field(default=None, max_length=64)
    wrap_state: WrapState = Field(default=WrapState.NONE)
    expired: bool = Field(default=False, index=True)

    # Domain-level version stamps (one sequence per name_hash)
    version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    primary_version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    mirror_version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    source_chain: ChainSide = Field(default=ChainSide.PRIMARY)

    # Checkpoints of the last event applied from each chain
    last_primary_block: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    last_primary_tx: Optional[str] = Field(default=None, max_length=66)
    last_mirror_slot: Optional[int] = Field(
        default=None, sa_column=Column(BigInteger, nullable=True)
    )
    last_synced_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("name_hash")
    @classmethod
    def validate_name_hash(cls, v: str) -> str:
        """Validate namehash format (0x + 64 hex characters)."""
        if not v.startswith("0x") or len(v) != 66:
            raise ValueError("Name hash must be in format 0x followed by 64 hex characters")
        return v.lower()

    def chain_version(self, chain: ChainSide) -> int:
        """Highest domain version observed on the given chain."""
        return self.primary_version if chain is ChainSide.PRIMARY else self.mirror_version
