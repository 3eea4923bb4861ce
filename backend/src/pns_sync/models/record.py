"""Record entity - A single versioned key/value attribute of a domain."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, Column, LargeBinary
from sqlmodel import Field, SQLModel

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide

# Largest record payload the mirror program accepts
MAX_RECORD_LENGTH = 512


class RecordType(str, Enum):
    """Kind of record, which also selects the key hashing prefix."""

    TEXT = "text"
    ADDRESS = "address"
    CONTENT_HASH = "contentHash"
    CUSTOM = "custom"


class Record(SQLModel, table=True):
    """Record stores the highest version ever applied for (name_hash, key_hash).

    An empty value with ``tombstone=True`` marks a deleted record; the version
    still increments on delete.
    """

    __tablename__ = "records"  # type: ignore[assignment]

    name_hash: str = Field(primary_key=True, max_length=66)
    key_hash: str = Field(primary_key=True, max_length=66)
    key: str = Field(max_length=255)
    record_type: RecordType
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    tombstone: bool = Field(default=False)
    source_chain: ChainSide
    version: int = Field(sa_column=Column(BigInteger, nullable=False))

    # Highest version each chain is known to reflect
    primary_version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    mirror_version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))

    # Block timestamp of the winning write, used to break latest-write-wins ties
    observed_at: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def oversize(self) -> bool:
        """True when the payload cannot be written to the mirror program."""
        return len(self.value) > MAX_RECORD_LENGTH

    def chain_version(self, chain: ChainSide) -> int:
        """Highest version observed on the given chain."""
        return self.primary_version if chain is ChainSide.PRIMARY else self.mirror_version
