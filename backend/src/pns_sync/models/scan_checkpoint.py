"""ScanCheckpoint entity - Per-chain, per-contract-group scan cursor."""

from datetime import datetime
from typing import Optional

from pydantic import field_validator
from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide


class ScanCheckpoint(SQLModel, table=True):
    """ScanCheckpoint is owned exclusively by the batch scanner of its chain."""

    __tablename__ = "scan_checkpoints"  # type: ignore[assignment]

    chain: ChainSide = Field(primary_key=True)
    contract_group: str = Field(primary_key=True, max_length=64)
    last_processed_block: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    events_processed: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    last_tick_at: Optional[datetime] = Field(default=None)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("contract_group")
    @classmethod
    def validate_group(cls, v: str) -> str:
        """Validate group is alphanumeric + underscores only."""
        if not v.replace("_", "").isalnum():
            raise ValueError("Contract group must be alphanumeric with underscores only")
        return v
