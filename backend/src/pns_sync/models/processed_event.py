"""ProcessedEvent entity - Identity of every applied chain event, for idempotent replay."""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import field_validator
from sqlalchemy import BigInteger, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide


class ProcessedEvent(SQLModel, table=True):
    """ProcessedEvent records (chain, tx_hash, log_index) once the event is applied."""

    __tablename__ = "processed_events"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("chain", "tx_hash", "log_index", name="uq_processed_events_identity"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    chain: ChainSide = Field(index=True)
    tx_hash: str = Field(max_length=66, index=True)
    log_index: int
    block_number: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    event_name: str = Field(max_length=64)
    name_hash: str | None = Field(default=None, max_length=66, index=True)
    applied_at: datetime = Field(default_factory=utcnow)

    @field_validator("log_index")
    @classmethod
    def validate_log_index(cls, v: int) -> int:
        """Validate log index is non-negative."""
        if v < 0:
            raise ValueError("Log index must be non-negative")
        return v
