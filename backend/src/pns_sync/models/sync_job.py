"""SyncJob entity - One queued, idempotent propagation task with lifecycle tracking."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import Field, SQLModel

from pns_sync.core.timezone import utcnow
from pns_sync.models.domain import ChainSide


class JobType(str, Enum):
    """Target-chain instruction carried by a job."""

    MIRROR_DOMAIN = "mirror_domain"
    UPSERT_RECORD = "upsert_record"
    DELETE_RECORD = "delete_record"
    SET_WRAP_STATE = "set_wrap_state"
    MARK_CHECKPOINT = "mark_checkpoint"


class JobStatus(str, Enum):
    """SyncJob lifecycle status."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid sync job state transition."""

    pass


class SyncJob(SQLModel, table=True):
    """SyncJob replicates one accepted mutation onto the target chain.

    The payload always carries the source version so that the target chain
    (and the dispatcher) can reject stale replays. ``dedupe_key`` makes
    enqueueing idempotent: the same mutation never yields two jobs.
    """

    __tablename__ = "sync_jobs"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    dedupe_key: str = Field(max_length=255, unique=True, index=True)
    job_type: JobType
    target_chain: ChainSide = Field(index=True)
    name_hash: str = Field(max_length=66, index=True)
    key_hash: Optional[str] = Field(default=None, max_length=66)
    version: int = Field(default=0, sa_column=Column(BigInteger, nullable=False))
    value_hash: Optional[str] = Field(default=None, max_length=66)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    depends_on: Optional[UUID] = Field(default=None)

    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None, max_length=1000)
    tx_id: Optional[str] = Field(default=None, max_length=128)
    superseded: bool = Field(default=False)

    next_attempt_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = Field(default=None)

    def mark_in_flight(self) -> None:
        """Transition from pending to in_flight.

        Raises:
            InvalidStateTransition: If current status is not pending
        """
        if self.status != JobStatus.PENDING:
            raise InvalidStateTransition(
                f"Cannot mark in_flight from {self.status.value}. Job must be pending."
            )
        self.status = JobStatus.IN_FLIGHT
        self.updated_at = utcnow()

    def mark_done(self, tx_id: str | None = None, superseded: bool = False) -> None:
        """Transition to done after a successful (or superseded) submission.

        Raises:
            InvalidStateTransition: If the job is already terminal
        """
        if self.status in (JobStatus.DONE, JobStatus.FAILED):
            raise InvalidStateTransition(
                f"Cannot mark done from terminal state {self.status.value}."
            )
        self.status = JobStatus.DONE
        self.tx_id = tx_id
        self.superseded = superseded
        self.completed_at = utcnow()
        self.updated_at = self.completed_at

    def schedule_retry(self, error_message: str, delay_seconds: float) -> None:
        """Transition from in_flight back to pending after a transient failure.

        Raises:
            InvalidStateTransition: If current status is not in_flight
        """
        if self.status != JobStatus.IN_FLIGHT:
            raise InvalidStateTransition(
                f"Cannot schedule retry from {self.status.value}. Job must be in_flight."
            )
        self.retry_count += 1
        self.last_error = error_message[:1000]
        self.status = JobStatus.PENDING
        self.updated_at = utcnow()
        self.next_attempt_at = self.updated_at + timedelta(seconds=delay_seconds)

    def postpone(self, delay_seconds: float, reason: str) -> None:
        """Return an in_flight job to pending without consuming a retry."""
        if self.status != JobStatus.IN_FLIGHT:
            raise InvalidStateTransition(
                f"Cannot postpone from {self.status.value}. Job must be in_flight."
            )
        self.last_error = reason[:1000]
        self.status = JobStatus.PENDING
        self.updated_at = utcnow()
        self.next_attempt_at = self.updated_at + timedelta(seconds=delay_seconds)

    def mark_failed(self, error_message: str) -> None:
        """Transition from any non-terminal state to failed.

        Raises:
            InvalidStateTransition: If current status is already terminal (done/failed)
        """
        if self.status in (JobStatus.DONE, JobStatus.FAILED):
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.last_error = error_message[:1000]
        self.status = JobStatus.FAILED
        self.updated_at = utcnow()

    def requeue(self) -> None:
        """Administrative reset of a failed job back to pending."""
        if self.status != JobStatus.FAILED:
            raise InvalidStateTransition(
                f"Cannot requeue from {self.status.value}. Only failed jobs are requeued."
            )
        self.status = JobStatus.PENDING
        self.retry_count = 0
        self.updated_at = utcnow()
        self.next_attempt_at = self.updated_at

    def reopen(self, reason: str) -> None:
        """Send a done job again because its effect never reached the target chain."""
        if self.status != JobStatus.DONE or self.superseded:
            raise InvalidStateTransition(
                f"Cannot reopen from {self.status.value}. Only delivered jobs are reopened."
            )
        self.status = JobStatus.PENDING
        self.last_error = reason[:1000]
        self.completed_at = None
        self.updated_at = utcnow()
        self.next_attempt_at = self.updated_at
