"""Mapping store tables.

Importing this package registers every table on ``SQLModel.metadata``; the
Alembic env and the test fixtures rely on that.
"""

from pns_sync.models.domain import ChainSide, Domain, WrapState
from pns_sync.models.processed_event import ProcessedEvent
from pns_sync.models.record import MAX_RECORD_LENGTH, Record, RecordType
from pns_sync.models.scan_checkpoint import ScanCheckpoint
from pns_sync.models.sync_job import InvalidStateTransition, JobStatus, JobType, SyncJob

__all__ = [
    "ChainSide",
    "Domain",
    "WrapState",
    "Record",
    "RecordType",
    "MAX_RECORD_LENGTH",
    "SyncJob",
    "JobType",
    "JobStatus",
    "InvalidStateTransition",
    "ProcessedEvent",
    "ScanCheckpoint",
]
