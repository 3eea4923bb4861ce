"""One repository per mapping store table, each bound to a unit-of-work session."""

from pns_sync.repositories.domain import DomainRepository
from pns_sync.repositories.processed_event import ProcessedEventRepository
from pns_sync.repositories.record import RecordRepository
from pns_sync.repositories.scan_checkpoint import ScanCheckpointRepository
from pns_sync.repositories.sync_job import SyncJobRepository

__all__ = [
    "DomainRepository",
    "RecordRepository",
    "SyncJobRepository",
    "ProcessedEventRepository",
    "ScanCheckpointRepository",
]
