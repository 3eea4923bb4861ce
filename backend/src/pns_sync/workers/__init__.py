"""Background workers: one scan loop per chain, one dispatch loop per target chain."""

from pns_sync.workers.dispatch_worker import JobDispatcher, run_dispatch_worker
from pns_sync.workers.scan_worker import build_scanner, run_scan_worker

__all__ = [
    "run_scan_worker",
    "run_dispatch_worker",
    "build_scanner",
    "JobDispatcher",
]
