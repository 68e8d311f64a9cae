"""Drift record persistence for the status dashboard."""

from .models import DriftRecord, DriftStatus, utc_now
from .publisher import S3RecordPublisher
from .store import DriftRecordStore, FileLock

__all__ = [
    "DriftRecord",
    "DriftStatus",
    "utc_now",
    "DriftRecordStore",
    "FileLock",
    "S3RecordPublisher",
]
