"""Per-environment drift record store with file locking."""

import fcntl
import json
import os
import time
from pathlib import Path
from typing import Dict, List, Optional

from drift_controller.records.models import DriftRecord
from drift_controller.records.publisher import S3RecordPublisher
from drift_controller.utils.errors import RecordStoreError, error_handler
from drift_controller.utils.logging import get_logger

logger = get_logger(__name__)

INDEX_FILE = "index.json"


class FileLock:
    """Exclusive advisory lock on a sidecar ``.lock`` file."""

    def __init__(self, path: Path, timeout: float = 30.0):
        """
        Initialize FileLock.

        Args:
            path: Lock file path
            timeout: Seconds to wait before giving up
        """
        self.path = path
        self.timeout = timeout
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """
        Acquire the lock, polling until the timeout expires.

        Raises:
            RecordStoreError: If lock cannot be acquired
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - start_time >= self.timeout:
                    os.close(self._fd)
                    self._fd = None
                    raise RecordStoreError(
                        f"Failed to acquire lock {self.path} after {self.timeout}s"
                    )
                time.sleep(0.05)

    def release(self) -> None:
        """Release the lock."""
        if self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
                os.close(self._fd)
            finally:
                self._fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class DriftRecordStore:
    """Key-value store of DriftRecords keyed by environment name.

    Each environment has exactly one JSON file that is overwritten on every
    write. An ``index.json`` with every record is rebuilt after each write so
    the dashboard can read a single document.
    """

    def __init__(
        self,
        directory: str,
        publisher: Optional[S3RecordPublisher] = None,
        lock_timeout: float = 30.0
    ):
        """
        Initialize DriftRecordStore.

        Args:
            directory: Directory holding one JSON file per environment
            publisher: Optional S3 publisher for the dashboard bucket
            lock_timeout: Seconds to wait for a record lock
        """
        self.directory = Path(directory)
        self.publisher = publisher
        self.lock_timeout = lock_timeout

    def path_for(self, environment: str) -> Path:
        """Get the record path of an environment."""
        return self.directory / f"{environment}.json"

    def cycle_lock(self, environment: str) -> FileLock:
        """Non-blocking lock held by whichever process is reconciling the environment."""
        return FileLock(self.directory / f"{environment}.cycle.lock", timeout=0)

    def get(self, environment: str) -> Optional[DriftRecord]:
        """
        Load the record of an environment.

        Returns:
            DriftRecord or None if the environment was never reconciled

        Raises:
            RecordStoreError: If the record file is corrupted
        """
        return self._read(self.path_for(environment))

    def put(self, record: DriftRecord) -> bool:
        """
        Replace the record of an environment.

        A record older than the stored one is discarded so a late writer can
        never overwrite a more recent cycle.

        Returns:
            True if the record was written, False if it was stale

        Raises:
            RecordStoreError: If the record cannot be written
        """
        path = self.path_for(record.environment)

        with FileLock(path.with_suffix(".lock"), self.lock_timeout):
            current = self._read(path)
            if not record.is_newer_than(current):
                logger.warning(
                    f"Discarding stale record for {record.environment} "
                    f"({record.timestamp.isoformat()} < {current.timestamp.isoformat()})"
                )
                return False
            self._write_json(path, record.to_dict())

        logger.debug(f"Stored {record.status.value} record for {record.environment}")
        records = self.export_index()
        self._publish(record, records)
        return True

    def list(self) -> List[DriftRecord]:
        """Get every stored record sorted by environment name."""
        if not self.directory.exists():
            return []
        records = []
        for path in sorted(self.directory.glob("*.json")):
            if path.name == INDEX_FILE:
                continue
            record = self._read(path)
            if record:
                records.append(record)
        return records

    def export_index(self) -> List[DriftRecord]:
        """Rewrite index.json from the per-environment records."""
        with FileLock(self.directory / "index.lock", self.lock_timeout):
            records = self.list()
            self._write_json(
                self.directory / INDEX_FILE,
                {"environments": [record.to_dict() for record in records]},
            )
        return records

    def as_dict(self) -> Dict[str, DriftRecord]:
        """Get every stored record keyed by environment."""
        return {record.environment: record for record in self.list()}

    def _read(self, path: Path) -> Optional[DriftRecord]:
        if not path.exists():
            return None
        try:
            with open(path, "r") as f:
                return DriftRecord.from_dict(json.load(f))
        except json.JSONDecodeError as e:
            raise RecordStoreError(f"Failed to parse record {path}: {e}")
        except (OSError, ValueError) as e:
            raise RecordStoreError(f"Failed to load record {path}: {e}")

    def _write_json(self, path: Path, data: Dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(".tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(data, f, indent=2)
            # Atomic rename
            temp_path.replace(path)
        except OSError as e:
            raise RecordStoreError(f"Failed to write {path}: {e}")

    def _publish(self, record: DriftRecord, records: List[DriftRecord]) -> None:
        """Mirror records to S3; the local copy stays authoritative."""
        if not self.publisher:
            return
        try:
            self.publisher.publish(record)
            self.publisher.publish_index(records)
        except RecordStoreError as e:
            error_handler.log_error(e)
