"""Durable JSON store for the snipe queue."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from filelock import FileLock, Timeout

from gym_sniper.domain.models import QueueStatus, SnipeQueueEntry
from gym_sniper.utils.config import Settings, get_settings
from gym_sniper.utils.logger import get_logger


logger = get_logger(__name__)

QUEUE_DOCUMENT_VERSION = 1

# Shared by every repository in the process. Other processes (a CLI command
# next to a running daemon or API) are kept out by the sidecar file lock.
_QUEUE_LOCK = threading.RLock()


class QueueStoreError(RuntimeError):
    """Raised when the queue file cannot be read or written."""


@dataclass
class QueueSnapshot:
    """In-memory copy of the queue document."""

    entries: list[SnipeQueueEntry] = field(default_factory=list)
    malformed: list[Any] = field(default_factory=list)

    def find(self, class_id: int) -> Optional[SnipeQueueEntry]:
        for entry in self.entries:
            if entry.class_id == class_id:
                return entry
        return None

    def put(self, entry: SnipeQueueEntry) -> None:
        self.entries = [item for item in self.entries if item.class_id != entry.class_id]
        self.entries.append(entry)

    def drop(self, class_id: int) -> bool:
        remaining = [item for item in self.entries if item.class_id != class_id]
        dropped = len(remaining) != len(self.entries)
        self.entries = remaining
        return dropped


def entry_to_record(entry: SnipeQueueEntry) -> dict[str, Any]:
    return {
        "class_id": entry.class_id,
        "class_name": entry.class_name,
        "class_start_time": entry.class_start_time.isoformat(),
        "window_opens_at": entry.window_opens_at.isoformat(),
        "status": entry.status.value,
        "created_at": entry.created_at.isoformat(),
        "resolved_at": entry.resolved_at.isoformat() if entry.resolved_at else None,
        "trainer": entry.trainer,
        "message": entry.message,
    }


def _aware(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp '{raw}' has no UTC offset")
    return parsed


def entry_from_record(record: dict[str, Any]) -> SnipeQueueEntry:
    resolved_at = record.get("resolved_at")
    return SnipeQueueEntry(
        class_id=int(record["class_id"]),
        class_name=str(record["class_name"]),
        class_start_time=_aware(record["class_start_time"]),
        window_opens_at=_aware(record["window_opens_at"]),
        status=QueueStatus(record["status"]),
        created_at=_aware(record["created_at"]),
        resolved_at=_aware(resolved_at) if resolved_at else None,
        trainer=record.get("trainer"),
        message=record.get("message"),
    )


class SnipeQueueRepository:
    """Loads the whole document, lets callers mutate it, writes it back atomically."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        path: Optional[Path] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._path = Path(path or self._settings.queue_path)
        self._lock = lock or _QUEUE_LOCK
        self._file_lock = FileLock(
            f"{self._path}.lock",
            timeout=self._settings.queue_lock_timeout_seconds,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return Path(self._file_lock.lock_file)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def load(self) -> QueueSnapshot:
        with self._lock:
            return self._read()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire()
            except Timeout as exc:
                raise QueueStoreError(
                    f"Queue file '{self._path}' is locked by another process"
                ) from exc
            except OSError as exc:
                raise QueueStoreError(f"Failed to lock queue file '{self._path}': {exc}") from exc
            try:
                yield
            finally:
                self._file_lock.release()

    @contextmanager
    def transaction(self) -> Iterator[QueueSnapshot]:
        """Hold the thread lock and the file lock across load, mutation and save.

        The document is only written when the block exits without raising.
        """
        with self._exclusive():
            snapshot = self._read()
            yield snapshot
            self._write(snapshot)

    def _read(self) -> QueueSnapshot:
        if not self._path.exists():
            return QueueSnapshot()
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise QueueStoreError(f"Queue file '{self._path}' is not valid JSON: {exc}") from exc
        except OSError as exc:
            raise QueueStoreError(f"Failed to read queue file '{self._path}': {exc}") from exc

        if not isinstance(raw, dict) or not isinstance(raw.get("snipes"), list):
            raise QueueStoreError(f"Queue file '{self._path}' has no 'snipes' list")
        version = raw.get("version", QUEUE_DOCUMENT_VERSION)
        if version != QUEUE_DOCUMENT_VERSION:
            raise QueueStoreError(f"Unsupported queue file version: {version}")

        snapshot = QueueSnapshot()
        for record in raw["snipes"]:
            try:
                snapshot.entries.append(entry_from_record(record))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Keeping unreadable queue record as-is: %s", exc)
                snapshot.malformed.append(record)
        return snapshot

    def _write(self, snapshot: QueueSnapshot) -> None:
        entries = sorted(snapshot.entries, key=lambda item: item.window_opens_at)
        document = {
            "version": QUEUE_DOCUMENT_VERSION,
            "snipes": [entry_to_record(entry) for entry in entries] + list(snapshot.malformed),
        }
        directory = self._path.parent if str(self._path.parent) else Path(".")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, indent=2)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(temp_name, self._path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise QueueStoreError(f"Failed to write queue file '{self._path}': {exc}") from exc
        logger.debug("Saved %s queue entries to %s", len(entries), self._path)
