"""Record stores for profiles and queued jobs.

Stores hold an ordered list of plain dict records and replace it as a
whole on every save. ``StoreWriter`` sits in front of a store and turns
saves into serialized background writes.
"""
import asyncio
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from .errors import PersistenceError

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def load(self) -> list[dict]:
        ...

    def save(self, records: list[dict]) -> None:
        ...


class JsonFileStore:
    """Stores records as a JSON array in a single file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> list[dict]:
        """Load records; a missing or unreadable file yields an empty list."""
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load {self.path}: {e}")
            return []
        if not isinstance(data, list):
            logger.error(f"Failed to load {self.path}: expected a list, got {type(data).__name__}")
            return []
        return [record for record in data if isinstance(record, dict)]

    def save(self, records: list[dict]) -> None:
        """Atomically replace the file contents.

        Raises:
            PersistenceError: the file could not be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Failed to save {self.path}: {e}") from e

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class MemoryStore:
    """Keeps records in memory; used for ephemeral runs and tests."""

    def __init__(self, records: Optional[list[dict]] = None):
        self.records: list[dict] = copy.deepcopy(records) if records else []
        self.save_count = 0

    def load(self) -> list[dict]:
        return copy.deepcopy(self.records)

    def save(self, records: list[dict]) -> None:
        self.records = copy.deepcopy(records)
        self.save_count += 1


class StoreWriter:
    """Serializes saves to one store.

    ``schedule`` returns immediately. A single drain task writes the most
    recent snapshot in a worker thread, so bursts of mutations coalesce and
    an older snapshot never overwrites a newer one. Without a running event
    loop the save happens synchronously.
    """

    def __init__(self, store: RecordStore, logger: Optional[logging.Logger] = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)
        self._pending: Optional[list[dict]] = None
        self._task: Optional[asyncio.Task] = None

    def schedule(self, records: list[dict]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(records)
            return
        self._pending = records
        if self._task is None or self._task.done():
            self._task = loop.create_task(self._drain())

    async def flush(self) -> None:
        """Wait until every scheduled snapshot has been written."""
        while self._task is not None and not self._task.done():
            await self._task

    async def _drain(self) -> None:
        while self._pending is not None:
            records, self._pending = self._pending, None
            await asyncio.to_thread(self._write, records)

    def _write(self, records: list[dict]) -> None:
        try:
            self.store.save(records)
        except PersistenceError as e:
            self.logger.error(str(e))
        except Exception as e:
            self.logger.exception(f"Unexpected error while saving records: {e}")
