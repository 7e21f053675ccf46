"""
stratum/state/storage.py

Defines storage classes for the state of a run:
  - StateStore (abstract interface)
  - MemoryStateStore
  - FileStateStore

Stores are injected into the planner and executor explicitly; nothing here is
a process-wide singleton. Writes to one resource address are serialized by a
per-address asyncio.Lock, and every successful write bumps `serial`.
For an unknown address, `read` returns None so callers can detect
"no existing state" and proceed accordingly.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Dict, List, Optional, Type

import aiofiles
from pydantic import ValidationError

from stratum.errors import StateConflictError
from stratum.models.state import OutputValue, StateDocument, StateRecord

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Abstract base class for reading/writing resource state records."""

    def __init__(self) -> None:
        self._key_locks: Dict[str, asyncio.Lock] = {}

    def key_lock(self, address: str) -> asyncio.Lock:
        """Return the lock serializing writes for `address`."""
        if address not in self._key_locks:
            self._key_locks[address] = asyncio.Lock()
        return self._key_locks[address]

    async def open(self) -> None:
        """Acquire any resources the store needs. Default: nothing."""

    async def close(self) -> None:
        """Release whatever `open` acquired. Default: nothing."""

    async def __aenter__(self) -> StateStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    @property
    @abstractmethod
    def serial(self) -> int:
        """The number of writes applied to this state so far."""

    @abstractmethod
    async def read(self, address: str) -> Optional[StateRecord]:
        """Return the record for `address`, or None if there is none."""

    @abstractmethod
    async def list(self) -> List[StateRecord]:
        """Return every record, in the order they were first written."""

    @abstractmethod
    async def upsert(self, record: StateRecord) -> None:
        """Insert or replace the record at `record.address`."""

    @abstractmethod
    async def delete(self, address: str) -> bool:
        """Remove the record at `address`. Returns False if there was none."""

    @abstractmethod
    async def read_outputs(self) -> Dict[str, OutputValue]:
        """Return the outputs persisted by the last apply."""

    @abstractmethod
    async def write_outputs(self, outputs: Dict[str, OutputValue]) -> None:
        """Replace all persisted outputs."""


class DocumentStateStore(StateStore):
    """
    A StateStore backed by one in-memory StateDocument.

    Each write mutates a copy of the document, hands it to `_persist`, and only
    swaps it in once persisting succeeded.
    """

    def __init__(self, document: Optional[StateDocument] = None) -> None:
        super().__init__()
        self._doc = document if document is not None else StateDocument()
        self._write_lock = asyncio.Lock()

    @property
    def serial(self) -> int:
        return self._doc.serial

    @property
    def document(self) -> StateDocument:
        """A copy of the current document."""
        return self._doc.model_copy(deep=True)

    async def _persist(self, document: StateDocument) -> None:
        """Durably store `document`. Default: keep it in memory only."""

    async def _commit(self, document: StateDocument) -> None:
        document.serial = self._doc.serial + 1
        await self._persist(document)
        self._doc = document

    async def read(self, address: str) -> Optional[StateRecord]:
        record = self._doc.get(address)
        return record.model_copy(deep=True) if record else None

    async def list(self) -> List[StateRecord]:
        return [r.model_copy(deep=True) for r in self._doc.resources]

    async def upsert(self, record: StateRecord) -> None:
        async with self.key_lock(record.address):
            async with self._write_lock:
                updated = self.document
                updated.upsert(record.model_copy(deep=True))
                await self._commit(updated)
        logger.debug("State upserted %s (id=%s)", record.address, record.id)

    async def delete(self, address: str) -> bool:
        async with self.key_lock(address):
            async with self._write_lock:
                updated = self.document
                if not updated.remove(address):
                    return False
                await self._commit(updated)
        logger.debug("State deleted %s", address)
        return True

    async def read_outputs(self) -> Dict[str, OutputValue]:
        return {k: v.model_copy(deep=True) for k, v in self._doc.outputs.items()}

    async def write_outputs(self, outputs: Dict[str, OutputValue]) -> None:
        async with self._write_lock:
            updated = self.document
            updated.outputs = {k: v.model_copy(deep=True) for k, v in outputs.items()}
            await self._commit(updated)


class MemoryStateStore(DocumentStateStore):
    """
    Keeps state in process memory only. Used by tests and dry runs.
    """


class FileStateStore(DocumentStateStore):
    """
    Stores state as a JSON document at `path`.

    Writes go to '<path>.tmp' and are moved into place with os.replace, so a
    crash never leaves a half-written state file. The previously persisted
    document is kept at '<path>.backup'. Unless `lock` is False, an exclusive
    '<path>.lock' file is held between open() and close().
    """

    def __init__(self, path: str, lock: bool = True) -> None:
        super().__init__()
        self.path = path
        self.lock = lock
        self._lock_path = f"{path}.lock"
        self._holds_lock = False
        self._last_text: Optional[str] = None

    async def open(self) -> None:
        if self.lock:
            self._acquire_lock()
        try:
            await self._load()
        except BaseException:
            self._release_lock()
            raise

    async def close(self) -> None:
        self._release_lock()

    def _acquire_lock(self) -> None:
        parent = os.path.dirname(self._lock_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise StateConflictError(
                f"State is locked by another run ({self._lock_path} exists). "
                "Remove the lock file or disable locking if no other run is active."
            ) from exc
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._holds_lock = True

    def _release_lock(self) -> None:
        if self._holds_lock:
            if os.path.exists(self._lock_path):
                os.remove(self._lock_path)
            self._holds_lock = False

    async def _load(self) -> None:
        if not os.path.exists(self.path):
            self._doc = StateDocument()
            self._last_text = None
            return
        async with aiofiles.open(self.path, "r") as f:
            text = await f.read()
        try:
            self._doc = StateDocument.model_validate_json(text)
        except ValidationError as exc:
            raise StateConflictError(f"Cannot parse state file {self.path}: {exc}") from exc
        self._last_text = text
        logger.debug(
            "Loaded state %s (serial=%d, %d resources)",
            self.path,
            self._doc.serial,
            len(self._doc.resources),
        )

    async def _persist(self, document: StateDocument) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        if self._last_text is not None:
            async with aiofiles.open(f"{self.path}.backup", "w") as f:
                await f.write(self._last_text)

        text = document.model_dump_json(indent=2)
        tmp_path = f"{self.path}.tmp"
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(text)
        os.replace(tmp_path, self.path)
        self._last_text = text
