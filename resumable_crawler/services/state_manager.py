"""
Resumable crawl state: per-partition processed sets and resume cursors.

Each partition is persisted as a pair of files in the state directory: a
JSON record holding the cursor and counters, and a newline-delimited list
of processed item keys. Both are rewritten on every commit.
"""

import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional, List, Set, Tuple, Iterable, FrozenSet

from resumable_crawler.concurrent.models import PartitionState
from resumable_crawler.concurrent.thread_safe import ReadWriteLock
from resumable_crawler.utils.errors import StateManagementError, retry_on_error
from resumable_crawler.utils.logging import get_logger


class StateBackend(ABC):
    """Durable storage for partition state."""

    @abstractmethod
    def load(self, partition: str) -> Optional[Tuple[PartitionState, Set[str]]]:
        """Return the stored state and processed keys, or None for a fresh partition."""

    @abstractmethod
    def save(self, state: PartitionState, processed: Iterable[str]) -> None:
        """Persist the state record together with the full processed set."""

    @abstractmethod
    def save_state(self, state: PartitionState) -> None:
        """Persist only the state record."""

    @abstractmethod
    def delete(self, partition: str) -> None:
        """Remove everything stored for the partition."""

    @abstractmethod
    def list_partitions(self) -> List[str]:
        """Partitions that have stored state."""


class FileStateBackend(StateBackend):
    """Stores partition state as files under a directory."""

    STATE_SUFFIX = "_state.json"
    PROCESSED_SUFFIX = "_processed.txt"

    def __init__(self, state_dir: str = "crawl_state"):
        """
        Initialize file backend.

        Args:
            state_dir: Directory for state files; created if missing

        Raises:
            StateManagementError: If the directory cannot be created
        """
        self.state_dir = Path(state_dir)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateManagementError(
                f"Cannot create state directory {self.state_dir}: {e}",
                {"state_dir": str(self.state_dir)}
            )
        self.logger = get_logger(__name__)

    @staticmethod
    def _file_stem(partition: str) -> str:
        return re.sub(r"[^A-Za-z0-9._-]", "_", partition)

    def state_path(self, partition: str) -> Path:
        return self.state_dir / f"{self._file_stem(partition)}{self.STATE_SUFFIX}"

    def processed_path(self, partition: str) -> Path:
        return self.state_dir / f"{self._file_stem(partition)}{self.PROCESSED_SUFFIX}"

    @retry_on_error(max_attempts=3, delay=0.05, exceptions=(OSError,))
    def _write_atomic(self, path: Path, content: str) -> None:
        # Write to a temporary file first, then rename over the target
        temp_file = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(temp_file, "w", encoding="utf-8") as f:
                f.write(content)
            temp_file.replace(path)
        except OSError:
            temp_file.unlink(missing_ok=True)
            raise

    def load(self, partition: str) -> Optional[Tuple[PartitionState, Set[str]]]:
        state_path = self.state_path(partition)
        processed_path = self.processed_path(partition)

        if not state_path.exists() and not processed_path.exists():
            return None

        try:
            processed: Set[str] = set()
            if processed_path.exists():
                with open(processed_path, "r", encoding="utf-8") as f:
                    processed = {line.strip() for line in f if line.strip()}

            if state_path.exists():
                with open(state_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                data["partition"] = partition
                state = PartitionState.from_dict(data)
            else:
                state = PartitionState(partition=partition)
        except (OSError, ValueError, KeyError) as e:
            raise StateManagementError(
                f"Failed to load state for partition {partition}: {e}",
                {"partition": partition, "state_file": str(state_path)}
            )

        return state, processed

    def save(self, state: PartitionState, processed: Iterable[str]) -> None:
        # The processed list is replaced last; a commit exists once its key is listed
        content = "".join(f"{key}\n" for key in sorted(processed))
        try:
            self._write_atomic(
                self.state_path(state.partition),
                json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
            )
            self._write_atomic(self.processed_path(state.partition), content)
        except OSError as e:
            raise StateManagementError(
                f"Failed to persist state for partition {state.partition}: {e}",
                {"partition": state.partition}
            )

    def save_state(self, state: PartitionState) -> None:
        try:
            self._write_atomic(
                self.state_path(state.partition),
                json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
            )
        except OSError as e:
            raise StateManagementError(
                f"Failed to persist state for partition {state.partition}: {e}",
                {"partition": state.partition}
            )

    def delete(self, partition: str) -> None:
        try:
            self.state_path(partition).unlink(missing_ok=True)
            self.processed_path(partition).unlink(missing_ok=True)
        except OSError as e:
            raise StateManagementError(
                f"Failed to delete state for partition {partition}: {e}",
                {"partition": partition}
            )

    def list_partitions(self) -> List[str]:
        partitions = []
        for path in sorted(self.state_dir.glob(f"*{self.STATE_SUFFIX}")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    partitions.append(json.load(f).get("partition") or
                                      path.name[:-len(self.STATE_SUFFIX)])
            except (OSError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable state file {path}: {e}")
        return partitions


class _PartitionEntry:
    """In-memory state of one partition plus the lock guarding it."""

    def __init__(self, partition: str):
        self.state = PartitionState(partition=partition)
        self.processed: Set[str] = set()
        self.lock = ReadWriteLock()
        self.loaded = False


class StateStore:
    """
    Concurrency-safe, durable progress tracking per partition.

    Membership checks take a partition's read lock and mutations take its
    write lock, so commits to one partition never block another. Every
    mutation is persisted before it is applied in memory; when persistence
    fails the in-memory state is left unchanged and the error propagates.
    """

    def __init__(self, state_dir: str = "crawl_state", backend: Optional[StateBackend] = None):
        """
        Initialize state store.

        Args:
            state_dir: Directory for the default file backend
            backend: Alternative persistence backend

        Raises:
            StateManagementError: If the state directory cannot be created
        """
        self.backend = backend or FileStateBackend(state_dir)
        self._entries: Dict[str, _PartitionEntry] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger(__name__)

    def _entry(self, partition: str) -> _PartitionEntry:
        with self._registry_lock:
            entry = self._entries.get(partition)
            if entry is None:
                entry = _PartitionEntry(partition)
                self._entries[partition] = entry

        if not entry.loaded:
            with entry.lock.write_locked():
                if not entry.loaded:
                    self._load(entry)
        return entry

    def _load(self, entry: _PartitionEntry) -> None:
        partition = entry.state.partition
        stored = self.backend.load(partition)
        if stored is not None:
            state, processed = stored
            if state.processed_count != len(processed):
                self.logger.warning(
                    f"Partition {partition}: stored count {state.processed_count} does not "
                    f"match {len(processed)} processed keys, using the key list"
                )
                state = replace(state, processed_count=len(processed))
            entry.state = state
            entry.processed = processed
            self.logger.info(
                f"Loaded state for {partition}: cursor={state.cursor}, "
                f"processed={state.processed_count}"
            )
        entry.loaded = True

    def is_processed(self, partition: str, item_key: str) -> bool:
        """Whether ``item_key`` has already been committed for ``partition``."""
        entry = self._entry(partition)
        with entry.lock.read_locked():
            return item_key in entry.processed

    def try_commit(self, partition: str, item_key: str) -> bool:
        """
        Durably mark ``item_key`` as processed.

        Args:
            partition: Partition key
            item_key: Item key

        Returns:
            True if this call recorded the item, False if it was already recorded

        Raises:
            StateManagementError: If persistence failed; nothing was recorded
        """
        entry = self._entry(partition)
        with entry.lock.write_locked():
            if item_key in entry.processed:
                return False

            new_state = replace(
                entry.state,
                last_item_key=item_key,
                processed_count=len(entry.processed) + 1,
                last_update_time=datetime.now(),
            )
            entry.processed.add(item_key)
            try:
                self.backend.save(new_state, entry.processed)
            except Exception:
                entry.processed.discard(item_key)
                self.logger.error(f"Commit of {partition}/{item_key} failed, rolled back")
                raise
            entry.state = new_state

        self.logger.debug(f"Committed {partition}/{item_key} ({new_state.processed_count} total)")
        return True

    def get_cursor(self, partition: str) -> int:
        entry = self._entry(partition)
        with entry.lock.read_locked():
            return entry.state.cursor

    def advance_cursor(self, partition: str, new_cursor: int) -> bool:
        """
        Move the resume cursor forward.

        A value not greater than the stored cursor is ignored.

        Returns:
            True if the cursor moved

        Raises:
            StateManagementError: If persistence failed; the cursor is unchanged
        """
        entry = self._entry(partition)
        with entry.lock.write_locked():
            if new_cursor <= entry.state.cursor:
                return False
            new_state = replace(entry.state, cursor=new_cursor, last_update_time=datetime.now())
            self.backend.save_state(new_state)
            entry.state = new_state
        return True

    def reset(self, partition: str) -> None:
        """
        Clear all progress for ``partition`` in memory and on disk.

        Raises:
            StateManagementError: If stored state could not be removed
        """
        with self._registry_lock:
            entry = self._entries.get(partition)
            if entry is None:
                entry = _PartitionEntry(partition)
                self._entries[partition] = entry

        with entry.lock.write_locked():
            self.backend.delete(partition)
            entry.state = PartitionState(partition=partition)
            entry.processed = set()
            entry.loaded = True

        self.logger.info(f"Reset state for partition {partition}")

    def get_state(self, partition: str) -> PartitionState:
        """Copy of the partition's current state record."""
        entry = self._entry(partition)
        with entry.lock.read_locked():
            return replace(entry.state)

    def get_processed_keys(self, partition: str) -> FrozenSet[str]:
        """Copy of the partition's processed set."""
        entry = self._entry(partition)
        with entry.lock.read_locked():
            return frozenset(entry.processed)

    def get_snapshot(self, partition: str) -> Tuple[PartitionState, FrozenSet[str]]:
        """State record and processed set, read together under one lock."""
        entry = self._entry(partition)
        with entry.lock.read_locked():
            return replace(entry.state), frozenset(entry.processed)

    def list_partitions(self) -> List[str]:
        """Partitions with persisted state."""
        return self.backend.list_partitions()

    def get_summary(self) -> Dict[str, Dict[str, Any]]:
        """Persisted state of every known partition, keyed by partition."""
        return {
            partition: self.get_state(partition).to_dict()
            for partition in self.list_partitions()
        }

    def shutdown(self) -> None:
        """Drop cached partitions. Everything is already persisted."""
        with self._registry_lock:
            count = len(self._entries)
            self._entries.clear()
        self.logger.info(f"State store shut down ({count} partitions cached)")
