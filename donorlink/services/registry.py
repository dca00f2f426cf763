# SPDX-License-Identifier: Apache-2.0

"""
In-memory registry of active matching processes.

The registry is owned by a scheduler instance. Every read-modify-write of
a single process happens under that process's own lock; different
processes can be mutated concurrently. Readers get deep-copied snapshots,
while the scheduler holds live entries for the duration of a cycle.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, Generator, List, Optional, TypeVar

from pydantic import ValidationError

from ..exceptions import InvalidTransitionError, RegistryConflictError
from ..models.entities import MatchingProcess

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistryEntry:
    """Live handle on one registered process and its lock."""

    def __init__(self, process: MatchingProcess):
        self.process = process
        self.lock = threading.RLock()
        self.removed = False

    @contextmanager
    def locked(self) -> Generator[MatchingProcess, None, None]:
        """Hold the process lock and yield the live process."""
        with self.lock:
            yield self.process

    def snapshot(self) -> MatchingProcess:
        with self.lock:
            return self.process.model_copy(deep=True)


class MatchingRegistry:
    """Keyed store of matching processes, by process id and by request id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, RegistryEntry] = {}
        self._by_request: Dict[str, str] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, process_id: str) -> bool:
        with self._lock:
            return process_id in self._entries

    def create(self, process: MatchingProcess) -> RegistryEntry:
        """
        Register a new process.

        Raises:
            RegistryConflictError: If the process id or its request is already registered
        """
        with self._lock:
            if process.id in self._entries:
                raise RegistryConflictError(f"Process {process.id} already registered", process.id)
            if process.request_id in self._by_request:
                raise RegistryConflictError(
                    f"Request {process.request_id} already has an active matching process",
                    self._by_request[process.request_id]
                )

            entry = RegistryEntry(process)
            self._entries[process.id] = entry
            self._by_request[process.request_id] = process.id

        logger.debug(f"Registered matching process {process.id} for request {process.request_id}")
        return entry

    def entry(self, process_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            return self._entries.get(process_id)

    def entry_for_request(self, request_id: str) -> Optional[RegistryEntry]:
        with self._lock:
            process_id = self._by_request.get(request_id)
            return self._entries.get(process_id) if process_id else None

    def get(self, process_id: str) -> Optional[MatchingProcess]:
        """Snapshot of a process, or None."""
        entry = self.entry(process_id)
        return entry.snapshot() if entry else None

    def get_by_request(self, request_id: str) -> Optional[MatchingProcess]:
        """Snapshot of the process matching a blood request, or None."""
        entry = self.entry_for_request(request_id)
        return entry.snapshot() if entry else None

    def update(self, process_id: str, mutator: Callable[[MatchingProcess], T]) -> T:
        """
        Apply ``mutator`` to the live process under its lock.

        Raises:
            RegistryConflictError: If the process is missing, the mutation breaks a
                model invariant, or the entry no longer matches its key
        """
        entry = self.entry(process_id)
        if entry is None:
            raise RegistryConflictError(f"Process {process_id} is not registered", process_id)
        return apply_mutation(entry, mutator)

    def remove(self, process_id: str) -> Optional[MatchingProcess]:
        """Unregister a process; the removed live process is returned."""
        with self._lock:
            entry = self._entries.pop(process_id, None)
            if entry is None:
                return None
            if self._by_request.get(entry.process.request_id) == process_id:
                del self._by_request[entry.process.request_id]
            entry.removed = True

        logger.debug(f"Removed matching process {process_id}")
        return entry.process

    def due(self, now: datetime) -> List[RegistryEntry]:
        """Entries of active processes whose escalation gate has opened."""
        with self._lock:
            entries = list(self._entries.values())

        due_entries = []
        for entry in entries:
            with entry.lock:
                if entry.process.is_due(now):
                    due_entries.append(entry)
        return due_entries

    def snapshots(self) -> List[MatchingProcess]:
        with self._lock:
            entries = list(self._entries.values())
        return [entry.snapshot() for entry in entries]

    def clear(self) -> None:
        with self._lock:
            for entry in self._entries.values():
                entry.removed = True
            self._entries.clear()
            self._by_request.clear()


def apply_mutation(entry: RegistryEntry, mutator: Callable[[MatchingProcess], T]) -> T:
    """
    Run ``mutator`` against a live entry under its lock.

    Invariant violations raised by model validation surface as
    RegistryConflictError; illegal state transitions propagate unchanged.
    """
    with entry.lock:
        try:
            return mutator(entry.process)
        except InvalidTransitionError:
            raise
        except ValidationError as e:
            raise RegistryConflictError(
                f"Mutation of process {entry.process.id} violated an invariant: {e}",
                entry.process.id
            )
