from __future__ import annotations

import logging
import threading

from mergebot.models import Branch
from mergebot.observability import log_event
from mergebot.state import QueuedBranchState, StateStore


LOGGER = logging.getLogger("mergebot.branch_queue")

_WAIT_POLL_SECONDS = 1.0


class BranchQueue:
    """De-duplicated FIFO of branches waiting for the worker.

    ``lock`` is shared with the event dispatcher so a whole event is applied
    atomically with respect to dequeue.
    """

    def __init__(self, store: StateStore, *, wait_poll_seconds: float = _WAIT_POLL_SECONDS) -> None:
        self._store = store
        self._wait_poll_seconds = wait_poll_seconds
        self.lock = threading.RLock()
        self._not_empty = threading.Condition(self.lock)

    def enqueue(self, branch: Branch) -> bool:
        with self.lock:
            inserted = self._store.queue_push(branch)
            if inserted:
                log_event(
                    LOGGER,
                    "branch_enqueued",
                    repository=branch.repository,
                    branch_id=branch.branch_id,
                    branch=branch.full_name,
                )
                self._not_empty.notify_all()
            return inserted

    def dequeue(self, stop_event: threading.Event | None = None) -> Branch | None:
        """Block until a branch is available or ``stop_event`` is set."""
        with self.lock:
            while True:
                if stop_event is not None and stop_event.is_set():
                    return None
                branch = self._store.queue_pop_oldest()
                if branch is not None:
                    return branch
                self._not_empty.wait(self._wait_poll_seconds)

    def try_dequeue(self) -> Branch | None:
        with self.lock:
            return self._store.queue_pop_oldest()

    def contains(self, repository: str, branch_id: str) -> bool:
        with self.lock:
            return self._store.queue_contains(repository, branch_id)

    def remove(self, repository: str, branch_id: str) -> bool:
        with self.lock:
            removed = self._store.queue_remove(repository, branch_id)
            if removed:
                log_event(
                    LOGGER,
                    "branch_dequeued_by_event",
                    repository=repository,
                    branch_id=branch_id,
                )
            return removed

    def has_queued(self) -> bool:
        with self.lock:
            return self._store.queue_count() > 0

    def __len__(self) -> int:
        with self.lock:
            return self._store.queue_count()

    def snapshot(self) -> tuple[QueuedBranchState, ...]:
        with self.lock:
            return self._store.list_queued_branches()

    def wake(self) -> None:
        with self.lock:
            self._not_empty.notify_all()
