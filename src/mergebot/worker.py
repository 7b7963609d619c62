from __future__ import annotations

import logging
import threading
import time

from mergebot.branch_queue import BranchQueue
from mergebot.find_queries import get_branch_name
from mergebot.models import Branch, ProcessResult
from mergebot.observability import log_event, log_warning_event, logging_branch_context
from mergebot.plastic_api import MergebotApi
from mergebot.processor import BranchProcessor


LOGGER = logging.getLogger("mergebot.worker")


class WorkerLoop:
    """Single consumer of the branch queue.

    Branches are processed strictly one at a time; a ``not_ready`` result puts
    the branch back at the tail of the queue and pauses before the next one.
    """

    def __init__(
        self,
        *,
        api: MergebotApi,
        queue: BranchQueue,
        processor: BranchProcessor,
        repository: str,
        requeue_delay_seconds: float,
    ) -> None:
        self._api = api
        self._queue = queue
        self._processor = processor
        self._repository = repository
        self._requeue_delay_seconds = requeue_delay_seconds

    def run(self, stop_event: threading.Event) -> None:
        log_event(LOGGER, "worker_started")
        while not stop_event.is_set():
            branch = self._queue.dequeue(stop_event)
            if branch is None:
                break
            self._process(branch)
        log_event(LOGGER, "worker_stopped")

    def run_once(self) -> ProcessResult | None:
        branch = self._queue.try_dequeue()
        if branch is None:
            return None
        return self._process(branch)

    def _process(self, branch: Branch) -> ProcessResult | None:
        resolved = self._resolve(branch)
        if resolved is None:
            return None

        with logging_branch_context(self._repository, resolved.full_name):
            log_event(LOGGER, "branch_processing_started", branch_id=resolved.branch_id)
            result = self._processor.try_process_branch(resolved)
            log_event(
                LOGGER,
                "branch_processing_finished",
                branch_id=resolved.branch_id,
                result=result,
            )

        if result == "not_ready":
            self._requeue(resolved)
        return result

    def _resolve(self, branch: Branch) -> Branch | None:
        try:
            name = get_branch_name(self._api, self._repository, branch.branch_id)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "branch_name_lookup_failed",
                branch_id=branch.branch_id,
                error=str(exc),
            )
            self._requeue(branch)
            return None
        if not name:
            log_warning_event(LOGGER, "branch_dropped_missing", branch_id=branch.branch_id)
            return None
        if name == branch.full_name:
            return branch
        return branch.renamed(name)

    def _requeue(self, branch: Branch) -> None:
        with self._queue.lock:
            if not self._queue.contains(branch.repository, branch.branch_id):
                self._queue.enqueue(branch)
        time.sleep(self._requeue_delay_seconds)
