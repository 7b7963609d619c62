from __future__ import annotations

from dataclasses import dataclass
import logging
import threading

from mergebot.branch_queue import BranchQueue
from mergebot.config import BotConfig
from mergebot.dispatcher import EventDispatcher, load_branches_to_process
from mergebot.event_client import (
    ConnectFactory,
    EventStreamClient,
    default_connect,
    subscribed_event_types,
)
from mergebot.find_queries import exists_attribute_name
from mergebot.notifier import Notifier
from mergebot.observability import log_event
from mergebot.plastic_api import MergebotApi
from mergebot.processor import BranchProcessor
from mergebot.state import StateStore
from mergebot.task_status import TaskStatusUpdater
from mergebot.worker import WorkerLoop


LOGGER = logging.getLogger("mergebot.service_runner")

_WORKER_JOIN_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class ServiceRunner:
    config: BotConfig
    api: MergebotApi
    state: StateStore
    connect_factory: ConnectFactory = default_connect

    def run(self, stop_event: threading.Event | None = None) -> None:
        stop = stop_event if stop_event is not None else threading.Event()
        self.ensure_attributes()

        queue = BranchQueue(self.state)
        load_branches_to_process(self.api, self.config, self.state, queue)

        worker = self.build_worker(queue)
        worker_thread = threading.Thread(
            target=worker.run, args=(stop,), name="mergebot-worker", daemon=True
        )
        event_client = self.build_event_client(queue)

        log_event(
            LOGGER,
            "service_started",
            bot=self.config.runtime.bot_name,
            repository=self.config.repository,
            queued=len(queue),
        )
        worker_thread.start()
        try:
            event_client.run(stop)
        except KeyboardInterrupt:
            log_event(LOGGER, "service_interrupted")
        finally:
            stop.set()
            queue.wake()
            worker_thread.join(timeout=_WORKER_JOIN_TIMEOUT_SECONDS)
            log_event(LOGGER, "service_stopped", worker_alive=worker_thread.is_alive())

    def ensure_attributes(self) -> None:
        names = [self.config.merge_to_branches_attr_name]
        status_attribute = self.config.plastic.status_attribute.name
        if status_attribute:
            names.append(status_attribute)
        for name in names:
            if exists_attribute_name(self.api, self.config.repository, name):
                continue
            self.api.create_attribute(
                self.config.repository,
                name,
                f"Attribute automatically created by mergebot: {self.config.runtime.bot_name}",
            )
            log_event(LOGGER, "attribute_created", attribute=name)

    def build_worker(self, queue: BranchQueue) -> WorkerLoop:
        processor = BranchProcessor(
            api=self.api,
            config=self.config,
            state=self.state,
            notifier=Notifier(self.api, self.config.notifiers),
            status=TaskStatusUpdater(self.api, self.config, self.state),
        )
        return WorkerLoop(
            api=self.api,
            queue=queue,
            processor=processor,
            repository=self.config.repository,
            requeue_delay_seconds=self.config.runtime.requeue_delay_seconds,
        )

    def build_event_client(self, queue: BranchQueue) -> EventStreamClient:
        dispatcher = EventDispatcher(config=self.config, state=self.state, queue=queue)
        plastic = self.config.plastic
        return EventStreamClient(
            url=self.config.runtime.websocket_url,
            api_key=self.config.runtime.websocket_api_key,
            bot_name=self.config.runtime.bot_name,
            event_types=subscribed_event_types(
                review_filter=plastic.is_approved_code_review_filter_enabled,
                attribute_filter=plastic.is_branch_attr_filter_enabled,
            ),
            handler=dispatcher.on_event_received,
            connect_factory=self.connect_factory,
        )
