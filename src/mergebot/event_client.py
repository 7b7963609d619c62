from __future__ import annotations

from collections.abc import Callable
import json
import logging
import random
import threading
from typing import Protocol

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect

from mergebot.observability import log_event, log_warning_event


LOGGER = logging.getLogger("mergebot.event_client")

_RECV_TIMEOUT_SECONDS = 1.0
_OPEN_TIMEOUT_SECONDS = 30.0


class EventConnection(Protocol):
    def send(self, message: str) -> None: ...

    def recv(self, timeout: float | None = None) -> str | bytes: ...

    def close(self) -> None: ...


ConnectFactory = Callable[[str], EventConnection]
MessageHandler = Callable[[str], None]


def default_connect(url: str) -> EventConnection:
    return connect(url, open_timeout=_OPEN_TIMEOUT_SECONDS)


class EventStreamClient:
    """Subscribes to server triggers and feeds each frame to ``handler``.

    Frames are delivered on the calling thread, one at a time, in arrival order.
    """

    BASE_DELAY_SECONDS = 0.5
    MAX_DELAY_SECONDS = 30.0
    JITTER_RANGE = 1.0

    def __init__(
        self,
        *,
        url: str,
        api_key: str,
        bot_name: str,
        event_types: tuple[str, ...],
        handler: MessageHandler,
        connect_factory: ConnectFactory = default_connect,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._bot_name = bot_name
        self._event_types = event_types
        self._handler = handler
        self._connect_factory = connect_factory

    def run(self, stop_event: threading.Event) -> None:
        attempt = 0
        while not stop_event.is_set():
            try:
                connection = self._connect_factory(self._url)
            except (OSError, TimeoutError, WebSocketException) as exc:
                log_warning_event(
                    LOGGER, "event_stream_connect_failed", url=self._url, error=str(exc)
                )
            else:
                attempt = 0
                try:
                    self._handshake(connection)
                    log_event(
                        LOGGER,
                        "event_stream_connected",
                        url=self._url,
                        events=self._event_types,
                    )
                    self._pump(connection, stop_event)
                except (OSError, WebSocketException) as exc:
                    log_warning_event(
                        LOGGER, "event_stream_disconnected", url=self._url, error=str(exc)
                    )
                finally:
                    connection.close()

            if stop_event.is_set():
                break
            delay = self.reconnect_delay(attempt)
            attempt += 1
            stop_event.wait(delay)
        log_event(LOGGER, "event_stream_stopped", url=self._url)

    def reconnect_delay(self, attempt: int) -> float:
        """``min(base * 2**attempt, max)`` plus uniform jitter, never negative."""
        delay = min(self.BASE_DELAY_SECONDS * (2**attempt), self.MAX_DELAY_SECONDS)
        jitter = random.uniform(-self.JITTER_RANGE, self.JITTER_RANGE)
        return max(0.0, delay + jitter)

    def _handshake(self, connection: EventConnection) -> None:
        connection.send(
            json.dumps({"action": "login", "key": self._api_key, "name": self._bot_name})
        )
        connection.send(
            json.dumps(
                {
                    "action": "register",
                    "type": "trigger",
                    "eventlist": list(self._event_types),
                }
            )
        )

    def _pump(self, connection: EventConnection, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                frame = connection.recv(timeout=_RECV_TIMEOUT_SECONDS)
            except TimeoutError:
                continue
            try:
                message = frame.decode("utf-8") if isinstance(frame, bytes) else frame
            except UnicodeDecodeError as exc:
                log_warning_event(
                    LOGGER, "event_frame_undecodable", url=self._url, error=str(exc)
                )
                continue
            try:
                self._handler(message)
            except Exception:  # noqa: BLE001
                LOGGER.exception("event=event_dispatch_failed url=%s", self._url)


def subscribed_event_types(*, review_filter: bool, attribute_filter: bool) -> tuple[str, ...]:
    out: list[str] = []
    if review_filter:
        out.append("codeReviewChanged")
    if attribute_filter:
        out.append("branchAttributeChanged")
    return tuple(out)
