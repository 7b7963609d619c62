from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast

from mergebot.branch_queue import BranchQueue
from mergebot.config import BotConfig
from mergebot.find_queries import find_pending_branches_with_reviews, find_resolved_branches
from mergebot.models import (
    Branch,
    EventType,
    Review,
    local_branch_name,
    parse_review_status,
    repository_key,
)
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi
from mergebot.state import StateStore


LOGGER = logging.getLogger("mergebot.dispatcher")

BRANCH_ATTRIBUTE_CHANGED: EventType = "branchAttributeChanged"
CODE_REVIEW_CHANGED: EventType = "codeReviewChanged"


class EventParseError(ValueError):
    pass


@dataclass(frozen=True)
class BranchAttributeChangedEvent:
    branch: Branch
    attribute_name: str
    attribute_value: str


@dataclass(frozen=True)
class CodeReviewChangedEvent:
    branch: Branch
    review: Review


class EventDispatcher:
    """Applies server events to the review store and the branch queue.

    Callers must deliver events one at a time; queue mutations for a single
    event run under the queue lock so the worker never observes half of one.
    """

    def __init__(self, *, config: BotConfig, state: StateStore, queue: BranchQueue) -> None:
        self._config = config
        self._state = state
        self._queue = queue

    def on_event_received(self, message: str) -> None:
        try:
            payload = _event_body(_decode(message))
            event_type = _event_type(payload)
            event: BranchAttributeChangedEvent | CodeReviewChangedEvent
            if event_type == BRANCH_ATTRIBUTE_CHANGED:
                event = _parse_attribute_event(payload)
            elif event_type == CODE_REVIEW_CHANGED:
                event = _parse_review_event(payload)
            else:
                log_event(LOGGER, "event_ignored", event_type=event_type)
                return
        except ValueError as exc:
            log_warning_event(LOGGER, "event_parse_failed", error=str(exc))
            return

        if isinstance(event, BranchAttributeChangedEvent):
            self._handle_attribute_changed(event)
        else:
            self._handle_review_changed(event)

    def should_be_processed(self, repository: str, branch_full_name: str) -> bool:
        if not same_repository(repository, self._config.repository):
            return False
        prefix = self._config.branch_prefix
        if not prefix:
            return True
        return local_branch_name(branch_full_name).lower().startswith(prefix.lower())

    def _handle_attribute_changed(self, event: BranchAttributeChangedEvent) -> None:
        branch = event.branch
        if not self.should_be_processed(branch.repository, branch.full_name):
            return
        status_attribute = self._config.plastic.status_attribute
        if event.attribute_name.strip().lower() != status_attribute.name.strip().lower():
            return

        with self._queue.lock:
            if not _is_resolved(event.attribute_value, status_attribute.resolved_value):
                self._queue.remove(branch.repository, branch.branch_id)
                return
            self._queue.enqueue(branch)

    def _handle_review_changed(self, event: CodeReviewChangedEvent) -> None:
        branch = event.branch
        review = event.review
        if not self.should_be_processed(branch.repository, branch.full_name):
            return

        attribute_filter = self._config.plastic.is_branch_attr_filter_enabled
        if review.is_deleted:
            self._state.delete_review(review)
            log_event(LOGGER, "review_deleted", review_id=review.review_id, branch=branch.full_name)
            if attribute_filter:
                return
            if self._state.list_reviews_for_branch(branch.repository, branch.branch_id):
                return
            with self._queue.lock:
                self._queue.remove(branch.repository, branch.branch_id)
            return

        self._state.upsert_review(review)
        log_event(
            LOGGER,
            "review_tracked",
            review_id=review.review_id,
            branch=branch.full_name,
            status=review.status,
        )
        if attribute_filter:
            return
        with self._queue.lock:
            self._queue.enqueue(branch)


def load_branches_to_process(
    api: MergebotApi, config: BotConfig, state: StateStore, queue: BranchQueue
) -> int:
    """Seed the queue and the review store from the server at startup."""
    plastic = config.plastic
    status_attribute = plastic.status_attribute
    enqueued = 0

    if plastic.is_approved_code_review_filter_enabled:
        pending = find_pending_branches_with_reviews(
            api,
            config.repository,
            config.branch_prefix,
            status_attribute.name,
            status_attribute.merged_value,
        )
        for item in pending:
            state.upsert_review(item.review)
        if not plastic.is_branch_attr_filter_enabled:
            for item in pending:
                if queue.enqueue(item.branch):
                    enqueued += 1

    if plastic.is_branch_attr_filter_enabled:
        resolved = find_resolved_branches(
            api,
            config.repository,
            config.branch_prefix,
            status_attribute.name,
            status_attribute.resolved_value,
        )
        for branch in resolved:
            if queue.enqueue(branch):
                enqueued += 1

    log_event(LOGGER, "startup_branches_loaded", enqueued=enqueued)
    return enqueued


def same_repository(event_repository: str, configured_repository: str) -> bool:
    return repository_key(event_repository) == repository_key(configured_repository)


def _is_resolved(value: str, resolved_value: str) -> bool:
    if not resolved_value.strip():
        return False
    return value.strip().lower() == resolved_value.strip().lower()


def _decode(message: str) -> dict[str, object]:
    try:
        payload = json.loads(message)
    except (TypeError, ValueError) as exc:
        raise EventParseError(f"Unable to parse incoming event: {exc}") from exc
    if not isinstance(payload, dict):
        raise EventParseError("Incoming event must be a JSON object")
    return cast(dict[str, object], payload)


def _event_body(payload: dict[str, object]) -> dict[str, object]:
    nested = payload.get("event")
    if isinstance(nested, dict):
        return cast(dict[str, object], nested)
    return payload


def _event_type(payload: dict[str, object]) -> str:
    value = payload.get("type", payload.get("event"))
    if not isinstance(value, str):
        raise EventParseError("Incoming event has no type")
    return value


def _properties(payload: dict[str, object]) -> dict[str, object]:
    nested = payload.get("properties")
    if isinstance(nested, dict):
        return {str(key).lower(): value for key, value in nested.items()}
    return {str(key).lower(): value for key, value in payload.items()}


def _get(props: dict[str, object], key: str) -> str:
    value = props.get(key.lower())
    if value is None:
        return ""
    return str(value)


def _parse_branch(props: dict[str, object]) -> Branch:
    return Branch(
        repository=_get(props, "repository"),
        branch_id=_get(props, "branchId"),
        full_name=_get(props, "branchFullName"),
        owner=_get(props, "branchOwner"),
        comment=_get(props, "branchComment"),
    )


def _parse_attribute_event(payload: dict[str, object]) -> BranchAttributeChangedEvent:
    props = _properties(payload)
    return BranchAttributeChangedEvent(
        branch=_parse_branch(props),
        attribute_name=_get(props, "attributeName"),
        attribute_value=_get(props, "attributeValue"),
    )


def _parse_review_event(payload: dict[str, object]) -> CodeReviewChangedEvent:
    props = _properties(payload)
    branch = _parse_branch(props)
    return CodeReviewChangedEvent(
        branch=branch,
        review=Review(
            repository=branch.repository,
            review_id=_get(props, "codeReviewId"),
            target_id=branch.branch_id,
            status=parse_review_status(props.get("codereviewstatus", "pending")),
            title=_get(props, "codeReviewTitle"),
        ),
    )
