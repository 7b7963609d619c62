from __future__ import annotations

import logging
from typing import Literal

from mergebot.config import BotConfig, StatusFieldConfig
from mergebot.models import REVIEW_STATUS_IDS, Branch
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi
from mergebot.state import StateStore


LOGGER = logging.getLogger("mergebot.task_status")

TaskStatus = Literal["testing", "failed", "merged", "resolved"]


class TaskStatusUpdater:
    """Moves a branch through its lifecycle on the server and the issue tracker.

    Every transition returns ``None`` on success or a human-readable error
    message, which the caller folds into the owner notification.
    """

    def __init__(self, api: MergebotApi, config: BotConfig, state: StateStore) -> None:
        self._api = api
        self._config = config
        self._state = state

    def set_task_as_testing(self, branch: Branch, task_number: str | None) -> str | None:
        return self._transition(branch, task_number, "testing")

    def set_task_as_failed(self, branch: Branch, task_number: str | None) -> str | None:
        if self._config.plastic.is_approved_code_review_filter_enabled:
            error = self._reset_reviews_to_pending(branch)
            if error is not None:
                return error
        return self._transition(branch, task_number, "failed")

    def set_task_as_merged(self, branch: Branch, task_number: str | None) -> str | None:
        return self._transition(branch, task_number, "merged")

    def set_task_as_resolved(self, branch: Branch) -> str | None:
        return self._transition(branch, None, "resolved")

    def _transition(
        self, branch: Branch, task_number: str | None, status: TaskStatus
    ) -> str | None:
        attribute = self._config.plastic.status_attribute
        attribute_value = _status_value(attribute, status)
        try:
            if attribute.name and attribute_value:
                self._api.change_attribute(
                    self._config.repository,
                    attribute.name,
                    "branch",
                    branch.full_name,
                    attribute_value,
                )
            self._set_issue_field(task_number, status)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "task_status_update_failed",
                branch=branch.full_name,
                status=status,
                error=str(exc),
            )
            return (
                f"There was an error setting the branch [{branch.full_name}] as "
                f"[{attribute_value or status}]. Error: {exc}."
            )
        log_event(LOGGER, "task_status_updated", branch=branch.full_name, status=status)
        return None

    def _set_issue_field(self, task_number: str | None, status: TaskStatus) -> None:
        issues = self._config.issues
        if issues is None or issues.status_field is None or task_number is None:
            return
        value = _status_value(issues.status_field, status)
        if not value:
            return
        self._api.set_issue_field(
            issues.plug, issues.project_key, task_number, issues.status_field.name, value
        )

    def _reset_reviews_to_pending(self, branch: Branch) -> str | None:
        pending = REVIEW_STATUS_IDS["pending"]
        for review in self._state.list_reviews_for_branch(branch.repository, branch.branch_id):
            try:
                self._api.update_review(branch.repository, review.review_id, pending, review.title)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "review_reset_failed",
                    branch=branch.full_name,
                    review_id=review.review_id,
                    error=str(exc),
                )
                return (
                    f"There was an error setting the code reviews of branch "
                    f"[{branch.full_name}] as [pending]. Error: {exc}."
                )
        return None


def _status_value(field: StatusFieldConfig, status: TaskStatus) -> str:
    if status == "testing":
        return field.testing_value
    if status == "failed":
        return field.failed_value
    if status == "merged":
        return field.merged_value
    return field.resolved_value
