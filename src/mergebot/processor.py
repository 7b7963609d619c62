from __future__ import annotations

import logging
import re
import time

from mergebot.build_ops import try_build_task
from mergebot.config import BotConfig
from mergebot.merge_ops import safe_delete_shelves, try_apply_shelves, try_merge_to_shelves
from mergebot.merge_report import (
    DESTINATIONS,
    MergeReport,
    build_merge_report,
    report_merge,
    set_build_result,
    set_build_time,
    set_issue,
    set_unexpected_exception,
)
from mergebot.models import (
    Branch,
    CheckinResult,
    MergeShelvesResult,
    ProcessResult,
    local_branch_name,
)
from mergebot.notifier import Notifier
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi
from mergebot.state import StateStore
from mergebot.task_status import TaskStatusUpdater


LOGGER = logging.getLogger("mergebot.processor")

_DESTINATION_SEPARATORS = re.compile(r"[;,]")


class BranchProcessor:
    """Drives one branch through readiness, merge, build and checkin.

    ``try_process_branch`` never raises: every path ends in ``"ok"``,
    ``"failed"`` or ``"not_ready"``, and the shelves created by the attempt are
    deleted and its merge report submitted before it returns.
    """

    def __init__(
        self,
        *,
        api: MergebotApi,
        config: BotConfig,
        state: StateStore,
        notifier: Notifier,
        status: TaskStatusUpdater,
    ) -> None:
        self._api = api
        self._config = config
        self._state = state
        self._notifier = notifier
        self._status = status

    def try_process_branch(self, branch: Branch) -> ProcessResult:
        task_number = get_task_number(branch.full_name, self._config.branch_prefix)
        report: MergeReport | None = None
        attempt_shelves: list[int] = []
        try:
            if task_number is None:
                log_event(LOGGER, "branch_prefix_mismatch", branch=branch.full_name)
                return "not_ready"
            if not self._is_task_ready(branch, task_number):
                log_event(LOGGER, "branch_not_ready", branch=branch.full_name)
                return "not_ready"

            destinations = self._destination_branches(branch)
            if not destinations:
                return self._fail(
                    branch,
                    task_number,
                    f"The attribute [{self._config.merge_to_branches_attr_name}] of branch "
                    f"[{self._spec(branch.full_name)}] is not properly set. Branch "
                    f"[{self._spec(branch.full_name)}] status will be set as 'failed': "
                    f"[{self._failed_value}].",
                )

            for destination in destinations:
                if self._exists_branch(destination):
                    continue
                return self._fail(
                    branch,
                    task_number,
                    f"The destination branch [{self._spec(destination)}] specified in attribute "
                    f"[{self._config.merge_to_branches_attr_name}] of branch "
                    f"[{self._spec(branch.full_name)}] does not exist. Branch "
                    f"[{self._spec(branch.full_name)}] status will be set as 'failed': "
                    f"[{self._failed_value}].",
                )

            for destination in destinations:
                if self._is_merge_allowed(branch, destination):
                    continue
                log_event(
                    LOGGER,
                    "merge_not_allowed_yet",
                    branch=branch.full_name,
                    destination=destination,
                )
                return "not_ready"

            report = build_merge_report(
                self._api.get_branch(self._config.repository, branch.full_name)
            )
            report.set_property(DESTINATIONS, ", ".join(destinations))
            issue_title = self._issue_title(task_number, report)

            shelves = try_merge_to_shelves(
                self._api,
                bot_name=self._config.runtime.bot_name,
                repository=self._config.repository,
                branch=branch,
                issue_title=issue_title,
                destinations=destinations,
                cleanup_shelves=attempt_shelves,
            )

            if shelves.all_not_needed:
                # Already merged everywhere: terminal "failed", never "ok".
                status_error = self._status.set_task_as_merged(branch, task_number)
                self._notify(branch, _join_lines(*shelves.not_needed_messages, status_error))
                return "failed"

            if shelves.has_errors:
                status_error = self._status.set_task_as_failed(branch, task_number)
                self._notify(
                    branch,
                    _join_lines(
                        *shelves.error_messages, *shelves.not_needed_messages, status_error
                    ),
                )
                return "failed"

            if shelves.not_needed_messages:
                self._notify(branch, self._partially_merged_message(branch, shelves))

            if not self._pre_checkin_stage(branch, task_number, shelves, report):
                return "failed"

            checkins = try_apply_shelves(
                self._api,
                bot_name=self._config.runtime.bot_name,
                repository=self._config.repository,
                branch=branch,
                issue_title=issue_title,
                shelves_by_destination=shelves.shelves_by_destination,
            )
            return self._finish_checkin(branch, task_number, shelves, checkins, report)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception(
                "event=branch_processing_error branch=%s task=%s", branch.full_name, task_number
            )
            self._status.set_task_as_failed(branch, task_number)
            self._notify(
                branch,
                f"Can't process branch [{branch.full_name}] because of an unexpected error: "
                f"{exc}.",
            )
            set_unexpected_exception(report, str(exc))
            return "failed"
        finally:
            report_merge(self._api, self._config.runtime.bot_name, report)
            safe_delete_shelves(self._api, self._config.repository, attempt_shelves)

    def _finish_checkin(
        self,
        branch: Branch,
        task_number: str,
        shelves: MergeShelvesResult,
        checkins: CheckinResult,
        report: MergeReport,
    ) -> ProcessResult:
        merged_to = ", ".join(shelves.shelves_by_destination)

        if checkins.all_ok:
            self._status.set_task_as_merged(branch, task_number)
            self._notify(
                branch, f"OK: Branch [{branch.full_name}] was successfully merged to [{merged_to}]"
            )
            return self._post_checkin_stage(branch, task_number, checkins, report)

        if checkins.error_messages:
            status_error = self._status.set_task_as_failed(branch, task_number)
            details = "\n\t".join(
                (*checkins.error_messages, *checkins.destination_changed_messages)
            )
            message = (
                f"Failed build. The result of building merges from branch [{branch.full_name}] "
                f"to [{merged_to}] went OK, but there were some errors checking-in the resulting "
                f"shelves:\n\t{details}\n\n{status_error or ''}"
            )
            log_warning_event(LOGGER, "branch_checkin_failed", branch=branch.full_name)
            if checkins.changesets_by_destination:
                self._post_checkin_stage(branch, task_number, checkins, report)
            self._notify(branch, message)
            return "failed"

        self._status.set_task_as_resolved(branch)
        details = "\n\t".join(checkins.destination_changed_messages)
        message = (
            f"Branch [{branch.full_name}] will be enqueued again, as new changesets appeared in "
            "merge destination branches, and thus, the branch needs to be tested again to "
            f"include those new changesets in the merge. Full report:\n\t{details}"
        )
        log_warning_event(LOGGER, "branch_requeued_destination_changed", branch=branch.full_name)
        if checkins.changesets_by_destination:
            self._post_checkin_stage(branch, task_number, checkins, report)
        self._notify(branch, message)
        return "not_ready"

    def _pre_checkin_stage(
        self,
        branch: Branch,
        task_number: str,
        shelves: MergeShelvesResult,
        report: MergeReport,
    ) -> bool:
        ci = self._config.ci
        if ci is None:
            self._notify(branch, _no_ci_message(task_number))
            return True

        if not shelves.shelves_by_destination:
            self._notify(
                branch,
                "Something wrong happened. There are no merge-to shelves to build task "
                f"{task_number}",
            )
            self._status.set_task_as_failed(branch, task_number)
            return False

        self._status.set_task_as_testing(branch, task_number)
        self._notify(
            branch,
            f"Testing branch [{branch.full_name}] before being merged in the following "
            f"destination branches: [{', '.join(shelves.shelves_by_destination)}].",
        )

        started = time.monotonic()
        result = try_build_task(
            self._api,
            self._config,
            branch=branch,
            task_number=task_number,
            objects_by_destination=shelves.shelves_by_destination,
            stage="pre_checkin",
        )
        set_build_time(report, "pre_checkin", int((time.monotonic() - started) * 1000))

        if result.all_successful:
            set_build_result(report, "pre_checkin", plan=ci.plan, succeeded=True)
            return True

        error_message = "\n".join(result.error_messages)
        set_build_result(
            report, "pre_checkin", plan=ci.plan, succeeded=False, error=error_message
        )
        self._status.set_task_as_failed(branch, task_number)
        self._notify(branch, error_message)
        return False

    def _post_checkin_stage(
        self,
        branch: Branch,
        task_number: str,
        checkins: CheckinResult,
        report: MergeReport,
    ) -> ProcessResult:
        ci = self._config.ci
        if ci is None or not ci.plan_after_checkin:
            log_event(LOGGER, "post_checkin_build_skipped", task=task_number)
            return "ok"

        if not checkins.changesets_by_destination:
            self._notify(
                branch,
                "Something wrong happened. There are no merge-to changesets to build after "
                f"merging branch [{branch.full_name}] to its destination branches.",
            )
            return "failed"

        built_on = ", ".join(checkins.changesets_by_destination)
        self._notify(
            branch,
            f"Testing branch [{branch.full_name}] after being merged in the following "
            f"destination branches: [{built_on}].",
        )

        started = time.monotonic()
        result = try_build_task(
            self._api,
            self._config,
            branch=branch,
            task_number=task_number,
            objects_by_destination=checkins.changesets_by_destination,
            stage="post_checkin",
        )
        set_build_time(report, "post_checkin", int((time.monotonic() - started) * 1000))

        if result.all_successful:
            set_build_result(report, "post_checkin", plan=ci.plan_after_checkin, succeeded=True)
            self._notify(
                branch,
                f"Build successful after merging branch [{branch.full_name}] to the following "
                f"destination branches: [{built_on}].",
            )
            return "ok"

        error_message = "\n".join(result.error_messages)
        set_build_result(
            report,
            "post_checkin",
            plan=ci.plan_after_checkin,
            succeeded=False,
            error=error_message,
        )
        self._notify(branch, error_message)
        return "failed"

    def _is_task_ready(self, branch: Branch, task_number: str) -> bool:
        issues = self._config.issues
        review_filter = self._config.plastic.is_approved_code_review_filter_enabled
        if issues is None and not review_filter:
            return True

        if review_filter and not self._state.all_reviews_approved(
            branch.repository, branch.branch_id
        ):
            return False

        if issues is None or issues.status_field is None:
            return True

        if not self._api.is_issue_tracker_connected(issues.plug):
            log_warning_event(LOGGER, "issue_tracker_unavailable", plug=issues.plug)
            return False

        status = self._api.get_issue_field(
            issues.plug, issues.project_key, task_number, issues.status_field.name
        )
        return status == issues.status_field.resolved_value

    def _destination_branches(self, branch: Branch) -> list[str]:
        try:
            raw_value = self._api.get_attribute(
                self._config.repository,
                self._config.merge_to_branches_attr_name,
                "branch",
                branch.full_name,
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "destination_attribute_unavailable",
                branch=branch.full_name,
                attribute=self._config.merge_to_branches_attr_name,
                error=str(exc),
            )
            return []
        return parse_destination_branches(raw_value)

    def _exists_branch(self, name: str) -> bool:
        try:
            model = self._api.get_branch(self._config.repository, name)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(LOGGER, "destination_branch_missing", branch=name, error=str(exc))
            return False
        return bool(model.name.strip())

    def _is_merge_allowed(self, branch: Branch, destination: str) -> bool:
        verdict = self._api.is_merge_allowed(
            self._config.repository, branch.full_name, destination
        )
        return verdict.strip().lower() == "ok"

    def _issue_title(self, task_number: str, report: MergeReport) -> str | None:
        issues = self._config.issues
        if issues is None:
            return None
        title = self._api.get_issue_field(
            issues.plug, issues.project_key, task_number, issues.title_field
        )
        url = self._api.get_issue_url(issues.plug, issues.project_key, task_number)
        set_issue(report, title, url)
        return title

    def _fail(self, branch: Branch, task_number: str, message: str) -> ProcessResult:
        log_warning_event(LOGGER, "branch_validation_failed", branch=branch.full_name)
        status_error = self._status.set_task_as_failed(branch, task_number)
        self._notify(branch, _join_lines(message, status_error))
        return "failed"

    def _notify(self, branch: Branch, message: str) -> None:
        self._notifier.notify(branch.owner, message)

    def _partially_merged_message(self, branch: Branch, shelves: MergeShelvesResult) -> str:
        already_merged = "\n\t".join(shelves.not_needed_messages)
        return (
            f"Branch [{branch.full_name}] is already merged to some of the specified destination "
            f"branches in the attribute [{self._config.merge_to_branches_attr_name}]. The "
            f"{self._config.runtime.bot_name} mergebot will continue building the merge(s) from "
            f"branch [{branch.full_name}] to [{', '.join(shelves.shelves_by_destination)}].\n\n"
            f"Report of already merged branches:\n\t{already_merged}"
        )

    def _spec(self, branch_name: str) -> str:
        return f"{branch_name}@{self._config.repository}@{self._config.server}"

    @property
    def _failed_value(self) -> str:
        return self._config.plastic.status_attribute.failed_value


def get_task_number(branch_name: str, prefix: str) -> str | None:
    """Strip ``prefix`` (case-insensitively) from the branch's local name."""
    name = local_branch_name(branch_name)
    if not prefix:
        return name
    if name.lower().startswith(prefix.lower()):
        return name[len(prefix) :]
    return None


def parse_destination_branches(raw_value: str) -> list[str]:
    out: list[str] = []
    for item in _DESTINATION_SEPARATORS.split(raw_value or ""):
        name = item.strip()
        if name and name not in out:
            out.append(name)
    return out


def _no_ci_message(task_number: str) -> str:
    return (
        "No Continuous Integration Plug was set for this mergebot. Therefore, no build actions "
        f"for task {task_number} will be performed."
    )


def _join_lines(*parts: str | None) -> str:
    return "\n".join(part for part in parts if part)
