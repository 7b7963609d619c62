from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from mergebot.models import BranchModel, BuildStage
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi


LOGGER = logging.getLogger("mergebot.merge_report")

ISSUE_TITLE = "issue_title"
ISSUE_URL = "issue_url"
UNEXPECTED_EXCEPTION = "unexpected_exception"
DESTINATIONS = "destinations"


@dataclass
class MergeReport:
    repository_id: int
    branch_id: int
    timestamp: str
    properties: dict[str, str] = field(default_factory=dict)

    def set_property(self, name: str, value: str) -> None:
        self.properties[name] = value

    def to_payload(self) -> dict[str, object]:
        return {
            "timestamp": self.timestamp,
            "repositoryId": self.repository_id,
            "branchId": self.branch_id,
            "properties": [
                {"name": name, "value": value} for name, value in self.properties.items()
            ],
        }


def build_merge_report(branch: BranchModel, *, now: datetime | None = None) -> MergeReport:
    timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return MergeReport(
        repository_id=branch.repository_id,
        branch_id=branch.branch_id,
        timestamp=timestamp,
    )


def set_issue(report: MergeReport | None, title: str, url: str) -> None:
    if report is not None:
        report.set_property(ISSUE_TITLE, title)
        report.set_property(ISSUE_URL, url)


def set_build_time(report: MergeReport | None, stage: BuildStage, elapsed_ms: int) -> None:
    if report is not None:
        report.set_property(f"{stage}_build_time_ms", str(elapsed_ms))


def set_build_result(
    report: MergeReport | None,
    stage: BuildStage,
    *,
    plan: str,
    succeeded: bool,
    error: str = "",
) -> None:
    if report is None:
        return
    report.set_property(f"{stage}_build_plan", plan)
    report.set_property(f"{stage}_build_result", "succeeded" if succeeded else "failed")
    if error:
        report.set_property(f"{stage}_build_error", error)


def set_unexpected_exception(report: MergeReport | None, message: str) -> None:
    if report is not None:
        report.set_property(UNEXPECTED_EXCEPTION, message)


def report_merge(api: MergebotApi, bot_name: str, report: MergeReport | None) -> None:
    if report is None:
        return
    try:
        api.report_merge(bot_name, report.to_payload())
    except Exception as exc:  # noqa: BLE001
        log_warning_event(
            LOGGER,
            "merge_report_failed",
            bot=bot_name,
            branch_id=report.branch_id,
            error=str(exc),
        )
        return
    log_event(LOGGER, "merge_report_sent", bot=bot_name, branch_id=report.branch_id)
