from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import time

from mergebot.config import BotConfig
from mergebot.models import Branch, BuildResult, BuildStage, PlanStatus
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi


LOGGER = logging.getLogger("mergebot.build_ops")

STAGE_LABELS: dict[BuildStage, str] = {
    "pre_checkin": "preCheckin",
    "post_checkin": "postCheckin",
}


@dataclass(frozen=True)
class PlanRunOutcome:
    succeeded: bool
    explanation: str


def try_build_task(
    api: MergebotApi,
    config: BotConfig,
    *,
    branch: Branch,
    task_number: str,
    objects_by_destination: Mapping[str, int],
    stage: BuildStage,
) -> BuildResult:
    """Run the CI plan for every destination.

    Pre-checkin stops at the first failing destination; post-checkin builds
    every destination and reports all failures.
    """
    ci = config.ci
    if ci is None:
        return BuildResult(all_successful=True, error_messages=(), launched_destinations=())
    plan = ci.plan if stage == "pre_checkin" else ci.plan_after_checkin
    if not plan:
        return BuildResult(all_successful=True, error_messages=(), launched_destinations=())

    object_prefix, object_name = ("sh", "shelve") if stage == "pre_checkin" else ("cs", "changeset")
    errors: list[str] = []
    launched: list[str] = []

    for destination, object_id in objects_by_destination.items():
        object_spec = f"{object_prefix}:{object_id}@{config.repository}@{config.server}"
        comment = (
            f"Building {object_name} [{object_spec}], the resulting {object_name} from merging "
            f"branch [{branch.full_name}] to [{destination}]"
        )
        properties = build_properties(
            api,
            config,
            branch=branch,
            task_number=task_number,
            destination=destination,
            stage=stage,
        )
        launched.append(destination)
        outcome = run_plan(
            api,
            ci_plug=ci.plug,
            plan=plan,
            object_spec=object_spec,
            comment=comment,
            properties=properties,
            poll_interval_seconds=config.runtime.build_poll_interval_seconds,
            timeout_seconds=config.runtime.build_timeout_seconds,
        )
        if outcome.succeeded:
            continue

        error_detail = f"Error: [{outcome.explanation}]" if outcome.explanation.strip() else ""
        errors.append(
            f"Build failed. The build plan [{plan}] of the resulting {object_name} "
            f"[{object_spec}] from merging branch [{branch.full_name}] to [{destination}] "
            f"has failed. {error_detail}Please check your Continuous Integration report to "
            "find out more info about what happened."
        )
        if stage == "pre_checkin":
            break

    return BuildResult(
        all_successful=not errors,
        error_messages=tuple(errors),
        launched_destinations=tuple(launched),
    )


def build_properties(
    api: MergebotApi,
    config: BotConfig,
    *,
    branch: Branch,
    task_number: str,
    destination: str,
    stage: BuildStage,
) -> dict[str, str]:
    branch_head = api.get_changeset(
        config.repository, api.get_branch(config.repository, branch.full_name).head_changeset
    )
    trunk_head = api.get_changeset(
        config.repository, api.get_branch(config.repository, destination).head_changeset
    )
    return {
        "branch.name": branch.full_name,
        "task.number": task_number,
        "branch.head.changeset.number": str(branch_head.changeset_id),
        "branch.head.changeset.guid": branch_head.guid,
        "branch.head.changeset.author": branch_head.owner,
        "trunk.name": destination,
        "trunk.head.changeset.number": str(trunk_head.changeset_id),
        "trunk.head.changeset.guid": trunk_head.guid,
        "repspec": f"{config.repository}@{config.server}",
        "stage": STAGE_LABELS[stage],
    }


def run_plan(
    api: MergebotApi,
    *,
    ci_plug: str,
    plan: str,
    object_spec: str,
    comment: str,
    properties: dict[str, str],
    poll_interval_seconds: float,
    timeout_seconds: float,
) -> PlanRunOutcome:
    execution_id = api.launch_plan(
        ci_plug, plan, object_spec, f"MergeBot - {comment}", properties
    )
    log_event(
        LOGGER,
        "build_plan_launched",
        plan=plan,
        object_spec=object_spec,
        execution_id=execution_id,
    )

    status = _wait_for_plan(
        api,
        ci_plug=ci_plug,
        plan=plan,
        execution_id=execution_id,
        poll_interval_seconds=poll_interval_seconds,
        timeout_seconds=timeout_seconds,
    )
    if status is None:
        log_warning_event(
            LOGGER,
            "build_plan_timed_out",
            plan=plan,
            execution_id=execution_id,
            timeout_seconds=timeout_seconds,
        )
        return PlanRunOutcome(
            succeeded=False,
            explanation=(
                f"{ci_plug} reached the time limit to get the status for plan:'{plan}' and "
                f"executionId:'{execution_id}'\nRequest details: objectSpec:'{object_spec}' "
                f"and comment:'{comment}'"
            ),
        )

    log_event(
        LOGGER,
        "build_plan_finished",
        plan=plan,
        execution_id=execution_id,
        succeeded=status.succeeded,
    )
    return PlanRunOutcome(succeeded=status.succeeded, explanation=status.explanation)


def _wait_for_plan(
    api: MergebotApi,
    *,
    ci_plug: str,
    plan: str,
    execution_id: str,
    poll_interval_seconds: float,
    timeout_seconds: float,
) -> PlanStatus | None:
    deadline = time.monotonic() + timeout_seconds
    while True:
        status = api.get_plan_status(ci_plug, execution_id, plan)
        if status.is_finished:
            return status
        if time.monotonic() + poll_interval_seconds > deadline:
            return None
        time.sleep(poll_interval_seconds)
