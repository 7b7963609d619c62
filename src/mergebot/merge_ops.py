from __future__ import annotations

from collections.abc import Iterable, Mapping
import logging

from mergebot.models import Branch, CheckinResult, MergeShelvesResult, MergeToRequest
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi


LOGGER = logging.getLogger("mergebot.merge_ops")

_FAILED_MERGE_STATUSES = frozenset({"ancestor_not_found", "conflicts", "error"})


def try_merge_to_shelves(
    api: MergebotApi,
    *,
    bot_name: str,
    repository: str,
    branch: Branch,
    issue_title: str | None,
    destinations: Iterable[str],
    cleanup_shelves: list[int] | None = None,
) -> MergeShelvesResult:
    """Create one shelved merge per destination, accumulating every outcome.

    Shelve ids are appended to ``cleanup_shelves`` as soon as the server
    reports them.
    """
    shelves: dict[str, int] = {}
    cleanup = cleanup_shelves if cleanup_shelves is not None else []
    not_needed: list[str] = []
    errors: list[str] = []

    for destination in destinations:
        response = api.merge_to(
            repository,
            MergeToRequest(
                source=branch.full_name,
                source_type="branch",
                destination=destination,
                comment=_merge_comment(bot_name, branch.full_name, issue_title, destination),
                create_shelve=True,
                ensure_no_dst_changes=False,
            ),
        )

        if response.status == "merge_not_needed":
            not_needed.append(
                f"Branch [{branch.full_name}] was already merged to [{destination}] "
                "(No merge needed)."
            )
            continue

        if response.status in _FAILED_MERGE_STATUSES or response.changeset_number == 0:
            # The server may still have created a shelve for a conflicting merge.
            if response.changeset_number != 0:
                cleanup.append(response.changeset_number)
            errors.append(
                f"Can't merge branch [{branch.full_name}] to [{destination}]. "
                f"Reason: {response.message}."
            )
            log_event(
                LOGGER,
                "shelve_merge_failed",
                branch=branch.full_name,
                destination=destination,
                status=response.status,
            )
            continue

        shelves[destination] = response.changeset_number
        cleanup.append(response.changeset_number)
        log_event(
            LOGGER,
            "shelve_created",
            branch=branch.full_name,
            destination=destination,
            shelve_id=response.changeset_number,
        )

    return MergeShelvesResult(
        shelves_by_destination=shelves,
        cleanup_shelves=tuple(cleanup),
        not_needed_messages=tuple(not_needed),
        error_messages=tuple(errors),
    )


def try_apply_shelves(
    api: MergebotApi,
    *,
    bot_name: str,
    repository: str,
    branch: Branch,
    issue_title: str | None,
    shelves_by_destination: Mapping[str, int],
) -> CheckinResult:
    """Check in every shelve, requiring the destination head to be unchanged."""
    changesets: dict[str, int] = {}
    errors: list[str] = []
    destination_changed: list[str] = []

    for destination, shelve_id in shelves_by_destination.items():
        response = api.merge_to(
            repository,
            MergeToRequest(
                source=str(shelve_id),
                source_type="shelve",
                destination=destination,
                comment=_merge_comment(bot_name, branch.full_name, issue_title, destination),
                create_shelve=False,
                ensure_no_dst_changes=True,
            ),
        )

        if response.status == "ok" and response.changeset_number != 0:
            changesets[destination] = response.changeset_number
            log_event(
                LOGGER,
                "shelve_checked_in",
                branch=branch.full_name,
                destination=destination,
                changeset=response.changeset_number,
            )
            continue

        base_message = (
            f"Can't checkin shelve [{shelve_id}], the resulting shelve from merging branch "
            f"[{branch.full_name}] to [{destination}]. Reason: "
        )
        if response.status == "destination_changes":
            destination_changed.append(
                f"{base_message}new changesets appeared in destination branch while mergebot "
                f"{bot_name} was processing the merge from [{branch.full_name}] to "
                f"[{destination}].\n{response.message}"
            )
            log_event(
                LOGGER,
                "shelve_checkin_destination_changed",
                branch=branch.full_name,
                destination=destination,
            )
            continue

        errors.append(f"{base_message}{response.message}")
        log_event(
            LOGGER,
            "shelve_checkin_failed",
            branch=branch.full_name,
            destination=destination,
            status=response.status,
        )

    return CheckinResult(
        changesets_by_destination=changesets,
        error_messages=tuple(errors),
        destination_changed_messages=tuple(destination_changed),
    )


def safe_delete_shelves(api: MergebotApi, repository: str, shelve_ids: Iterable[int]) -> None:
    for shelve_id in shelve_ids:
        if shelve_id == -1:
            continue
        try:
            api.delete_shelve(repository, shelve_id)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "shelve_delete_failed",
                repository=repository,
                shelve_id=shelve_id,
                error=str(exc),
            )


def _merge_comment(
    bot_name: str, branch_name: str, issue_title: str | None, destination: str
) -> str:
    source = f"{branch_name} - {issue_title}" if issue_title else branch_name
    return f"Mergebot [{bot_name}]: Merged [{source}] to [{destination}]"
