from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, cast


ProcessResult = Literal["ok", "failed", "not_ready"]
BuildStage = Literal["pre_checkin", "post_checkin"]
ReviewStatus = Literal[
    "pending", "approved", "reworked", "rejected", "under_review", "discarded", "deleted"
]
MergeToStatus = Literal[
    "ok",
    "conflicts",
    "ancestor_not_found",
    "merge_not_needed",
    "error",
    "destination_changes",
]
AttributeTargetType = Literal["branch", "changeset", "label"]
EventType = Literal["branchAttributeChanged", "codeReviewChanged"]

REVIEW_STATUS_BY_ID: dict[int, ReviewStatus] = {
    0: "pending",
    1: "approved",
    2: "reworked",
    3: "rejected",
    4: "under_review",
    5: "discarded",
}
REVIEW_STATUS_IDS: dict[ReviewStatus, int] = {
    status: status_id for status_id, status in REVIEW_STATUS_BY_ID.items()
}


@dataclass(frozen=True)
class Branch:
    repository: str
    branch_id: str
    full_name: str
    owner: str
    comment: str

    @property
    def local_name(self) -> str:
        return local_branch_name(self.full_name)

    def renamed(self, full_name: str) -> Branch:
        return Branch(
            repository=self.repository,
            branch_id=self.branch_id,
            full_name=full_name,
            owner=self.owner,
            comment=self.comment,
        )


@dataclass(frozen=True)
class Review:
    repository: str
    review_id: str
    target_id: str
    status: ReviewStatus
    title: str

    @property
    def is_deleted(self) -> bool:
        return self.status == "deleted"


@dataclass(frozen=True)
class BranchWithReview:
    branch: Branch
    review: Review


@dataclass(frozen=True)
class BranchModel:
    """Branch metadata as returned by the server."""

    branch_id: int
    name: str
    repository_id: int
    head_changeset: int
    owner: str
    comment: str


@dataclass(frozen=True)
class ChangesetModel:
    changeset_id: int
    guid: str
    owner: str
    branch: str
    comment: str


@dataclass(frozen=True)
class MergeToRequest:
    source: str
    source_type: Literal["branch", "shelve"]
    destination: str
    comment: str
    create_shelve: bool
    ensure_no_dst_changes: bool


@dataclass(frozen=True)
class MergeToResponse:
    status: MergeToStatus
    message: str
    changeset_number: int


@dataclass(frozen=True)
class PlanStatus:
    is_finished: bool
    succeeded: bool
    explanation: str


@dataclass(frozen=True)
class MergeShelvesResult:
    """Per-destination classification of a shelve-merge round."""

    shelves_by_destination: dict[str, int]
    cleanup_shelves: tuple[int, ...]
    not_needed_messages: tuple[str, ...]
    error_messages: tuple[str, ...]

    @property
    def all_not_needed(self) -> bool:
        return (
            bool(self.not_needed_messages)
            and not self.shelves_by_destination
            and not self.error_messages
        )

    @property
    def has_errors(self) -> bool:
        return bool(self.error_messages)


@dataclass(frozen=True)
class CheckinResult:
    changesets_by_destination: dict[str, int]
    error_messages: tuple[str, ...]
    destination_changed_messages: tuple[str, ...]

    @property
    def all_ok(self) -> bool:
        return not self.error_messages and not self.destination_changed_messages


@dataclass(frozen=True)
class BuildResult:
    all_successful: bool
    error_messages: tuple[str, ...]
    launched_destinations: tuple[str, ...]


def local_branch_name(full_name: str) -> str:
    if "/" not in full_name:
        return full_name
    return full_name.rsplit("/", 1)[1]


def repository_key(repository: str) -> str:
    """Repository name without any ``@server`` suffix, lower-cased."""
    return repository.split("@", 1)[0].strip().lower()


def parse_review_status(value: object) -> ReviewStatus:
    if isinstance(value, bool):
        raise ValueError(f"Unsupported review status: {value!r}")
    if isinstance(value, int):
        status = REVIEW_STATUS_BY_ID.get(value)
        if status is None:
            raise ValueError(f"Unsupported review status id: {value}")
        return status
    if not isinstance(value, str):
        raise ValueError(f"Unsupported review status: {value!r}")
    candidate = value.strip()
    if candidate.lstrip("-").isdigit():
        return parse_review_status(int(candidate))
    normalized = candidate.lower().replace("-", "_").replace(" ", "_")
    if normalized == "underreview":
        normalized = "under_review"
    if normalized in REVIEW_STATUS_IDS or normalized == "deleted":
        return cast(ReviewStatus, normalized)
    raise ValueError(f"Unsupported review status: {value!r}")
