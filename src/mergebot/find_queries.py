from __future__ import annotations

from datetime import datetime, timedelta

from mergebot.models import (
    Branch,
    BranchWithReview,
    Review,
    ReviewStatus,
    parse_review_status,
)
from mergebot.plastic_api import MergebotApi


_LOOKBACK = timedelta(days=365)
_QUERY_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_branch_name(api: MergebotApi, repository: str, branch_id: str) -> str:
    rows = api.find(
        repository,
        f"branch where id={branch_id}",
        ("name",),
        "retrieve a single branch by ID",
    )
    if not rows:
        return ""
    return _field(rows[0], "name")


def find_resolved_branches(
    api: MergebotApi,
    repository: str,
    prefix: str,
    status_attribute_name: str,
    resolved_value: str,
    *,
    now: datetime | None = None,
) -> list[Branch]:
    query = (
        f"branch where {_name_like_clause(prefix)} "
        f"and date > '{_since(now)}' "
        f"and attribute='{status_attribute_name}' "
        f"and {_attr_value_clause(resolved_value)} "
    )
    rows = api.find(
        repository,
        query,
        ("id", "name", "owner", "comment"),
        "retrieve the list of branches to process",
    )
    return [
        Branch(
            repository=repository,
            branch_id=_field(row, "id"),
            full_name=_field(row, "name"),
            owner=_field(row, "owner"),
            comment=_field(row, "comment"),
        )
        for row in rows
    ]


def find_pending_branches_with_reviews(
    api: MergebotApi,
    repository: str,
    prefix: str,
    status_attribute_name: str,
    merged_value: str,
    *,
    now: datetime | None = None,
) -> list[BranchWithReview]:
    """Branches touched in the last year whose status is not yet merged."""
    branch_conditions = (
        f"( {_name_like_clause(prefix)} ) "
        f"and ( date > '{_since(now)}' ) "
        f"and ( (not attribute='{status_attribute_name}') or "
        f"(attribute='{status_attribute_name}' and not {_attr_value_clause(merged_value)}) ) "
    )
    rows = api.find_branches_with_reviews(
        repository,
        "",
        branch_conditions,
        (
            "branchid",
            "branchname",
            "branchowner",
            "branchcomment",
            "reviewid",
            "reviewtargetid",
            "reviewstatus",
            "reviewtitle",
        ),
        "retrieve the list of branches with reviews to process",
    )
    out: list[BranchWithReview] = []
    for row in rows:
        branch = Branch(
            repository=repository,
            branch_id=_field(row, "branchid"),
            full_name=_field(row, "branchname"),
            owner=_field(row, "branchowner"),
            comment=_field(row, "branchcomment"),
        )
        review = Review(
            repository=repository,
            review_id=_field(row, "reviewid"),
            target_id=_field(row, "reviewtargetid"),
            status=_review_status(row),
            title=_field(row, "reviewtitle"),
        )
        out.append(BranchWithReview(branch=branch, review=review))
    return out


def exists_attribute_name(api: MergebotApi, repository: str, attribute_name: str) -> bool:
    rows = api.find(
        repository,
        f"attributetype where name='{attribute_name}' ",
        ("name",),
        f"retrieve the list of attributes named {attribute_name}",
    )
    return len(rows) > 0


def _name_like_clause(prefix: str) -> str:
    variants = dict.fromkeys((prefix, prefix.lower(), prefix.upper()))
    return " or ".join(f"name like '{variant}%'" for variant in variants)


def _attr_value_clause(value: str) -> str:
    variants = dict.fromkeys((value, value.lower(), value.upper()))
    return "( " + " or ".join(f"attrvalue='{variant}'" for variant in variants) + " )"


def _since(now: datetime | None) -> str:
    reference = now if now is not None else datetime.now()
    return (reference - _LOOKBACK).strftime(_QUERY_DATE_FORMAT)


def _review_status(row: dict[str, object]) -> ReviewStatus:
    raw = row.get("reviewstatus")
    if raw is None or raw == "":
        return "pending"
    return parse_review_status(raw)


def _field(row: dict[str, object], name: str) -> str:
    value = row.get(name)
    if value is None:
        return ""
    return str(value)
