from __future__ import annotations

import json
from pathlib import Path

import pytest

from fakes import FakeMergebotApi, make_branch, make_config

from mergebot.branch_queue import BranchQueue
from mergebot.config import BotConfig, StatusFieldConfig
from mergebot.dispatcher import EventDispatcher, load_branches_to_process, same_repository
from mergebot.models import Review
from mergebot.state import StateStore


_REVIEW_ONLY_STATUS = StatusFieldConfig(
    name="status",
    resolved_value="",
    testing_value="testing",
    failed_value="failed",
    merged_value="merged",
)


def _attribute_event(
    *,
    repository: str = "assets",
    branch: str = "/main/AST-001",
    branch_id: str = "7",
    name: str = "status",
    value: str = "resolved",
) -> str:
    return json.dumps(
        {
            "event": {
                "type": "branchAttributeChanged",
                "properties": {
                    "repository": repository,
                    "branchId": branch_id,
                    "branchFullName": branch,
                    "branchOwner": "alice",
                    "branchComment": "",
                    "attributeName": name,
                    "attributeValue": value,
                },
            }
        }
    )


def _review_event(
    *,
    review_id: str = "31",
    status: object = 1,
    branch_id: str = "7",
    repository: str = "assets",
) -> str:
    return json.dumps(
        {
            "event": "codeReviewChanged",
            "Repository": repository,
            "BranchId": branch_id,
            "BranchFullName": "/main/AST-001",
            "BranchOwner": "alice",
            "BranchComment": "",
            "CodeReviewId": review_id,
            "CodeReviewStatus": status,
            "CodeReviewTitle": "please review",
        }
    )


def _setup(tmp_path: Path, config: BotConfig) -> tuple[EventDispatcher, BranchQueue, StateStore]:
    state = StateStore(tmp_path / "bot.db")
    queue = BranchQueue(state)
    return EventDispatcher(config=config, state=state, queue=queue), queue, state


def test_resolved_attribute_enqueues_once(tmp_path: Path) -> None:
    dispatcher, queue, _ = _setup(tmp_path, make_config(tmp_path))

    dispatcher.on_event_received(_attribute_event(value="RESOLVED", name="Status"))
    dispatcher.on_event_received(_attribute_event())

    assert len(queue) == 1
    queued = queue.snapshot()[0].branch
    assert queued == make_branch()


@pytest.mark.parametrize(
    "message",
    [
        _attribute_event(repository="other"),
        _attribute_event(branch="/main/BUG-001"),
        _attribute_event(name="target"),
    ],
)
def test_unrelated_attribute_events_are_ignored(tmp_path: Path, message: str) -> None:
    dispatcher, queue, _ = _setup(tmp_path, make_config(tmp_path))

    dispatcher.on_event_received(message)

    assert len(queue) == 0


def test_prefix_matches_local_name_case_insensitively(tmp_path: Path) -> None:
    dispatcher, queue, _ = _setup(tmp_path, make_config(tmp_path))

    dispatcher.on_event_received(_attribute_event(branch="/main/ast-7/sub/AST-9"))
    dispatcher.on_event_received(_attribute_event(branch="/main/AST-x/bug-1", branch_id="8"))

    assert [item.branch.branch_id for item in queue.snapshot()] == ["7"]


def test_regressed_attribute_removes_branch(tmp_path: Path) -> None:
    dispatcher, queue, _ = _setup(tmp_path, make_config(tmp_path))
    dispatcher.on_event_received(_attribute_event())

    dispatcher.on_event_received(_attribute_event(value="open"))

    assert len(queue) == 0


def test_server_suffixed_repository_shares_queue_entry(tmp_path: Path) -> None:
    dispatcher, queue, _ = _setup(tmp_path, make_config(tmp_path))
    queue.enqueue(make_branch())

    dispatcher.on_event_received(_attribute_event(repository="Assets@localhost:8084"))
    assert len(queue) == 1

    dispatcher.on_event_received(
        _attribute_event(repository="assets@localhost:8084", value="failed")
    )
    assert len(queue) == 0


def test_server_suffixed_reviews_share_branch_tracking(tmp_path: Path) -> None:
    config = make_config(tmp_path, code_review_filter=True, status_attribute=_REVIEW_ONLY_STATUS)
    dispatcher, _, state = _setup(tmp_path, config)

    dispatcher.on_event_received(_review_event(review_id="31", status="Approved"))
    dispatcher.on_event_received(
        _review_event(review_id="32", status=0, repository="assets@localhost:8084")
    )

    assert [review.review_id for review in state.list_reviews_for_branch("assets", "7")] == [
        "31",
        "32",
    ]
    assert state.all_reviews_approved("assets", "7") is False

    dispatcher.on_event_received(
        _review_event(review_id="31", status="deleted", repository="ASSETS@localhost:8084")
    )
    assert [review.review_id for review in state.list_reviews_for_branch("assets", "7")] == [
        "32"
    ]


def test_review_events_update_store_and_enqueue_without_attribute_filter(
    tmp_path: Path,
) -> None:
    config = make_config(tmp_path, code_review_filter=True, status_attribute=_REVIEW_ONLY_STATUS)
    dispatcher, queue, state = _setup(tmp_path, config)

    dispatcher.on_event_received(_review_event(status=0))
    dispatcher.on_event_received(_review_event(review_id="32", status="Approved"))

    reviews = state.list_reviews_for_branch("assets", "7")
    assert [(review.review_id, review.status) for review in reviews] == [
        ("31", "pending"),
        ("32", "approved"),
    ]
    assert len(queue) == 1


def test_review_deletion_removes_branch_once_no_reviews_remain(tmp_path: Path) -> None:
    config = make_config(tmp_path, code_review_filter=True, status_attribute=_REVIEW_ONLY_STATUS)
    dispatcher, queue, state = _setup(tmp_path, config)
    dispatcher.on_event_received(_review_event(review_id="31"))
    dispatcher.on_event_received(_review_event(review_id="32"))

    dispatcher.on_event_received(_review_event(review_id="31", status="deleted"))
    assert len(queue) == 1

    dispatcher.on_event_received(_review_event(review_id="32", status="deleted"))
    assert len(queue) == 0
    assert state.list_reviews_for_branch("assets", "7") == ()


def test_review_events_do_not_enqueue_with_attribute_filter(tmp_path: Path) -> None:
    config = make_config(tmp_path, code_review_filter=True)
    dispatcher, queue, state = _setup(tmp_path, config)

    dispatcher.on_event_received(_review_event())
    assert len(queue) == 0
    assert len(state.list_reviews_for_branch("assets", "7")) == 1

    dispatcher.on_event_received(_attribute_event())
    dispatcher.on_event_received(_review_event(status="deleted"))
    assert len(queue) == 1


@pytest.mark.parametrize(
    "message",
    [
        "not json",
        "[1, 2]",
        json.dumps({"no": "type"}),
        json.dumps({"event": "somethingElse"}),
        _review_event(status="bogus"),
    ],
)
def test_malformed_or_unknown_frames_are_ignored(tmp_path: Path, message: str) -> None:
    config = make_config(tmp_path, code_review_filter=True, status_attribute=_REVIEW_ONLY_STATUS)
    dispatcher, queue, state = _setup(tmp_path, config)

    dispatcher.on_event_received(message)

    assert len(queue) == 0
    assert state.list_reviews_for_branch("assets", "7") == ()


def test_same_repository_ignores_server_suffix_and_case() -> None:
    assert same_repository("Assets@localhost:8084", "assets") is True
    assert same_repository("assets", "assets@other") is True
    assert same_repository("docs", "assets") is False


def test_startup_loader_with_attribute_filter(tmp_path: Path) -> None:
    api = FakeMergebotApi()
    api.find_rows["branch where"] = [
        {"id": 7, "name": "/main/AST-001", "owner": "alice", "comment": ""},
        {"id": 8, "name": "/main/AST-002", "owner": "bob", "comment": ""},
    ]
    api.review_rows = [
        {
            "branchid": 9,
            "branchname": "/main/AST-003",
            "branchowner": "carol",
            "branchcomment": "",
            "reviewid": 40,
            "reviewtargetid": 9,
            "reviewstatus": 1,
            "reviewtitle": "r",
        }
    ]
    config = make_config(tmp_path, code_review_filter=True)
    state = StateStore(tmp_path / "bot.db")
    queue = BranchQueue(state)

    assert load_branches_to_process(api, config, state, queue) == 2

    assert [item.branch.branch_id for item in queue.snapshot()] == ["7", "8"]
    assert state.all_reviews_approved("assets", "9") is True


def test_startup_loader_with_review_filter_only(tmp_path: Path) -> None:
    api = FakeMergebotApi()
    row = {
        "branchid": 9,
        "branchname": "/main/AST-003",
        "branchowner": "carol",
        "branchcomment": "",
        "reviewtargetid": 9,
        "reviewstatus": 0,
        "reviewtitle": "r",
    }
    api.review_rows = [{**row, "reviewid": 40}, {**row, "reviewid": 41}]
    config = make_config(tmp_path, code_review_filter=True, status_attribute=_REVIEW_ONLY_STATUS)
    state = StateStore(tmp_path / "bot.db")
    queue = BranchQueue(state)

    assert load_branches_to_process(api, config, state, queue) == 1

    assert [item.branch.full_name for item in queue.snapshot()] == ["/main/AST-003"]
    assert {review.review_id for review in state.list_reviews_for_branch("assets", "9")} == {
        "40",
        "41",
    }
    assert all(
        isinstance(review, Review) for review in state.list_reviews_for_branch("assets", "9")
    )
