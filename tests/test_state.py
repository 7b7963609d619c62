from __future__ import annotations

from pathlib import Path
import sqlite3

from mergebot.models import Branch, Review
from mergebot.state import StateStore


def _branch(branch_id: str, repository: str = "assets", name: str | None = None) -> Branch:
    return Branch(
        repository=repository,
        branch_id=branch_id,
        full_name=name or f"/main/AST-{branch_id}",
        owner="alice",
        comment="",
    )


def _review(review_id: str, target_id: str, status: str = "pending") -> Review:
    return Review(
        repository="assets",
        review_id=review_id,
        target_id=target_id,
        status=status,  # type: ignore[arg-type]
        title=f"review {review_id}",
    )


def test_queue_is_fifo_and_deduplicated(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state" / "bot.db")

    assert store.queue_push(_branch("1")) is True
    assert store.queue_push(_branch("2")) is True
    assert store.queue_push(_branch("1", name="/main/AST-1-renamed")) is False
    assert store.queue_push(_branch("1", repository="ASSETS")) is False
    assert store.queue_count() == 2
    assert store.queue_contains("Assets", "1") is True

    first = store.queue_pop_oldest()
    assert first is not None
    assert first.branch_id == "1"
    assert first.full_name == "/main/AST-1"
    second = store.queue_pop_oldest()
    assert second is not None
    assert second.branch_id == "2"
    assert store.queue_pop_oldest() is None
    assert store.queue_count() == 0


def test_queue_key_ignores_server_suffix(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "bot.db")

    assert store.queue_push(_branch("1")) is True
    assert store.queue_push(_branch("1", repository="assets@localhost:8084")) is False
    assert store.queue_contains("Assets@other:8087", "1") is True
    assert store.queue_remove("assets@localhost:8084", "1") is True
    assert store.queue_count() == 0


def test_queue_remove_and_listing(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "bot.db")
    for branch_id in ("3", "1", "2"):
        store.queue_push(_branch(branch_id))

    assert store.queue_remove("assets", "1") is True
    assert store.queue_remove("assets", "1") is False

    listed = store.list_queued_branches()
    assert [item.branch.branch_id for item in listed] == ["3", "2"]
    assert all(item.enqueued_at.endswith("Z") for item in listed)


def test_queue_survives_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "bot.db"
    StateStore(db_path).queue_push(_branch("5"))

    reopened = StateStore(db_path)
    assert reopened.queue_contains("assets", "5") is True
    assert reopened.db_path == db_path


def test_review_upsert_delete_and_approval(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "bot.db")

    assert store.all_reviews_approved("assets", "7") is False

    store.upsert_review(_review("11", "7", "approved"))
    store.upsert_review(_review("12", "7", "pending"))
    store.upsert_review(_review("13", "8", "approved"))
    assert store.all_reviews_approved("assets", "7") is False
    assert store.all_reviews_approved("assets", "8") is True

    store.upsert_review(_review("12", "7", "approved"))
    assert store.all_reviews_approved("assets", "7") is True
    assert [review.review_id for review in store.list_reviews_for_branch("assets", "7")] == [
        "11",
        "12",
    ]

    store.delete_review(_review("11", "7"))
    store.delete_review(_review("12", "7"))
    assert store.list_reviews_for_branch("assets", "7") == ()
    assert store.all_reviews_approved("assets", "7") is False


def test_schema_uses_wal(tmp_path: Path) -> None:
    db_path = tmp_path / "bot.db"
    StateStore(db_path)
    conn = sqlite3.connect(db_path)
    try:
        mode = conn.execute("PRAGMA journal_mode;").fetchone()
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        conn.close()
    assert mode is not None and mode[0] == "wal"
    assert {"queued_branches", "tracked_reviews"} <= tables
