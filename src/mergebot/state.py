from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
import sqlite3
import threading

from mergebot.models import Branch, Review, parse_review_status, repository_key


@dataclass(frozen=True)
class QueuedBranchState:
    branch: Branch
    enqueued_at: str


class StateStore:
    """Durable branch queue and tracked-review storage.

    Every call opens its own connection under a process-wide lock, so the
    event thread and the worker thread can share one instance.
    """

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queued_branches (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    repo_key TEXT NOT NULL,
                    repository TEXT NOT NULL,
                    branch_id TEXT NOT NULL,
                    full_name TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    comment TEXT NOT NULL,
                    enqueued_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    UNIQUE (repo_key, branch_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tracked_reviews (
                    repo_key TEXT NOT NULL,
                    repository TEXT NOT NULL,
                    review_id TEXT NOT NULL,
                    target_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    title TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_key, review_id)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_tracked_reviews_target
                ON tracked_reviews(repo_key, target_id)
                """
            )

    # Branch queue storage.

    def queue_contains(self, repository: str, branch_id: str) -> bool:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM queued_branches WHERE repo_key = ? AND branch_id = ?",
                (repository_key(repository), branch_id),
            ).fetchone()
        return row is not None

    def queue_push(self, branch: Branch) -> bool:
        """Append ``branch`` unless it is already queued; returns True when inserted."""
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO queued_branches(
                    repo_key, repository, branch_id, full_name, owner, comment
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_key, branch_id) DO NOTHING
                """,
                (
                    repository_key(branch.repository),
                    branch.repository,
                    branch.branch_id,
                    branch.full_name,
                    branch.owner,
                    branch.comment,
                ),
            )
            return cursor.rowcount > 0

    def queue_pop_oldest(self) -> Branch | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                """
                SELECT seq, repository, branch_id, full_name, owner, comment
                FROM queued_branches
                ORDER BY seq ASC
                LIMIT 1
                """
            ).fetchone()
            if row is None:
                return None
            seq, repository, branch_id, full_name, owner, comment = row
            conn.execute("DELETE FROM queued_branches WHERE seq = ?", (seq,))
        return Branch(
            repository=str(repository),
            branch_id=str(branch_id),
            full_name=str(full_name),
            owner=str(owner),
            comment=str(comment),
        )

    def queue_remove(self, repository: str, branch_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM queued_branches WHERE repo_key = ? AND branch_id = ?",
                (repository_key(repository), branch_id),
            )
            return cursor.rowcount > 0

    def queue_count(self) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM queued_branches").fetchone()
        if row is None or not isinstance(row[0], int):
            return 0
        return row[0]

    def list_queued_branches(self) -> tuple[QueuedBranchState, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT repository, branch_id, full_name, owner, comment, enqueued_at
                FROM queued_branches
                ORDER BY seq ASC
                """
            ).fetchall()
        return tuple(
            QueuedBranchState(
                branch=Branch(
                    repository=str(repository),
                    branch_id=str(branch_id),
                    full_name=str(full_name),
                    owner=str(owner),
                    comment=str(comment),
                ),
                enqueued_at=str(enqueued_at),
            )
            for repository, branch_id, full_name, owner, comment, enqueued_at in rows
        )

    # Review tracking.

    def upsert_review(self, review: Review) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tracked_reviews(
                    repo_key, repository, review_id, target_id, status, title
                )
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(repo_key, review_id) DO UPDATE SET
                    repository=excluded.repository,
                    target_id=excluded.target_id,
                    status=excluded.status,
                    title=excluded.title,
                    updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (
                    repository_key(review.repository),
                    review.repository,
                    review.review_id,
                    review.target_id,
                    review.status,
                    review.title,
                ),
            )

    def delete_review(self, review: Review) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                "DELETE FROM tracked_reviews WHERE repo_key = ? AND review_id = ?",
                (repository_key(review.repository), review.review_id),
            )

    def list_reviews_for_branch(self, repository: str, branch_id: str) -> tuple[Review, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT repository, review_id, target_id, status, title
                FROM tracked_reviews
                WHERE repo_key = ? AND target_id = ?
                ORDER BY review_id ASC
                """,
                (repository_key(repository), branch_id),
            ).fetchall()
        return tuple(
            Review(
                repository=str(repo),
                review_id=str(review_id),
                target_id=str(target_id),
                status=parse_review_status(status),
                title=str(title),
            )
            for repo, review_id, target_id, status, title in rows
        )

    def all_reviews_approved(self, repository: str, branch_id: str) -> bool:
        reviews = self.list_reviews_for_branch(repository, branch_id)
        if not reviews:
            return False
        return all(review.status == "approved" for review in reviews)
