"""SQLite persistence for cl-topic-votes."""

from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from modules.vote_sets import VOTE_SETS, TopicIdSet, VoterVotes


class VotingStore:
    """SQLite persistence for voters, categories, topics, vote sets, and jobs."""

    def __init__(self, db_path: str, logger: Optional[Callable[[str, str], None]] = None):
        self.db_path = os.path.expanduser(db_path)
        self._logger = logger
        self._local = threading.local()

    def _log(self, message: str, level: str = "info") -> None:
        if self._logger:
            self._logger(message, level)

    def _get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
            conn = sqlite3.connect(
                self.db_path,
                isolation_level=None,
                timeout=30.0,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
            self._local.conn = conn
            self._local.depth = 0
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None
            self._local.depth = 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements in one write transaction.

        Nested use on the same thread joins the outermost transaction.
        """
        conn = self._get_connection()
        depth = getattr(self._local, "depth", 0)
        if depth:
            self._local.depth = depth + 1
            try:
                yield conn
            finally:
                self._local.depth = depth
            return

        conn.execute("BEGIN IMMEDIATE")
        self._local.depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._local.depth = 0

    def initialize(self) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS voters (
                voter_id INTEGER PRIMARY KEY,
                username TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                avatar_template TEXT NOT NULL DEFAULT '',
                trust_level INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS categories (
                category_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                voting_enabled INTEGER NOT NULL DEFAULT 0,
                definition_topic_id INTEGER,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS topics (
                topic_id INTEGER PRIMARY KEY,
                category_id INTEGER,
                title TEXT NOT NULL DEFAULT '',
                closed INTEGER NOT NULL DEFAULT 0,
                archived INTEGER NOT NULL DEFAULT 0,
                vote_count INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS voter_votes (
                voter_id INTEGER NOT NULL,
                topic_id INTEGER NOT NULL,
                vote_set TEXT NOT NULL,
                PRIMARY KEY(voter_id, topic_id, vote_set)
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_voter_votes_topic
            ON voter_votes(topic_id, vote_set)
            """
        )

        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS vote_jobs (
                job_id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_type TEXT NOT NULL,
                topic_id INTEGER NOT NULL,
                payload_json TEXT NOT NULL DEFAULT '{}',
                status TEXT NOT NULL DEFAULT 'pending',
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 5,
                next_retry_at INTEGER NOT NULL,
                last_error TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_vote_jobs_status_topic
            ON vote_jobs(status, topic_id, job_id)
            """
        )

        conn.execute("PRAGMA optimize;")

    # voters

    def upsert_voter(
        self,
        voter_id: int,
        username: str,
        name: str,
        avatar_template: str,
        trust_level: int,
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO voters (
                voter_id, username, name, avatar_template,
                trust_level, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(voter_id) DO UPDATE SET
                username = excluded.username,
                name = excluded.name,
                avatar_template = excluded.avatar_template,
                trust_level = excluded.trust_level,
                updated_at = excluded.updated_at
            """,
            (voter_id, username, name, avatar_template, trust_level, now_ts, now_ts),
        )

    def get_voter(self, voter_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM voters WHERE voter_id = ?",
            (voter_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_voters(self, voter_ids: List[int]) -> List[Dict[str, Any]]:
        if not voter_ids:
            return []
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in voter_ids)
        rows = conn.execute(
            f"SELECT * FROM voters WHERE voter_id IN ({placeholders}) ORDER BY voter_id ASC",
            tuple(voter_ids),
        ).fetchall()
        return [dict(row) for row in rows]

    def count_voters(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM voters").fetchone()
        return int(row["cnt"] or 0)

    # categories

    def upsert_category(
        self,
        category_id: int,
        name: str,
        voting_enabled: bool,
        definition_topic_id: Optional[int],
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO categories (
                category_id, name, voting_enabled, definition_topic_id, updated_at
            ) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(category_id) DO UPDATE SET
                name = excluded.name,
                voting_enabled = excluded.voting_enabled,
                definition_topic_id = excluded.definition_topic_id,
                updated_at = excluded.updated_at
            """,
            (category_id, name, 1 if voting_enabled else 0, definition_topic_id, now_ts),
        )

    def get_category(self, category_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM categories WHERE category_id = ?",
            (category_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_voting_category_ids(self) -> List[int]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT category_id FROM categories WHERE voting_enabled = 1"
        ).fetchall()
        return [int(row["category_id"]) for row in rows]

    # topics

    def upsert_topic(
        self,
        topic_id: int,
        category_id: Optional[int],
        title: str,
        now_ts: int,
    ) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO topics (
                topic_id, category_id, title, closed, archived,
                vote_count, created_at, updated_at
            ) VALUES (?, ?, ?, 0, 0, 0, ?, ?)
            ON CONFLICT(topic_id) DO UPDATE SET
                category_id = excluded.category_id,
                title = excluded.title,
                updated_at = excluded.updated_at
            """,
            (topic_id, category_id, title, now_ts, now_ts),
        )

    def get_topic(self, topic_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM topics WHERE topic_id = ?",
            (topic_id,),
        ).fetchone()
        return dict(row) if row else None

    def set_topic_flag(self, topic_id: int, flag: str, value: bool, now_ts: int) -> bool:
        if flag not in ("closed", "archived"):
            raise ValueError(f"unknown topic flag: {flag}")
        conn = self._get_connection()
        cursor = conn.execute(
            f"UPDATE topics SET {flag} = ?, updated_at = ? WHERE topic_id = ?",
            (1 if value else 0, now_ts, topic_id),
        )
        return cursor.rowcount > 0

    def set_topic_category(self, topic_id: int, category_id: Optional[int], now_ts: int) -> bool:
        conn = self._get_connection()
        cursor = conn.execute(
            "UPDATE topics SET category_id = ?, updated_at = ? WHERE topic_id = ?",
            (category_id, now_ts, topic_id),
        )
        return cursor.rowcount > 0

    def set_topic_vote_count(self, topic_id: int, vote_count: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            "UPDATE topics SET vote_count = ?, updated_at = ? WHERE topic_id = ?",
            (vote_count, now_ts, topic_id),
        )

    def count_topics(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM topics").fetchone()
        return int(row["cnt"] or 0)

    def list_topics_needing_count(self) -> List[int]:
        """Topics with any vote rows or a nonzero cached count."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT topic_id FROM topics WHERE vote_count != 0
            UNION
            SELECT DISTINCT v.topic_id FROM voter_votes v
            JOIN topics t ON t.topic_id = v.topic_id
            ORDER BY topic_id ASC
            """
        ).fetchall()
        return [int(row["topic_id"]) for row in rows]

    # vote sets

    def get_voter_votes(self, voter_id: int) -> VoterVotes:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT topic_id, vote_set FROM voter_votes WHERE voter_id = ?",
            (voter_id,),
        ).fetchall()
        grouped: Dict[str, List[Any]] = {name: [] for name in VOTE_SETS}
        for row in rows:
            name = str(row["vote_set"])
            if name in grouped:
                grouped[name].append(row["topic_id"])
        return VoterVotes(
            voter_id=voter_id,
            active_up=TopicIdSet.from_stored(grouped["up"]),
            archived_up=TopicIdSet.from_stored(grouped["up_archive"]),
            active_down=TopicIdSet.from_stored(grouped["down"]),
            archived_down=TopicIdSet.from_stored(grouped["down_archive"]),
        )

    def replace_voter_votes(self, votes: VoterVotes) -> None:
        """Overwrite all vote rows of one voter with the given sets."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM voter_votes WHERE voter_id = ?", (votes.voter_id,))
            conn.executemany(
                "INSERT INTO voter_votes (voter_id, topic_id, vote_set) VALUES (?, ?, ?)",
                votes.rows(),
            )

    def list_voter_ids_for_topic(self, topic_id: int, vote_sets: List[str]) -> List[int]:
        if not vote_sets:
            return []
        conn = self._get_connection()
        placeholders = ",".join("?" for _ in vote_sets)
        rows = conn.execute(
            f"""
            SELECT DISTINCT voter_id FROM voter_votes
            WHERE topic_id = ? AND vote_set IN ({placeholders})
            ORDER BY voter_id ASC
            """,
            (topic_id, *vote_sets),
        ).fetchall()
        return [int(row["voter_id"]) for row in rows]

    def topic_has_votes(self, topic_id: int) -> bool:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT 1 FROM voter_votes WHERE topic_id = ? LIMIT 1",
            (topic_id,),
        ).fetchone()
        return row is not None

    def tally_topic(self, topic_id: int) -> Dict[str, int]:
        """Up and down totals for a topic.

        A voter counts once per direction, whether the vote is active,
        archived, or momentarily both.
        """
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT
                COUNT(DISTINCT CASE WHEN vote_set IN ('up', 'up_archive') THEN voter_id END) AS up_total,
                COUNT(DISTINCT CASE WHEN vote_set IN ('down', 'down_archive') THEN voter_id END) AS down_total
            FROM voter_votes
            WHERE topic_id = ?
            """,
            (topic_id,),
        ).fetchone()
        return {"up": int(row["up_total"] or 0), "down": int(row["down_total"] or 0)}

    def count_total_votes(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT COUNT(*) AS cnt FROM voter_votes").fetchone()
        return int(row["cnt"] or 0)

    # jobs

    def add_job(
        self,
        job_type: str,
        topic_id: int,
        payload_json: str,
        now_ts: int,
        max_retries: int,
    ) -> int:
        conn = self._get_connection()
        cursor = conn.execute(
            """
            INSERT INTO vote_jobs (
                job_type, topic_id, payload_json, status, retry_count,
                max_retries, next_retry_at, created_at, updated_at
            ) VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?)
            """,
            (job_type, topic_id, payload_json, max_retries, now_ts, now_ts, now_ts),
        )
        return int(cursor.lastrowid)

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM vote_jobs WHERE job_id = ?",
            (job_id,),
        ).fetchone()
        return dict(row) if row else None

    def list_jobs_pending(self, now_ts: int, limit: int) -> List[Dict[str, Any]]:
        """Due pending jobs, at most one per topic: the oldest one."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT j.* FROM vote_jobs j
            WHERE j.status = 'pending'
              AND j.next_retry_at <= ?
              AND j.job_id = (
                  SELECT MIN(k.job_id) FROM vote_jobs k
                  WHERE k.status = 'pending' AND k.topic_id = j.topic_id
              )
            ORDER BY j.job_id ASC
            LIMIT ?
            """,
            (now_ts, limit),
        ).fetchall()
        return [dict(row) for row in rows]

    def mark_job_done(self, job_id: int, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE vote_jobs SET status = 'done', last_error = NULL, updated_at = ?
            WHERE job_id = ?
            """,
            (now_ts, job_id),
        )

    def mark_job_failed(self, job_id: int, error: str, next_retry_at: int, now_ts: int) -> None:
        """Count a failed attempt; give up once max_retries is exhausted."""
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE vote_jobs SET
                retry_count = retry_count + 1,
                last_error = ?,
                next_retry_at = ?,
                status = CASE WHEN retry_count + 1 >= max_retries THEN 'failed' ELSE 'pending' END,
                updated_at = ?
            WHERE job_id = ?
            """,
            (error[:500], next_retry_at, now_ts, job_id),
        )

    def abandon_job(self, job_id: int, error: str, now_ts: int) -> None:
        conn = self._get_connection()
        conn.execute(
            """
            UPDATE vote_jobs SET status = 'failed', last_error = ?, updated_at = ?
            WHERE job_id = ?
            """,
            (error[:500], now_ts, job_id),
        )

    def count_jobs_by_status(self, status: str) -> int:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM vote_jobs WHERE status = ?",
            (status,),
        ).fetchone()
        return int(row["cnt"] or 0)

    def prune_jobs(self, before_ts: int) -> int:
        """Delete finished (done or failed) jobs last touched before before_ts."""
        conn = self._get_connection()
        cursor = conn.execute(
            "DELETE FROM vote_jobs WHERE status IN ('done', 'failed') AND updated_at < ?",
            (before_ts,),
        )
        return cursor.rowcount
