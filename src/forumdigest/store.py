"""SQLite-backed forum store: topics, posts, LLM summaries and run cursors."""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from forumdigest.models import Post, SummaryRecord, Topic

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS topics (
    id    INTEGER PRIMARY KEY,
    title TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS posts (
    id         INTEGER PRIMARY KEY,
    topic_id   INTEGER NOT NULL REFERENCES topics(id) ON DELETE CASCADE,
    username   TEXT NOT NULL DEFAULT '',
    body       TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS posts_topic_created_idx ON posts(topic_id, created_at);

-- Older heuristic summaries; read by the viewer as a fallback only.
CREATE TABLE IF NOT EXISTS topic_summaries (
    topic_id   INTEGER PRIMARY KEY REFERENCES topics(id) ON DELETE CASCADE,
    summary    TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS summaries (
    topic_id      INTEGER PRIMARY KEY REFERENCES topics(id) ON DELETE CASCADE,
    summary       TEXT NOT NULL,
    model         TEXT NOT NULL,
    prompt_hash   TEXT NOT NULL,
    input_tokens  INTEGER,
    output_tokens INTEGER,
    cost          REAL,
    updated_at    TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS summaries_updated_idx ON summaries(updated_at DESC);

CREATE TABLE IF NOT EXISTS ingest_cursors (
    name     TEXT PRIMARY KEY,
    last_run TEXT NOT NULL
);
"""

# Excerpts are built from the first posts of a thread only.
MAX_POSTS_FOR_EXCERPT = 200


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so that SQL MAX()/ORDER BY compare chronologically.
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00")).astimezone(UTC)


class ForumStore:
    """Upsert-only store keyed by forum ids; concurrent writers converge (last writer wins)."""

    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._init_db()

    # ── ingestion ───────────────────────────────────────────────────────

    def upsert_topic(self, topic: Topic) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO topics (id, title) VALUES (?, ?)
                ON CONFLICT (id) DO UPDATE SET title = excluded.title
                """,
                (topic.id, topic.title),
            )

    def upsert_posts(self, posts: list[Post]) -> int:
        """Insert or refresh *posts*; return how many rows were written."""
        rows = [(p.id, p.topic_id, p.username, p.cooked, _ts(p.created_at)) for p in posts]
        with self._connect() as con:
            con.executemany(
                """
                INSERT INTO posts (id, topic_id, username, body, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    topic_id = excluded.topic_id,
                    username = excluded.username,
                    body = excluded.body,
                    created_at = excluded.created_at
                """,
                rows,
            )
        return len(rows)

    # ── reads ───────────────────────────────────────────────────────────

    def get_topic(self, topic_id: int) -> Topic | None:
        with self._connect() as con:
            row = con.execute("SELECT id, title FROM topics WHERE id = ?", (topic_id,)).fetchone()
        return Topic(id=row["id"], title=row["title"]) if row else None

    def posts_for_topic(
        self,
        topic_id: int,
        limit: int = MAX_POSTS_FOR_EXCERPT,
        since: datetime | None = None,
    ) -> list[Post]:
        """Return the topic's posts in ascending creation order.

        With *since*, only posts created at or after it count towards *limit*.
        """
        since_ts = _ts(since) if since is not None else ""
        with self._connect() as con:
            rows = con.execute(
                """
                SELECT id, topic_id, username, body, created_at FROM posts
                WHERE topic_id = ? AND created_at >= ?
                ORDER BY created_at ASC, id ASC LIMIT ?
                """,
                (topic_id, since_ts, limit),
            ).fetchall()
        return [
            Post(
                id=r["id"],
                topic_id=r["topic_id"],
                username=r["username"],
                cooked=r["body"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    def max_post_created_at(self, topic_id: int) -> datetime | None:
        with self._connect() as con:
            row = con.execute(
                "SELECT MAX(created_at) FROM posts WHERE topic_id = ?", (topic_id,)
            ).fetchone()
        return _parse_ts(row[0]) if row and row[0] else None

    # ── summaries ───────────────────────────────────────────────────────

    def get_summary(self, topic_id: int) -> SummaryRecord | None:
        with self._connect() as con:
            row = con.execute("SELECT * FROM summaries WHERE topic_id = ?", (topic_id,)).fetchone()
        if row is None:
            return None
        return SummaryRecord(
            topic_id=row["topic_id"],
            summary=row["summary"],
            model=row["model"],
            prompt_hash=row["prompt_hash"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            cost=row["cost"],
            updated_at=_parse_ts(row["updated_at"]),
        )

    def upsert_summary(self, record: SummaryRecord) -> None:
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO summaries
                    (topic_id, summary, model, prompt_hash, input_tokens, output_tokens,
                     cost, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (topic_id) DO UPDATE SET
                    summary = excluded.summary,
                    model = excluded.model,
                    prompt_hash = excluded.prompt_hash,
                    input_tokens = excluded.input_tokens,
                    output_tokens = excluded.output_tokens,
                    cost = excluded.cost,
                    updated_at = excluded.updated_at
                """,
                (
                    record.topic_id,
                    record.summary,
                    record.model,
                    record.prompt_hash,
                    record.input_tokens,
                    record.output_tokens,
                    record.cost,
                    _ts(record.updated_at),
                ),
            )
        logger.debug("Upserted summary for topic %d", record.topic_id)

    # ── cursors ─────────────────────────────────────────────────────────

    def touch_cursor(self, name: str, when: datetime | None = None) -> None:
        """Record *when* (default: now) as the last successful run for *name*."""
        when = when or datetime.now(UTC)
        with self._connect() as con:
            con.execute(
                """
                INSERT INTO ingest_cursors (name, last_run) VALUES (?, ?)
                ON CONFLICT (name) DO UPDATE SET last_run = excluded.last_run
                """,
                (name, _ts(when)),
            )

    def get_cursor(self, name: str) -> datetime | None:
        with self._connect() as con:
            row = con.execute(
                "SELECT last_run FROM ingest_cursors WHERE name = ?", (name,)
            ).fetchone()
        return _parse_ts(row["last_run"]) if row else None

    # ── viewer queries ──────────────────────────────────────────────────

    _CARD_SELECT = """
        SELECT
            t.id,
            t.title,
            COALESCE(l.summary, s.summary)       AS summary,
            COALESCE(l.updated_at, s.updated_at) AS updated_at,
            CASE WHEN l.summary IS NOT NULL THEN 'llm' ELSE 'heuristic' END AS source
        FROM topics t
        LEFT JOIN summaries       l ON l.topic_id = t.id
        LEFT JOIN topic_summaries s ON s.topic_id = t.id
        WHERE (l.summary IS NOT NULL OR s.summary IS NOT NULL)
    """

    def latest_cards(self, limit: int = 10) -> list[sqlite3.Row]:
        with self._connect() as con:
            return con.execute(
                self._CARD_SELECT + " ORDER BY COALESCE(l.updated_at, s.updated_at) DESC LIMIT ?",
                (limit,),
            ).fetchall()

    def card_by_id(self, topic_id: int) -> sqlite3.Row | None:
        with self._connect() as con:
            return con.execute(self._CARD_SELECT + " AND t.id = ?", (topic_id,)).fetchone()

    def search_cards(self, query: str, limit: int = 20) -> list[sqlite3.Row]:
        # Match the query literally; % and _ are not wildcards here.
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        with self._connect() as con:
            return con.execute(
                self._CARD_SELECT
                + """
                AND (t.title LIKE ? ESCAPE '\\'
                     OR COALESCE(l.summary, s.summary) LIKE ? ESCAPE '\\')
                ORDER BY COALESCE(l.updated_at, s.updated_at) DESC LIMIT ?
                """,
                (pattern, pattern, limit),
            ).fetchall()

    # ── private ─────────────────────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(str(self._db_path))
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def _init_db(self) -> None:
        with self._connect() as con:
            con.executescript(_SCHEMA)
        logger.debug("Store initialised at %s", self._db_path)
