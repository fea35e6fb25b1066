"""Read-only terminal views over stored summaries (LLM first, older heuristic summaries as fallback)."""

from __future__ import annotations

import sqlite3
from typing import TextIO

from pydantic import ValidationError

from forumdigest.models import StructuredSummary
from forumdigest.store import ForumStore


def format_card(row: sqlite3.Row) -> str:
    """Render one summary row as a plain-text card."""
    when = row["updated_at"] or "unknown-time"
    lines = [f"[{row['id']}] {row['title']}  ({row['source']} • {when})"]

    try:
        parsed = StructuredSummary.model_validate_json(row["summary"])
    except ValidationError:
        lines.append(row["summary"].strip())
    else:
        lines.append(parsed.headline.strip())
        lines.extend(f" - {b.strip()}" for b in parsed.bullets)
        if parsed.citations:
            lines.append("   posts: " + ", ".join(str(c) for c in parsed.citations))

    lines.append("---")
    return "\n".join(lines)


def show_latest(store: ForumStore, out: TextIO, limit: int = 10) -> int:
    rows = store.latest_cards(limit)
    for row in rows:
        print(format_card(row), file=out)
    return len(rows)


def show_topic(store: ForumStore, out: TextIO, topic_id: int) -> bool:
    row = store.card_by_id(topic_id)
    if row is None:
        return False
    print(format_card(row), file=out)
    return True


def show_search(store: ForumStore, out: TextIO, query: str, limit: int = 20) -> int:
    rows = store.search_cards(query, limit)
    for row in rows:
        print(format_card(row), file=out)
    return len(rows)
