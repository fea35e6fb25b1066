"""Change detection: only topics with posts newer than their last summary are re-summarised."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

from forumdigest.store import ForumStore

logger = logging.getLogger(__name__)


class SummaryLedger(Protocol):
    def last_updated(self, topic_id: int) -> datetime | None: ...


class ChangeGuard:
    """Idempotency gate between ingestion and the (expensive) model call."""

    def __init__(self, store: ForumStore, ledger: SummaryLedger) -> None:
        self._store = store
        self._ledger = ledger

    def should_summarize(self, topic_id: int) -> bool:
        """True when the topic has posts and none of its summaries covers the newest one."""
        newest_post = self._store.max_post_created_at(topic_id)
        if newest_post is None:
            return False
        last_summary = self._ledger.last_updated(topic_id)
        if last_summary is None:
            return True
        return newest_post > last_summary
