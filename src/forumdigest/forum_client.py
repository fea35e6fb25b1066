"""Minimal Discourse forum API client (read-only)."""

from __future__ import annotations

import logging
import time
from typing import Any

import requests

from forumdigest.models import Post, Topic

logger = logging.getLogger(__name__)

_USER_AGENT = "forumdigest/0.1 (+https://github.com/forumdigest)"

# Discourse serves 20 posts per topic page.
DEFAULT_PAGE_SIZE = 20


class ForumClientError(Exception):
    """Raised when the forum API returns a non-success response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ForumClient:
    """Thin wrapper around ``/latest.json`` and ``/t/{id}.json``.

    Errors are surfaced to the caller; there is no retry here.
    """

    def __init__(
        self,
        base_url: str,
        *,
        max_pages: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        page_delay: float = 1.0,
        timeout: float = 30.0,
        session: requests.Session | None = None,
        sleep: Any = time.sleep,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._max_pages = max(max_pages, 1)
        self._page_size = page_size
        self._page_delay = page_delay
        self._timeout = timeout
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": _USER_AGENT, "Accept": "application/json"})

    # ── public ──────────────────────────────────────────────────────────
    def latest_topics(self) -> list[Topic]:
        """Return the forum's latest topic list in listing order."""
        data = self._get("/latest.json")
        raw_topics: list[dict[str, Any]] = data.get("topic_list", {}).get("topics", [])
        topics = [Topic(id=int(t["id"]), title=t.get("title", "")) for t in raw_topics]
        logger.info("Fetched %d topics from %s", len(topics), self._base)
        return topics

    def fetch_topic(self, topic_id: int) -> tuple[Topic, list[Post]]:
        """Fetch topic metadata and its posts.

        Only the first page is read unless ``max_pages`` > 1, in which case
        pages are read until a short page, a 404 or the page limit.
        """
        data = self._get(f"/t/{topic_id}.json")
        topic = Topic(id=int(data.get("id", topic_id)), title=data.get("title", ""))
        posts = self._parse_posts(data, topic.id)

        page = 1
        page_len = len(posts)
        while page < self._max_pages and page_len >= self._page_size:
            page += 1
            # Polite back-off between pages (upstream rate limits)
            self._sleep(self._page_delay)
            try:
                page_data = self._get(f"/t/{topic_id}.json", params={"page": page})
            except ForumClientError as exc:
                if exc.status_code == 404:
                    break
                raise
            page_posts = self._parse_posts(page_data, topic.id)
            page_len = len(page_posts)
            posts.extend(page_posts)

        logger.info("Topic %d → %d posts (%d page(s))", topic.id, len(posts), page)
        return topic, posts

    # ── private ─────────────────────────────────────────────────────────
    @staticmethod
    def _parse_posts(data: dict[str, Any], topic_id: int) -> list[Post]:
        raw_posts: list[dict[str, Any]] = data.get("post_stream", {}).get("posts", [])
        return [
            Post(
                id=int(raw["id"]),
                topic_id=int(raw.get("topic_id", topic_id)),
                username=raw.get("username", ""),
                cooked=raw.get("cooked", ""),
                created_at=raw["created_at"],
            )
            for raw in raw_posts
        ]

    def _get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base}{path}"
        resp = self._session.get(url, params=params, timeout=self._timeout)
        if resp.status_code != 200:
            raise ForumClientError(
                f"Forum API returned {resp.status_code} for {path}: {resp.text[:300]}",
                status_code=resp.status_code,
            )
        return resp.json()  # type: ignore[no-any-return]
