"""HTTP stubs, a fake clock and post builders shared by the test modules."""

from __future__ import annotations

import json as _json
from datetime import UTC, datetime
from typing import Any

import requests

from forumdigest.models import Post, Topic
from forumdigest.store import ForumStore


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else _json.dumps(payload)

    def json(self) -> Any:
        if self._payload is None:
            return _json.loads(self.text)
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


def chat_ok(content: str) -> FakeResponse:
    return FakeResponse(200, {"message": {"role": "assistant", "content": content}})


class FakeSession:
    """Replays queued outcomes; an outcome is a FakeResponse, an exception or a callable."""

    def __init__(self, *outcomes: Any, default: Any = None) -> None:
        self.headers: dict[str, str] = {}
        self.outcomes = list(outcomes)
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def _next(self, call: dict[str, Any]) -> Any:
        self.calls.append(call)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if callable(outcome) and not isinstance(outcome, FakeResponse):
            outcome = outcome(call)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise AssertionError(f"unexpected request: {call}")
        return outcome

    def post(self, url: str, json: Any = None, timeout: Any = None) -> Any:
        return self._next({"method": "POST", "url": url, "json": json, "timeout": timeout})

    def get(self, url: str, params: Any = None, timeout: Any = None) -> Any:
        return self._next({"method": "GET", "url": url, "params": params, "timeout": timeout})


class FakeClock:
    """Monotonic clock whose ``sleep`` just moves time forward."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeForum:
    """In-memory stand-in for ``ForumClient``."""

    def __init__(self, topics: dict[int, tuple[Any, list[Any]]]) -> None:
        self.topics = topics
        self.fetches: list[int] = []

    def latest_topics(self) -> list[Any]:
        return [topic for topic, _ in self.topics.values()]

    def fetch_topic(self, topic_id: int) -> tuple[Any, list[Any]]:
        self.fetches.append(topic_id)
        topic, posts = self.topics[topic_id]
        if isinstance(posts, BaseException):
            raise posts
        return topic, list(posts)


def make_post(
    post_id: int,
    body: str = "<p>hello</p>",
    *,
    topic_id: int = 1,
    username: str = "alice",
    created_at: datetime | None = None,
) -> Post:
    return Post(
        id=post_id,
        topic_id=topic_id,
        username=username,
        cooked=body,
        created_at=created_at or datetime(2024, 1, 1, tzinfo=UTC),
    )


def seed(store: ForumStore, topic: Topic, posts: list[Post]) -> None:
    store.upsert_topic(topic)
    store.upsert_posts(posts)
