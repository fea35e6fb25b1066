"""Pipeline orchestration: fetch → store → guard → prepare → summarise → sink."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime, timedelta

import requests
from pydantic import BaseModel

from forumdigest import config
from forumdigest.forum_client import ForumClient, ForumClientError
from forumdigest.guard import ChangeGuard
from forumdigest.models import Topic
from forumdigest.sinks import PersistSink, RenderSink, ResultSink
from forumdigest.store import ForumStore
from forumdigest.summarizer import OllamaSummarizer, SummarizerError
from forumdigest.textprep import prepare

logger = logging.getLogger(__name__)

CURSOR_NAME = "forumdigest"

# Failures that abort only the current topic; storage and file errors end the run.
_TOPIC_ERRORS = (
    ForumClientError,
    requests.RequestException,
    SummarizerError,
    KeyError,
    ValueError,
)


class RunStats(BaseModel):
    topics: int = 0
    summarized: int = 0
    unchanged: int = 0
    empty: int = 0
    would_summarize: int = 0
    failed: int = 0


def _error_kind(exc: Exception) -> str:
    if isinstance(exc, SummarizerError):
        return exc.kind
    if isinstance(exc, ForumClientError):
        return "http_status"
    if isinstance(exc, requests.RequestException):
        return "transport"
    return "payload"


class Pipeline:
    """Processes topics strictly one after another; a failed topic never stops the run."""

    def __init__(
        self,
        forum: ForumClient,
        store: ForumStore,
        summarizer: OllamaSummarizer,
        sink: ResultSink,
        *,
        max_chars: int = 1800,
        window_hours: float | None = None,
        dry_run: bool = False,
    ) -> None:
        self._forum = forum
        self._store = store
        self._summarizer = summarizer
        self._sink = sink
        self._guard = ChangeGuard(store, sink)
        self._max_chars = max_chars
        self._window = timedelta(hours=window_hours) if window_hours else None
        self._dry_run = dry_run

    def run(self, topics: list[Topic] | None = None) -> RunStats:
        """Process *topics* (default: the forum's latest list) in order."""
        if topics is None:
            topics = self._forum.latest_topics()
        stats = RunStats(topics=len(topics))

        for topic in topics:
            outcome = self.process_topic(topic)
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        if not self._dry_run:
            self._sink.close()
            self._store.touch_cursor(CURSOR_NAME)
        return stats

    def process_topic(self, topic: Topic) -> str:
        """Run one topic through the pipeline and return the ``RunStats`` field it counts towards.

        Storage errors propagate to the caller.
        """
        stage = "fetch"
        try:
            self._store.upsert_topic(topic)
            fetched, posts = self._forum.fetch_topic(topic.id)
            if fetched.title:
                topic = fetched
                self._store.upsert_topic(topic)
            self._store.upsert_posts(posts)

            stage = "guard"
            if not self._guard.should_summarize(topic.id):
                logger.info("Topic %d unchanged since last summary → skip", topic.id)
                return "unchanged"

            stage = "prepare"
            since = datetime.now(UTC) - self._window if self._window else None
            stored_posts = self._store.posts_for_topic(topic.id, since=since)
            excerpt = prepare(stored_posts, max_chars=self._max_chars, since=since)
            if not excerpt:
                logger.info("Topic %d has no text to summarise → skip", topic.id)
                return "empty"

            if self._dry_run:
                logger.info(
                    "Dry-run: would summarise topic %d (%d chars from %d posts)",
                    topic.id,
                    len(excerpt),
                    len(excerpt.lines),
                )
                return "would_summarize"

            stage = "summarize"
            started = time.monotonic()
            result = self._summarizer.summarize(topic.title, excerpt)

            stage = "sink"
            self._sink.deliver(topic, stored_posts, result)
            logger.info(
                "Summarised topic %d in %.1fs", topic.id, time.monotonic() - started
            )
            return "summarized"
        except _TOPIC_ERRORS as exc:
            logger.warning(
                "topic=%d stage=%s error=%s: %s", topic.id, stage, _error_kind(exc), exc
            )
            return "failed"


def build_sink(store: ForumStore) -> ResultSink:
    """Sink chosen once per deployment by ``SINK_MODE``."""
    if config.SINK_MODE == "render":
        return RenderSink(
            config.OUTPUT_DIR,
            config.FORUM_BASE_URL,
            window_hours=config.DIGEST_WINDOW_HOURS,
        )
    return PersistSink(store)


def run_pipeline(dry_run: bool = False) -> RunStats:
    """Execute one full run with the environment configuration."""
    config.validate()
    logger.info(
        "=== forumdigest pipeline start [model=%s sink=%s format=%s] ===",
        config.LLM_MODEL,
        config.SINK_MODE,
        config.SUMMARY_FORMAT,
    )

    store = ForumStore(db_path=config.DB_PATH)
    forum = ForumClient(
        config.FORUM_BASE_URL,
        max_pages=config.FORUM_MAX_PAGES,
        page_delay=config.FORUM_PAGE_DELAY_SECS,
    )
    summarizer = OllamaSummarizer(
        config.OLLAMA_BASE_URL,
        config.LLM_MODEL,
        output_format=config.SUMMARY_FORMAT,
        system_prompt=config.system_prompt(),
        budget_secs=config.OLLAMA_MAX_ELAPSED_SECS,
        keep_alive=config.OLLAMA_KEEP_ALIVE,
    )
    pipeline = Pipeline(
        forum,
        store,
        summarizer,
        build_sink(store),
        max_chars=config.EXCERPT_MAX_CHARS,
        window_hours=config.DIGEST_WINDOW_HOURS,
        dry_run=dry_run,
    )

    stats = pipeline.run()
    logger.info(
        "=== forumdigest pipeline done: %d topics: %d summarised, %d unchanged, "
        "%d empty, %d would summarise, %d failed ===",
        stats.topics,
        stats.summarized,
        stats.unchanged,
        stats.empty,
        stats.would_summarize,
        stats.failed,
    )
    return stats
