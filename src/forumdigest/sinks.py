"""Result sinks: persist summaries to the store, or render them into an HTML/RSS digest.

Both sinks are keyed by topic id, so delivering the same result twice
overwrites instead of appending.
"""

from __future__ import annotations

import html
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime
from pathlib import Path
from xml.etree import ElementTree as ET

import markdown
from pydantic import BaseModel, Field

from forumdigest.models import DigestItem, Post, SummaryRecord, SummaryResult, Topic
from forumdigest.store import ForumStore

logger = logging.getLogger(__name__)


def build_post_url(forum_base: str, topic_id: int, post_id: int) -> str:
    return f"{forum_base.rstrip('/')}/t/{topic_id}/{post_id}"


def compose_digest_item(
    forum_base: str, topic_id: int, title: str, post: Post, summary: str
) -> DigestItem:
    """Merge forum metadata with model text; the model only ever supplies ``summary``."""
    return DigestItem(
        topic_id=topic_id,
        post_id=post.id,
        author=post.username,
        title=title,
        url=build_post_url(forum_base, topic_id, post.id),
        created_at=post.created_at,
        summary=summary,
    )


def summary_timestamp(posts: list[Post], now: datetime | None = None) -> datetime:
    """``updated_at`` for a new summary: never older than the newest post it covers."""
    now = now or datetime.now(UTC)
    newest = max((p.created_at for p in posts), default=now)
    return max(now, newest)


class ResultSink(ABC):
    """Consumer of successful summaries; also the record the change guard reads."""

    @abstractmethod
    def last_updated(self, topic_id: int) -> datetime | None:
        """When the topic was last summarised, or None if never."""

    @abstractmethod
    def deliver(self, topic: Topic, posts: list[Post], result: SummaryResult) -> None:
        """Accept the summary of *topic* computed from *posts*."""

    def close(self) -> None:
        """Flush pending output. The default is a no-op."""


# ── Persist ────────────────────────────────────────────────────────────────


class PersistSink(ResultSink):
    """Upsert a ``SummaryRecord`` per topic into the SQLite store."""

    def __init__(self, store: ForumStore) -> None:
        self._store = store

    def last_updated(self, topic_id: int) -> datetime | None:
        record = self._store.get_summary(topic_id)
        return record.updated_at if record else None

    def deliver(self, topic: Topic, posts: list[Post], result: SummaryResult) -> None:
        record = SummaryRecord(
            topic_id=topic.id,
            summary=result.payload_json(),
            model=result.model,
            prompt_hash=result.prompt_hash,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost=None,  # local model
            updated_at=summary_timestamp(posts),
        )
        self._store.upsert_summary(record)
        logger.info(
            "Stored summary for topic %d (in=%d out=%d tokens, hash=%s)",
            topic.id,
            result.input_tokens,
            result.output_tokens,
            result.prompt_hash[:12],
        )


# ── Render ─────────────────────────────────────────────────────────────────

_STATE_FILE = "digest-items.json"

_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{title}</title></head>
<body>
<h1>{title}</h1>
<p><a href="rss.xml">RSS Feed</a></p>
<ul>
{items}
</ul>
</body>
</html>
"""

_ITEM_TEMPLATE = """\
<li id="topic-{topic_id}">
<h2><a href="{url}">{title}</a></h2>
<p><em>{author} · {created_at}</em></p>
{summary}
</li>"""


class _RenderedEntry(BaseModel):
    item: DigestItem
    updated_at: datetime


class _RenderState(BaseModel):
    entries: dict[int, _RenderedEntry] = Field(default_factory=dict)


def _as_markdown(text: str) -> str:
    # A bullet list needs a blank line after the headline paragraph.
    out: list[str] = []
    for line in text.splitlines():
        is_bullet = line.lstrip().startswith(("- ", "* "))
        if is_bullet and out and out[-1] and not out[-1].lstrip().startswith(("- ", "* ")):
            out.append("")
        out.append(line)
    return "\n".join(out)


def render_item_html(item: DigestItem) -> str:
    """One ``<li>`` fragment; the model text is escaped before Markdown conversion."""
    # Escaped and bracket-free, so the model text cannot inject markup or links.
    safe = html.escape(item.summary).replace("[", "&#91;")
    summary_html = markdown.markdown(_as_markdown(safe), output_format="html")
    return _ITEM_TEMPLATE.format(
        topic_id=item.topic_id,
        url=html.escape(item.url, quote=True),
        title=html.escape(item.title),
        author=html.escape(item.author),
        created_at=item.created_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M UTC"),
        summary=summary_html,
    )


def render_rss(items: list[DigestItem], *, title: str, link: str, description: str) -> str:
    rss = ET.Element("rss", version="2.0")
    channel = ET.SubElement(rss, "channel")
    ET.SubElement(channel, "title").text = title
    ET.SubElement(channel, "link").text = link
    ET.SubElement(channel, "description").text = description
    for item in items:
        node = ET.SubElement(channel, "item")
        ET.SubElement(node, "title").text = item.title
        ET.SubElement(node, "link").text = item.url
        ET.SubElement(node, "guid", isPermaLink="true").text = item.url
        ET.SubElement(node, "author").text = item.author
        pub_date = format_datetime(item.created_at.astimezone(UTC), usegmt=True)
        ET.SubElement(node, "pubDate").text = pub_date
        ET.SubElement(node, "description").text = item.summary
    return ET.tostring(rss, encoding="utf-8", xml_declaration=True).decode("utf-8")


class RenderSink(ResultSink):
    """Render summaries into ``index.html`` and ``rss.xml`` under *output_dir*.

    Delivered items live in a small JSON state file next to the documents so
    that reruns overwrite per topic and the change guard can see what was
    already rendered.
    """

    def __init__(
        self,
        output_dir: Path,
        forum_base: str,
        *,
        window_hours: float | None = None,
        site_title: str = "Forum Digest",
        now: datetime | None = None,
    ) -> None:
        output_dir.mkdir(parents=True, exist_ok=True)
        self._dir = output_dir
        self._forum_base = forum_base.rstrip("/")
        self._window_hours = window_hours
        self._window = timedelta(hours=window_hours) if window_hours else None
        self._site_title = site_title
        self._now = now
        self._state = self._load_state()

    def last_updated(self, topic_id: int) -> datetime | None:
        entry = self._state.entries.get(topic_id)
        return entry.updated_at if entry else None

    def deliver(self, topic: Topic, posts: list[Post], result: SummaryResult) -> None:
        if not posts:
            logger.warning("Topic %d delivered without posts; nothing to render", topic.id)
            return
        newest = max(posts, key=lambda p: (p.created_at, p.id))
        item = compose_digest_item(
            self._forum_base, topic.id, topic.title, newest, result.summary_text
        )
        self._state.entries[topic.id] = _RenderedEntry(
            item=item, updated_at=summary_timestamp(posts, self._now)
        )
        self._save_state()
        logger.info("Rendered digest item for topic %d", topic.id)

    def close(self) -> None:
        items = self.items()
        now = self._now or datetime.now(UTC)
        heading = f"{self._site_title} for {now.date().isoformat()}"
        body = "\n".join(render_item_html(i) for i in items)
        _atomic_write(
            self._dir / "index.html",
            _HTML_TEMPLATE.format(title=html.escape(heading), items=body),
        )
        window = f"in the last {self._window_hours:g} hours" if self._window else "recently"
        _atomic_write(
            self._dir / "rss.xml",
            render_rss(
                items,
                title=heading,
                link=self._forum_base,
                description=f"Topics updated {window}",
            ),
        )
        logger.info("Wrote digest with %d item(s) to %s", len(items), self._dir)

    def items(self) -> list[DigestItem]:
        """Rendered items, newest post first, limited to the window if one is set."""
        items = [e.item for e in self._state.entries.values()]
        if self._window is not None:
            cutoff = (self._now or datetime.now(UTC)) - self._window
            items = [i for i in items if i.created_at >= cutoff]
        return sorted(items, key=lambda i: (i.created_at, i.topic_id), reverse=True)

    # ── private ─────────────────────────────────────────────────────────

    def _load_state(self) -> _RenderState:
        path = self._dir / _STATE_FILE
        if not path.exists():
            return _RenderState()
        return _RenderState.model_validate_json(path.read_text(encoding="utf-8"))

    def _save_state(self) -> None:
        _atomic_write(self._dir / _STATE_FILE, self._state.model_dump_json(indent=2))


def _atomic_write(path: Path, text: str) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
