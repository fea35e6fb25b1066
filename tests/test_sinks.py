"""Unit tests for the persist and render sinks."""

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from xml.etree import ElementTree as ET

from fakes import make_post, seed
from forumdigest.models import StructuredSummary, SummaryResult, Topic
from forumdigest.sinks import (
    PersistSink,
    RenderSink,
    build_post_url,
    compose_digest_item,
    summary_timestamp,
)
from forumdigest.store import ForumStore

FORUM = "https://forum.zcashcommunity.com"
T0 = datetime(2024, 1, 1, tzinfo=UTC)


def _result(payload: str | StructuredSummary = "Headline\n- fact", prompt_hash: str = "abc") -> SummaryResult:
    return SummaryResult(
        payload=payload, model="test-model", prompt_hash=prompt_hash, input_tokens=12, output_tokens=5
    )


class TestDigestItem:
    def test_builds_post_url(self) -> None:
        assert build_post_url(FORUM, 1, 2) == f"{FORUM}/t/1/2"
        assert build_post_url(FORUM + "/", 1, 2) == f"{FORUM}/t/1/2"

    def test_merges_metadata_with_summary(self) -> None:
        post = make_post(10, "<p>Hello <b>world</b></p>", topic_id=42, username="carol", created_at=T0)
        item = compose_digest_item(FORUM, 42, "Example Topic", post, "Real summary")
        assert item.model_dump() == {
            "topic_id": 42,
            "post_id": 10,
            "author": "carol",
            "title": "Example Topic",
            "url": f"{FORUM}/t/42/10",
            "created_at": T0,
            "summary": "Real summary",
        }

    def test_summary_never_overrides_metadata(self) -> None:
        post = make_post(10, topic_id=42, username="carol", created_at=T0)
        fake = "title: Fake\nauthor: mallory\nurl: https://evil.example/t/9999"
        item = compose_digest_item(FORUM, 42, "Example Topic", post, fake)
        assert (item.post_id, item.author, item.title, item.url) == (
            10,
            "carol",
            "Example Topic",
            f"{FORUM}/t/42/10",
        )
        assert item.summary == fake


class TestSummaryTimestamp:
    def test_never_older_than_newest_post(self) -> None:
        future = datetime.now(UTC) + timedelta(hours=3)
        posts = [make_post(1, created_at=T0), make_post(2, created_at=future)]
        assert summary_timestamp(posts) >= future

    def test_uses_now_for_past_posts(self) -> None:
        now = T0 + timedelta(days=1)
        assert summary_timestamp([make_post(1, created_at=T0)], now=now) == now


class TestPersistSink:
    def test_upsert_overwrites(self, store: ForumStore) -> None:
        topic = Topic(id=42, title="Example Topic")
        posts = [make_post(10, topic_id=42, created_at=T0)]
        seed(store, topic, posts)
        sink = PersistSink(store)

        sink.deliver(topic, posts, _result("First", prompt_hash="h1"))
        sink.deliver(topic, posts, _result("Second", prompt_hash="h2"))

        record = store.get_summary(42)
        assert record is not None
        assert record.summary == "Second"
        assert record.prompt_hash == "h2"
        assert (record.input_tokens, record.output_tokens, record.cost) == (12, 5, None)
        assert record.model == "test-model"
        assert sink.last_updated(42) == record.updated_at
        assert record.updated_at >= T0
        with store._connect() as con:
            assert con.execute("SELECT COUNT(*) FROM summaries").fetchone()[0] == 1

    def test_structured_payload_stored_as_json(self, store: ForumStore) -> None:
        topic = Topic(id=1, title="t")
        posts = [make_post(1)]
        seed(store, topic, posts)
        payload = StructuredSummary(headline="H", bullets=["a", "b"], citations=[1])
        PersistSink(store).deliver(topic, posts, _result(payload))
        stored = json.loads(store.get_summary(1).summary)
        assert stored == {"headline": "H", "bullets": ["a", "b"], "citations": [1]}

    def test_never_summarised(self, store: ForumStore) -> None:
        assert PersistSink(store).last_updated(5) is None


class TestRenderSink:
    def _sink(self, tmp_path: Path, **kwargs) -> RenderSink:
        return RenderSink(tmp_path / "public", FORUM, now=T0 + timedelta(hours=1), **kwargs)

    def test_renders_html_and_rss(self, tmp_path: Path) -> None:
        sink = self._sink(tmp_path)
        topic = Topic(id=42, title="Example Topic")
        sink.deliver(topic, [make_post(10, topic_id=42, username="carol", created_at=T0)], _result())
        sink.close()

        index = (tmp_path / "public" / "index.html").read_text(encoding="utf-8")
        assert f'<a href="{FORUM}/t/42/10">Example Topic</a>' in index
        assert "<li>fact</li>" in index
        assert "carol" in index

        rss = ET.fromstring((tmp_path / "public" / "rss.xml").read_text(encoding="utf-8"))
        items = rss.findall("./channel/item")
        assert len(items) == 1
        assert items[0].findtext("link") == f"{FORUM}/t/42/10"
        assert items[0].findtext("pubDate") == "Mon, 01 Jan 2024 00:00:00 GMT"

    def test_redelivery_overwrites(self, tmp_path: Path) -> None:
        sink = self._sink(tmp_path)
        topic = Topic(id=42, title="Example Topic")
        posts = [make_post(10, topic_id=42, created_at=T0)]
        sink.deliver(topic, posts, _result("old"))
        sink.deliver(topic, posts, _result("new"))
        assert [i.summary for i in sink.items()] == ["new"]

        reopened = self._sink(tmp_path)
        assert [i.summary for i in reopened.items()] == ["new"]
        assert reopened.last_updated(42) == sink.last_updated(42)

    def test_links_newest_post(self, tmp_path: Path) -> None:
        sink = self._sink(tmp_path)
        posts = [
            make_post(10, topic_id=42, username="carol", created_at=T0),
            make_post(11, topic_id=42, username="dave", created_at=T0 + timedelta(minutes=1)),
        ]
        sink.deliver(Topic(id=42, title="t"), posts, _result())
        (item,) = sink.items()
        assert (item.post_id, item.author, item.url) == (11, "dave", f"{FORUM}/t/42/11")

    def test_model_output_is_escaped(self, tmp_path: Path) -> None:
        sink = self._sink(tmp_path)
        evil = 'Headline <script>alert(1)</script>\n- [click](javascript:alert(1))'
        sink.deliver(Topic(id=1, title="t"), [make_post(1, created_at=T0)], _result(evil))
        sink.close()
        index = (tmp_path / "public" / "index.html").read_text(encoding="utf-8")
        assert "<script>" not in index
        assert 'href="javascript' not in index

    def test_window_drops_stale_items(self, tmp_path: Path) -> None:
        sink = self._sink(tmp_path, window_hours=24)
        sink.deliver(Topic(id=1, title="fresh"), [make_post(1, topic_id=1, created_at=T0)], _result())
        sink.deliver(
            Topic(id=2, title="stale"),
            [make_post(2, topic_id=2, created_at=T0 - timedelta(days=3))],
            _result(),
        )
        assert [i.topic_id for i in sink.items()] == [1]
