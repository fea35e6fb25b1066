"""Turn raw post markup into a bounded, citation-labelled excerpt."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import UTC, datetime

from bs4 import BeautifulSoup

from forumdigest.models import Excerpt, ExcerptLine, Post

DEFAULT_MAX_CHARS = 1800

# Elements whose content is never prose.
_DROP_TAGS = ["script", "style", "template"]

# Block-level elements separate words even when the markup has no whitespace.
_BLOCK_TAGS = [
    "address", "article", "aside", "blockquote", "br", "canvas", "dd", "div",
    "dl", "dt", "fieldset", "figcaption", "figure", "footer", "form", "h1",
    "h2", "h3", "h4", "h5", "h6", "header", "hr", "li", "main", "nav",
    "noscript", "ol", "output", "p", "pre", "section", "table", "tfoot", "ul",
    "video", "tr", "td", "th",
]

_WS_RE = re.compile(r"\s+")
_CITATION_RE = re.compile(r"[ \t]*\[post:\d+(?:\s*@\s*[^\]]*)?\]")


def squeeze_ws(text: str) -> str:
    """Collapse whitespace runs to a single space and trim."""
    return _WS_RE.sub(" ", text).strip()


def strip_markup(html: str) -> str:
    """Plain text of a post body: no tags, entities decoded, script/style payloads dropped."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_DROP_TAGS):
        tag.decompose()
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_after(" ")
    return squeeze_ws(soup.get_text())


def iso_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with a ``Z`` suffix; milliseconds only when present."""
    value = value.astimezone(UTC)
    timespec = "milliseconds" if value.microsecond else "seconds"
    return value.replace(tzinfo=None).isoformat(timespec=timespec) + "Z"


def citation_label(post_id: int, created_at: datetime) -> str:
    return f"[post:{post_id} @ {iso_timestamp(created_at)}]"


def take_prefix_chars(text: str, max_chars: int) -> str:
    """First *max_chars* characters; str slicing never splits a code point."""
    return text[: max(max_chars, 0)]


def prepare(
    posts: Iterable[Post],
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
    since: datetime | None = None,
) -> Excerpt:
    """Build the excerpt sent to the model.

    Posts are normalized, labelled with ``[post:<id> @ <ts>]``, ordered by
    creation time and joined one per line. The result is cut to *max_chars*.
    With *since*, only posts created at or after it are kept.
    """
    selected = sorted(
        (p for p in posts if since is None or p.created_at >= since),
        key=lambda p: (p.created_at, p.id),
    )

    lines: list[ExcerptLine] = []
    for post in selected:
        text = strip_markup(post.cooked)
        if text:
            lines.append(ExcerptLine(post_id=post.id, created_at=post.created_at, text=text))

    joined = "\n".join(
        f"{citation_label(line.post_id, line.created_at)} {line.text}" for line in lines
    )
    return Excerpt(lines=lines, text=take_prefix_chars(joined, max_chars).rstrip())


def strip_citations(text: str) -> str:
    """Remove ``[post:ID]`` / ``[post:ID @ TS]`` markers echoed back by the model."""
    cleaned = _CITATION_RE.sub("", text)
    return "\n".join(line.rstrip() for line in cleaned.splitlines()).strip()
