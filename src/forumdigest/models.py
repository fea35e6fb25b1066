"""Domain models used across the pipeline."""

from __future__ import annotations

import re
from datetime import UTC, datetime

from pydantic import BaseModel, Field, field_validator

_CITATION_ID_RE = re.compile(r"(\d+)")


class Topic(BaseModel):
    id: int
    title: str = ""


class Post(BaseModel):
    id: int
    topic_id: int
    username: str = ""
    cooked: str = ""  # raw Discourse markup
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class ExcerptLine(BaseModel):
    post_id: int
    created_at: datetime
    text: str


class Excerpt(BaseModel):
    """Bounded, normalized text derived from a topic's posts. Never persisted."""

    lines: list[ExcerptLine] = Field(default_factory=list)
    text: str = ""

    def __len__(self) -> int:
        return len(self.text)

    def __bool__(self) -> bool:
        return bool(self.text)

    def __str__(self) -> str:
        return self.text


class StructuredSummary(BaseModel):
    """Schema of the ``json`` output format."""

    headline: str
    bullets: list[str]
    citations: list[int] = Field(default_factory=list)

    @field_validator("citations", mode="before")
    @classmethod
    def _citation_ids(cls, value: object) -> object:
        # Models echo citations as 10, "10", "post:10" or "[post:10 @ ...]".
        if not isinstance(value, list):
            return value
        ids: list[object] = []
        for item in value:
            if isinstance(item, str):
                m = _CITATION_ID_RE.search(item)
                ids.append(int(m.group(1)) if m else item)
            else:
                ids.append(item)
        return ids

    def as_text(self) -> str:
        lines = [self.headline.strip()]
        lines.extend(f"- {b.strip()}" for b in self.bullets if b.strip())
        return "\n".join(line for line in lines if line)


class SummaryResult(BaseModel):
    payload: StructuredSummary | str
    model: str
    prompt_hash: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def summary_text(self) -> str:
        if isinstance(self.payload, StructuredSummary):
            return self.payload.as_text()
        return self.payload

    def payload_json(self) -> str:
        """Serialised payload as stored in ``summaries.summary``."""
        if isinstance(self.payload, StructuredSummary):
            return self.payload.model_dump_json()
        return self.payload


class SummaryRecord(BaseModel):
    topic_id: int
    summary: str
    model: str
    prompt_hash: str
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost: float | None = None
    updated_at: datetime


class DigestItem(BaseModel):
    """One rendered digest entry; only ``summary`` originates from the model."""

    topic_id: int
    post_id: int
    author: str
    title: str
    url: str
    created_at: datetime
    summary: str
