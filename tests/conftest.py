"""Shared fixtures: offline tokenizer and throwaway stores."""

from __future__ import annotations

from pathlib import Path

import pytest

from forumdigest import tokens
from forumdigest.store import ForumStore


class _WhitespaceEncoding:
    """Stands in for tiktoken so tests never download encoder files."""

    def encode(self, text: str, disallowed_special: object = ()) -> list[str]:
        return text.split()


@pytest.fixture(autouse=True)
def offline_tokenizer(request: pytest.FixtureRequest, monkeypatch: pytest.MonkeyPatch) -> None:
    if request.node.get_closest_marker("real_tokenizer"):
        return
    monkeypatch.setattr(tokens, "_encoding", lambda: _WhitespaceEncoding())


@pytest.fixture
def store(tmp_path: Path) -> ForumStore:
    return ForumStore(db_path=tmp_path / "db" / "forum.sqlite3")
