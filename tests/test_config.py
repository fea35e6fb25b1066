"""Unit tests for startup configuration checks."""

from pathlib import Path

import pytest

from forumdigest import config


class TestValidate:
    def test_defaults_are_valid(self) -> None:
        config.validate()

    @pytest.mark.parametrize(
        ("name", "value"),
        [
            ("SINK_MODE", "email"),
            ("SUMMARY_FORMAT", "yaml"),
            ("OLLAMA_BASE_URL", "localhost:11434"),
            ("FORUM_BASE_URL", "ftp://forum.example.org"),
            ("LLM_MODEL", ""),
            ("OLLAMA_MAX_ELAPSED_SECS", 0),
            ("EXCERPT_MAX_CHARS", -1),
            ("FORUM_MAX_PAGES", 0),
            ("DIGEST_WINDOW_HOURS", 0),
        ],
    )
    def test_rejects_bad_setting(self, monkeypatch: pytest.MonkeyPatch, name: str, value: object) -> None:
        monkeypatch.setattr(config, name, value)
        with pytest.raises(config.ConfigError, match=name):
            config.validate()

    def test_missing_prompt_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setattr(config, "SUMMARY_SYSTEM_PROMPT_FILE", str(tmp_path / "absent.txt"))
        with pytest.raises(config.ConfigError):
            config.validate()


class TestSystemPrompt:
    def test_builtin_when_unset(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(config, "SUMMARY_SYSTEM_PROMPT_FILE", "")
        assert config.system_prompt() is None

    def test_reads_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        prompt = tmp_path / "prompt.txt"
        prompt.write_text("Summarise tersely.\n", encoding="utf-8")
        monkeypatch.setattr(config, "SUMMARY_SYSTEM_PROMPT_FILE", str(prompt))
        assert config.system_prompt() == "Summarise tersely."
