"""Local-LLM summariser: one thread excerpt in, one summary out, via Ollama's chat API."""

from __future__ import annotations

import hashlib
import json
import logging
import random
import time
from collections.abc import Callable
from typing import Any

import requests
from pydantic import ValidationError

from forumdigest.models import Excerpt, StructuredSummary, SummaryResult
from forumdigest.textprep import strip_citations
from forumdigest.tokens import count_tokens

logger = logging.getLogger(__name__)

# ── Built-in system prompts (overridable by external prompt configuration) ──
_TEXT_SYSTEM_PROMPT = (
    "You are summarizing ONE forum thread excerpt.\n"
    "Return a concise summary in plain text:\n"
    "- First line: a brief headline.\n"
    "- Subsequent lines: '- ' bullet points with key facts.\n"
    "Do NOT include post IDs, timestamps, author names, or URLs."
)

_JSON_SYSTEM_PROMPT = (
    "You are summarizing ONE forum thread excerpt.\n"
    "Return only a JSON object with the keys \"headline\" (string), "
    "\"bullets\" (3-6 strings with key facts) and \"citations\" (the post ids, "
    "taken from the [post:ID @ TIME] markers, that support the bullets). "
    "Do not invent facts. No commentary, no markdown fences."
)

_WARMUP_MESSAGE = "warmup"

CONNECT_TIMEOUT = 10.0
WARMUP_TIMEOUT = 60.0


class SummarizerError(Exception):
    """Base class for a failed summarisation of one topic."""

    kind = "summarizer"


class TransportError(SummarizerError):
    kind = "transport"


class UpstreamStatusError(SummarizerError):
    kind = "http_status"

    def __init__(self, status_code: int, body: str = "") -> None:
        super().__init__(f"inference server returned {status_code}: {body[:300]}")
        self.status_code = status_code


class SummaryParseError(SummarizerError):
    kind = "parse"


class BudgetExceededError(SummarizerError):
    kind = "budget_exceeded"


class _Transient(Exception):
    """Internal marker: the attempt may be retried."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(str(cause))
        self.cause = cause


def build_prompt(title: str, excerpt: Excerpt | str) -> str:
    """User message sent with every summarisation request."""
    return f"Thread: {title}\n\nContent excerpt:\n---\n{excerpt}\n---"


def prompt_hash(model: str, system: str, user: str) -> str:
    """Stable SHA-256 of the model name and the exact messages sent."""
    h = hashlib.sha256()
    h.update(model.encode("utf-8"))
    h.update(b"\n")
    h.update(system.encode("utf-8"))
    h.update(b"\n")
    h.update(user.encode("utf-8"))
    return h.hexdigest()


class OllamaSummarizer:
    """Summarise thread excerpts with a model hosted by a local Ollama server.

    Every ``summarize`` call runs under a single wall-clock budget that covers
    HTTP time and backoff sleeps. Transport errors, 5xx/429 responses and
    undecodable response bodies are retried with exponential backoff and
    jitter until the budget or ``max_attempts`` runs out. Other 4xx responses
    and output that does not match the deployment's format fail at once.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        output_format: str = "text",
        system_prompt: str | None = None,
        budget_secs: float = 120.0,
        keep_alive: str = "5m",
        max_attempts: int = 8,
        backoff_base: float = 0.5,
        backoff_cap: float = 10.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        if output_format not in ("text", "json"):
            raise ValueError(f"Unknown output format '{output_format}'")
        self._base = base_url.rstrip("/")
        self._model = model
        self._format = output_format
        self._system = system_prompt or (
            _JSON_SYSTEM_PROMPT if output_format == "json" else _TEXT_SYSTEM_PROMPT
        )
        self._budget = budget_secs
        self._keep_alive = keep_alive
        self._max_attempts = max(max_attempts, 1)
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._warmed = False

    @property
    def model(self) -> str:
        return self._model

    # ── public ──────────────────────────────────────────────────────────

    def warmup(self) -> bool:
        """Send one throwaway request so the server loads the model.

        Failures are logged and reported as ``False``; they never raise.
        """
        self._warmed = True
        body = self._chat_body(self._system, build_prompt(_WARMUP_MESSAGE, _WARMUP_MESSAGE))
        started = self._clock()
        try:
            self._post_chat(body, timeout=min(WARMUP_TIMEOUT, self._budget))
        except (_Transient, SummarizerError) as exc:
            cause = exc.cause if isinstance(exc, _Transient) else exc
            logger.warning("Warm-up request to %s failed: %s", self._base, cause)
            return False
        logger.info("Model %s warm (%.1fs)", self._model, self._clock() - started)
        return True

    def summarize(self, title: str, excerpt: Excerpt | str) -> SummaryResult:
        """Summarise one thread excerpt.

        Raises:
            TransportError, UpstreamStatusError, SummaryParseError,
            BudgetExceededError: the topic's attempt failed; the caller moves on.
        """
        if not self._warmed:
            self.warmup()

        user = build_prompt(title, excerpt)
        body = self._chat_body(self._system, user)
        input_tokens = count_tokens(self._system) + count_tokens(user)

        raw = self._call_with_budget(body)
        payload = self._parse(raw)

        return SummaryResult(
            payload=payload,
            model=self._model,
            prompt_hash=prompt_hash(self._model, self._system, user),
            input_tokens=input_tokens,
            output_tokens=count_tokens(raw),
        )

    def probe(self) -> dict[str, Any]:
        """Diagnostics: server version and locally available model tags."""
        version = self._session.get(f"{self._base}/api/version", timeout=CONNECT_TIMEOUT)
        version.raise_for_status()
        tags = self._session.get(f"{self._base}/api/tags", timeout=CONNECT_TIMEOUT)
        tags.raise_for_status()
        models = [m.get("name", "") for m in tags.json().get("models", [])]
        return {
            "version": version.json().get("version", ""),
            "models": models,
            "model_available": self._model in models,
        }

    # ── private ─────────────────────────────────────────────────────────

    def _chat_body(self, system: str, user: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self._model,
            "stream": False,
            "keep_alive": self._keep_alive,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if self._format == "json":
            body["format"] = StructuredSummary.model_json_schema()
        return body

    def _call_with_budget(self, body: dict[str, Any]) -> str:
        deadline = self._clock() + self._budget
        last_error: Exception | None = None

        for attempt in range(1, self._max_attempts + 1):
            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            try:
                return self._post_chat(body, timeout=remaining)
            except _Transient as exc:
                last_error = exc.cause
                logger.info(
                    "Inference attempt %d/%d failed: %s", attempt, self._max_attempts, exc.cause
                )
            if attempt == self._max_attempts:
                raise last_error
            delay = self._backoff(attempt)
            if delay >= deadline - self._clock():
                # No room left for another attempt inside the budget.
                break
            self._sleep(delay)

        raise BudgetExceededError(
            f"no successful response within {self._budget:g}s (last error: {last_error})"
        ) from last_error

    def _backoff(self, attempt: int) -> float:
        delay = min(self._backoff_cap, self._backoff_base * (2 ** (attempt - 1)))
        return delay * (0.5 + self._rng.random() / 2)

    def _post_chat(self, body: dict[str, Any], *, timeout: float) -> str:
        """One HTTP round-trip; raises ``_Transient`` for retryable failures."""
        try:
            resp = self._session.post(
                f"{self._base}/api/chat",
                json=body,
                timeout=(min(CONNECT_TIMEOUT, timeout), timeout),
            )
        except requests.RequestException as exc:
            raise _Transient(TransportError(f"transport: {exc}")) from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise _Transient(UpstreamStatusError(resp.status_code, resp.text))
        if resp.status_code != 200:
            raise UpstreamStatusError(resp.status_code, resp.text)

        try:
            content = resp.json()["message"]["content"]
        except (ValueError, KeyError, TypeError) as exc:
            raise _Transient(SummaryParseError(f"undecodable response body: {exc}")) from exc
        if not isinstance(content, str):
            raise _Transient(SummaryParseError("response message content is not a string"))
        return content

    def _parse(self, raw: str) -> StructuredSummary | str:
        if self._format == "json":
            try:
                summary = StructuredSummary.model_validate_json(raw)
            except ValidationError as exc:
                raise SummaryParseError(f"output does not match summary schema: {exc}") from exc
            summary.headline = strip_citations(summary.headline)
            summary.bullets = [strip_citations(b) for b in summary.bullets]
            if not summary.headline:
                raise SummaryParseError("summary headline is empty")
            return summary

        text = strip_citations(raw)
        if not text:
            raise SummaryParseError("model returned an empty summary")
        if _is_json_document(text):
            raise SummaryParseError("expected plain text summary, got JSON")
        return text


def _is_json_document(text: str) -> bool:
    if not text.startswith(("{", "[")):
        return False
    try:
        json.loads(text)
    except ValueError:
        return False
    return True
