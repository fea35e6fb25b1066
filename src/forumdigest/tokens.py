"""Local token accounting with a fixed tokenizer profile."""

from __future__ import annotations

from functools import lru_cache

import tiktoken

TOKENIZER_PROFILE = "cl100k_base"


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    """Build the encoder once per process; it is shared read-only afterwards."""
    return tiktoken.get_encoding(TOKENIZER_PROFILE)


def count_tokens(text: str) -> int:
    """Number of tokens in *text*, special tokens included as plain text."""
    if not text:
        return 0
    return len(_encoding().encode(text, disallowed_special=()))
