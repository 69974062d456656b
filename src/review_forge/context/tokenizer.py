"""
Tokenizer

Deterministic model-token counting used wherever a budget is enforced.
"""

import re
from functools import cached_property

import tiktoken


class Tokenizer:
    """Count tokens for a text span under a fixed model profile.

    Profiles:
        ``code``: offline approximation tuned for source code. Word runs and
            single punctuation characters are tokens; whitespace is free;
            identifiers are split on snake_case and camelCase boundaries.
        ``tiktoken:<encoding>``: exact counts from a tiktoken encoding,
            e.g. ``tiktoken:cl100k_base``.
    """

    TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]")
    IDENTIFIER_PART = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

    def __init__(self, profile: str = "code"):
        if profile != "code" and not profile.startswith("tiktoken:"):
            raise ValueError(f"Unknown tokenizer profile: {profile!r}")
        self.profile = profile

    @cached_property
    def _encoding(self) -> tiktoken.Encoding:
        return tiktoken.get_encoding(self.profile.split(":", 1)[1])

    def count(self, text: str) -> int:
        """Return the number of tokens in ``text`` (0 for empty text)."""
        if not text:
            return 0
        if self.profile != "code":
            return len(self._encoding.encode(text, disallowed_special=()))
        return sum(self._word_tokens(m.group()) for m in self.TOKEN_PATTERN.finditer(text))

    def truncate(self, text: str, max_tokens: int) -> str:
        """Return the longest prefix of ``text`` whose count is <= ``max_tokens``."""
        if max_tokens <= 0 or not text:
            return ""
        if self.profile != "code":
            tokens = self._encoding.encode(text, disallowed_special=())
            if len(tokens) <= max_tokens:
                return text
            return self._encoding.decode(tokens[:max_tokens])

        used = 0
        for match in self.TOKEN_PATTERN.finditer(text):
            cost = self._word_tokens(match.group())
            if used + cost > max_tokens:
                return text[: match.start()]
            used += cost
        return text

    def _word_tokens(self, word: str) -> int:
        """Tokens for a single regex match."""
        if len(word) == 1:
            return 1
        parts = [p for chunk in word.split("_") for p in self.IDENTIFIER_PART.findall(chunk)]
        return max(len(parts), 1)
