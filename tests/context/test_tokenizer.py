"""
Unit tests for Tokenizer.
"""

import pytest

from review_forge.context.tokenizer import Tokenizer


class TestCodeProfile:
    """Counting under the offline code profile."""

    def test_empty_text_is_zero(self, tokenizer: Tokenizer):
        assert tokenizer.count("") == 0

    def test_whitespace_is_free(self, tokenizer: Tokenizer):
        assert tokenizer.count("a   b\n\n\tc") == 3

    def test_punctuation_counts_per_character(self, tokenizer: Tokenizer):
        # def, foo, (, ), :
        assert tokenizer.count("def foo():") == 5

    def test_identifiers_split_on_case_boundaries(self, tokenizer: Tokenizer):
        assert tokenizer.count("getUserName") == 3
        assert tokenizer.count("snake_case_name") == 3
        assert tokenizer.count("HTTPServer") == 2

    def test_count_is_deterministic(self, tokenizer: Tokenizer):
        text = "class Parser:\n    def parse(self, source): return source.strip()"
        assert tokenizer.count(text) == tokenizer.count(text)
        assert tokenizer.count(text) == Tokenizer().count(text)

    def test_count_is_additive_over_words(self, tokenizer: Tokenizer):
        assert tokenizer.count("word " * 300) == 300


class TestTruncate:
    """Prefix truncation under a token limit."""

    def test_short_text_unchanged(self, tokenizer: Tokenizer):
        assert tokenizer.truncate("one two", 10) == "one two"

    def test_truncates_to_limit(self, tokenizer: Tokenizer):
        text = "alpha beta gamma delta"
        result = tokenizer.truncate(text, 2)

        assert text.startswith(result)
        assert tokenizer.count(result) == 2

    def test_zero_limit_is_empty(self, tokenizer: Tokenizer):
        assert tokenizer.truncate("anything", 0) == ""


class TestProfiles:
    """Profile selection."""

    def test_unknown_profile_rejected(self):
        with pytest.raises(ValueError):
            Tokenizer("bpe")

    def test_tiktoken_profile_accepted(self):
        assert Tokenizer("tiktoken:cl100k_base").profile == "tiktoken:cl100k_base"
