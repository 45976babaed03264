"""Tests for transcript text helpers."""

from sidecar.services.transcript_utils import extract_snippet, fold_text, format_time_label, tokenize


class TestTokenize:
    def test_ascii_words(self):
        assert tokenize("Budget review, budget REVIEW for Q3!") == ["budget", "review", "for", "q3"]

    def test_accents_are_folded(self):
        assert tokenize("Café in München") == ["cafe", "in", "munchen"]

    def test_non_latin_scripts_are_kept(self):
        assert tokenize("Встреча в Москве") == ["встреча", "москве"]
        assert tokenize("東京 meeting") == ["東京", "meeting"]

    def test_underscores_split_words(self):
        assert tokenize("snake_case", min_length=1) == ["snake", "case"]


class TestFoldText:
    def test_length_is_preserved(self):
        for text in ("München", "İstanbul", "naïve façade"):
            assert len(fold_text(text)) == len(text)

    def test_folding(self):
        assert fold_text("ÉLAN Ünïcode") == "elan unicode"


class TestSnippet:
    def test_match_ignores_accents_and_keeps_original_text(self):
        text = "x" * 100 + " we meet in München tomorrow " + "y" * 100
        snippet = extract_snippet(text, ["munchen"], context_chars=10)
        assert "München" in snippet
        assert snippet.startswith("...") and snippet.endswith("...")

    def test_no_match_returns_start(self):
        assert extract_snippet("short text", ["absent"]) == "short text"


def test_time_label_keeps_counting_minutes():
    assert format_time_label(3_725_000) == "62:05"
