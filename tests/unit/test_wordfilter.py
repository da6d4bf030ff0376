"""Unit tests for the forbidden-word filter."""

from __future__ import annotations

import re

import pytest

from raidshield.moderation.wordfilter import (
    WordCategory,
    WordFilter,
    normalize_text,
    term_pattern,
)


@pytest.fixture(scope="module")
def word_filter() -> WordFilter:
    return WordFilter()


class TestNormalization:
    def test_strips_diacritics_and_case(self) -> None:
        assert normalize_text("Crème BRÛLÉE") == "creme brulee"

    def test_collapses_whitespace(self) -> None:
        assert normalize_text("  free \t\n nitro ") == "free nitro"

    @pytest.mark.parametrize("spelling", ["free nitro", "fr33 n1tr0", "fre3 nitr0"])
    def test_term_pattern_matches_leet_spellings(self, spelling: str) -> None:
        assert re.fullmatch(term_pattern("free nitro"), spelling)

    def test_term_pattern_rejects_other_words(self) -> None:
        assert re.fullmatch(term_pattern("free nitro"), "tree nitro") is None


class TestWordFilter:
    """Tests for WordFilter.check."""

    def test_leet_speak_matches_base_term(self, word_filter: WordFilter) -> None:
        match = word_filter.check("FR33 N1TR0")
        assert match is not None
        assert match.term == "free nitro"
        assert match.category == WordCategory.PROFANITY

    def test_term_inside_longer_word_does_not_match(self, word_filter: WordFilter) -> None:
        assert word_filter.check("classic") is None
        assert word_filter.check("a classic assessment of the bass line") is None

    def test_bounded_short_term_matches(self, word_filter: WordFilter) -> None:
        match = word_filter.check("you absolute ass!")
        assert match is not None
        assert match.term == "ass"

    def test_longer_term_wins(self, word_filter: WordFilter) -> None:
        match = word_filter.check("what an asshole")
        assert match is not None
        assert match.term == "asshole"

    def test_attack_keywords_take_priority(self, word_filter: WordFilter) -> None:
        match = word_filter.check("shit, everyone RAID NOW")
        assert match is not None
        assert match.category == WordCategory.ATTACK
        assert match.term == "raid now"

    @pytest.mark.parametrize(
        "text", ["r@id this server", "R4ID TH1S 5ERV3R", "r@1d 7hi$ $erver"]
    )
    def test_long_keyword_fully_substituted(self, word_filter: WordFilter, text: str) -> None:
        match = word_filter.check(text)
        assert match is not None
        assert match.category == WordCategory.ATTACK
        assert match.term == "raid this server"

    def test_diacritics_do_not_evade(self, word_filter: WordFilter) -> None:
        match = word_filter.check("get your frée nítro here")
        assert match is not None
        assert match.term == "free nitro"

    def test_symbol_substitutions(self, word_filter: WordFilter) -> None:
        match = word_filter.check("sh!t happens")
        assert match is not None
        assert match.term == "shit"

    @pytest.mark.parametrize(
        "text",
        ["", "hello there", "Let's meet at the methodist church", "a bassist"],
    )
    def test_clean_text(self, word_filter: WordFilter, text: str) -> None:
        assert word_filter.check(text) is None

    def test_custom_term_lists(self) -> None:
        custom = WordFilter(attack_keywords=("storm the gates",), profanity_terms=("heck",))
        assert custom.check("STORM THE G4TES").category == WordCategory.ATTACK
        assert custom.check("oh h3ck").term == "heck"
        assert custom.check("free nitro") is None
