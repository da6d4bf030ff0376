"""Forbidden-word filter with leet-speak variant matching.

Content is normalised (NFKD, diacritics stripped, lowercased, whitespace
collapsed) and matched against precompiled alternations of every base term,
with each substitutable letter widened to a character class of its leet-speak
spellings. Matches must be bounded by the start/end of the text or a
non-alphanumeric character, so short terms never match inside longer words.
"""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from enum import StrEnum

# ---------------------------------------------------------------------------
# Term lists
# ---------------------------------------------------------------------------

ATTACK_KEYWORDS: tuple[str, ...] = (
    "raid now",
    "raid this server",
    "nuke the server",
    "nuke this server",
    "mass report",
    "mass ping",
    "spam the chat",
    "flood the chat",
    "ddos",
    "token grabber",
)

PROFANITY_TERMS: tuple[str, ...] = (
    "fuck",
    "fucking",
    "shit",
    "bitch",
    "cunt",
    "ass",
    "asshole",
    "bastard",
    "dickhead",
    "motherfucker",
    # contraband and scam bait
    "free nitro",
    "nitro giveaway",
    "steam gift",
    "crypto giveaway",
    "cocaine",
    "meth",
)

LEET_SUBSTITUTIONS: dict[str, tuple[str, ...]] = {
    "a": ("4", "@"),
    "e": ("3",),
    "i": ("1", "!"),
    "o": ("0",),
    "s": ("5", "$"),
    "t": ("7",),
    "b": ("8",),
    "g": ("9",),
    "l": ("1",),
}


class WordCategory(StrEnum):
    ATTACK = "attack"
    PROFANITY = "profanity"


@dataclass(frozen=True)
class WordMatch:
    term: str  # the base term, not the variant that was typed
    category: WordCategory
    matched_text: str


def normalize_text(text: str) -> str:
    """Strip diacritics, lowercase and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", stripped.casefold()).strip()


def term_pattern(term: str) -> str:
    """Return regex source matching *term* and every leet-speak spelling of it."""
    parts: list[str] = []
    for ch in term:
        options = (ch, *LEET_SUBSTITUTIONS.get(ch, ()))
        if len(options) == 1:
            parts.append(re.escape(ch))
        else:
            parts.append("[" + "".join(re.escape(o) for o in options) + "]")
    return "".join(parts)


def _compile(
    terms: tuple[str, ...],
) -> tuple[re.Pattern[str], list[tuple[str, re.Pattern[str]]]]:
    # Longest first so "asshole" wins over "ass"
    bases = sorted({normalize_text(t) for t in terms}, key=lambda b: (-len(b), b))
    matchers = [(base, re.compile(term_pattern(base))) for base in bases]
    alternation = "|".join(f"(?:{term_pattern(base)})" for base in bases)
    pattern = re.compile(rf"(?:^|[^a-z0-9])(?P<term>{alternation})(?=$|[^a-z0-9])")
    return pattern, matchers


class WordFilter:
    """Precompiled matcher for attack keywords and profanity."""

    def __init__(
        self,
        attack_keywords: tuple[str, ...] = ATTACK_KEYWORDS,
        profanity_terms: tuple[str, ...] = PROFANITY_TERMS,
    ) -> None:
        self._categories = [
            (WordCategory.ATTACK, *_compile(attack_keywords)),
            (WordCategory.PROFANITY, *_compile(profanity_terms)),
        ]

    def check(self, content: str) -> WordMatch | None:
        """Return the first forbidden term found, attack keywords first."""
        normalized = normalize_text(content)
        if not normalized:
            return None
        for category, pattern, matchers in self._categories:
            match = pattern.search(normalized)
            if match:
                variant = match.group("term")
                base = next(b for b, m in matchers if m.fullmatch(variant))
                return WordMatch(term=base, category=category, matched_text=variant)
        return None
