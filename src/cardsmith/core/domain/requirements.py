"""
Requirement change detection.

Decides whether a user reply given during a suspension changes the
requirements enough to warrant a complete replan. A reply counts as a major
change when it uses reversal/negation language, or when it is long and
shares little vocabulary with the user's recent messages.
"""

import re

REVERSAL_PHRASES = (
    "actually",
    "forget",
    "never mind",
    "nevermind",
    "instead",
    "start over",
    "scrap",
    "changed my mind",
    "change my mind",
    "completely different",
    "something else",
    "not what i want",
    "don't want",
    "do not want",
)

LENGTH_THRESHOLD = 50
SIMILARITY_THRESHOLD = 0.3
HISTORY_WINDOW = 5

_WORD_RE = re.compile(r"[\w']+")


def word_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the lower-cased word sets of two texts."""
    words_a = set(_WORD_RE.findall(a.lower()))
    words_b = set(_WORD_RE.findall(b.lower()))
    if not words_a or not words_b:
        return 0.0
    return len(words_a & words_b) / len(words_a | words_b)


class RequirementChangeDetector:
    def __init__(
        self,
        phrases: tuple[str, ...] = REVERSAL_PHRASES,
        length_threshold: int = LENGTH_THRESHOLD,
        similarity_threshold: float = SIMILARITY_THRESHOLD,
        history_window: int = HISTORY_WINDOW,
    ):
        self.length_threshold = length_threshold
        self.similarity_threshold = similarity_threshold
        self.history_window = history_window
        self._pattern = re.compile(
            r"\b(?:" + "|".join(re.escape(p) for p in phrases) + r")\b", re.IGNORECASE
        )

    def has_reversal_language(self, reply: str) -> bool:
        return bool(self._pattern.search(reply))

    def is_low_similarity(self, reply: str, previous: list[str]) -> bool:
        recent = previous[-self.history_window:]
        # Without history there is nothing to diverge from
        if not recent or len(reply) <= self.length_threshold:
            return False
        return max(word_similarity(reply, m) for m in recent) < self.similarity_threshold

    def is_major_change(self, reply: str, previous: list[str]) -> bool:
        """``previous`` are the user's earlier messages, oldest first, excluding ``reply``."""
        return self.has_reversal_language(reply) or self.is_low_similarity(reply, previous)
