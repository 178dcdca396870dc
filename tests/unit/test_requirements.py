"""Unit tests for requirement change detection."""

import pytest

from cardsmith.core.domain.requirements import RequirementChangeDetector, word_similarity


@pytest.fixture
def detector():
    return RequirementChangeDetector()


@pytest.mark.parametrize(
    "reply",
    [
        "Actually, make her an elf.",
        "Forget the lighthouse",
        "never mind that",
        "I changed my mind about the setting",
        "Let's do something else",
        "I don't want a sad story",
    ],
)
def test_reversal_language_is_major(detector, reply):
    assert detector.is_major_change(reply, ["A lighthouse keeper"])


def test_phrases_match_whole_words_only(detector):
    assert not detector.has_reversal_language("She is a factually minded scholar")
    assert not detector.has_reversal_language("Unforgettable eyes")


def test_short_unrelated_reply_is_not_major(detector):
    assert not detector.is_major_change("Cozy, please.", ["Grim lighthouse keeper in a storm"])


def test_long_unrelated_reply_is_major(detector):
    previous = ["A lonely lighthouse keeper on a drowned coast who tends the last light"]
    reply = "Make the protagonist a cyberpunk courier racing through neon megacity rooftops at night"

    assert len(reply) > 50
    assert detector.is_major_change(reply, previous)


def test_long_related_reply_is_not_major(detector):
    previous = ["A lonely lighthouse keeper on a drowned coast who tends the last light"]
    reply = "The lonely lighthouse keeper on the drowned coast tends the last light every night"

    assert not detector.is_major_change(reply, previous)


def test_without_history_only_phrases_count(detector):
    reply = "Make the protagonist a cyberpunk courier racing through neon megacity rooftops"

    assert not detector.is_major_change(reply, [])


def test_only_recent_history_is_compared():
    detector = RequirementChangeDetector(history_window=1)
    old = "cyberpunk courier racing through neon megacity rooftops at night"
    recent = "a quiet lighthouse"
    reply = "cyberpunk courier racing through neon megacity rooftops at night again"

    assert detector.is_major_change(reply, [old, recent])
    assert not RequirementChangeDetector().is_major_change(reply, [old, recent])


def test_word_similarity():
    assert word_similarity("a b c", "a b c") == 1.0
    assert word_similarity("a b", "c d") == 0.0
    assert word_similarity("", "a") == 0.0
