# stream_resolver/services/similarity.py

import re

from thefuzz import fuzz


def normalize(text: str | None) -> str:
    """Lowercases and strips everything but letters, digits and single spaces."""
    if not text:
        return ""
    t = re.sub(r"[^a-z0-9\s]", " ", text.lower())
    t = re.sub(r"\s+", " ", t).strip()
    return t


def similarity(a: str | None, b: str | None) -> float:
    """
    Returns how alike two titles are, between 0.0 and 1.0.

    Both sides are normalized first, so punctuation and case never matter.
    An empty side (after normalization) scores 0.0.
    """
    left, right = normalize(a), normalize(b)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    return fuzz.ratio(left, right) / 100


def word_overlap(candidate: str | None, official: str | None) -> float:
    """Share of the official title's words that also appear in the candidate."""
    official_words = normalize(official).split()
    if not official_words:
        return 0.0
    candidate_words = set(normalize(candidate).split())
    matched = sum(1 for word in official_words if word in candidate_words)
    return matched / len(official_words)
