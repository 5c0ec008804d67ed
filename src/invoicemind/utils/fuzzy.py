"""Approximate vendor name matching.

Scores are normalized Levenshtein distances in [0, 1], where 0 means the
normalized strings are identical. A vendor is scored against its name and each
of its alias fingerprints; the best (lowest) weighted score represents the
vendor. Weights scale the raw distance before the threshold test:

    name         1.0
    fingerprint  1.0
"""

import re
from collections.abc import Iterable
from typing import TypeVar

T = TypeVar("T")

NAME_WEIGHT = 1.0
FINGERPRINT_WEIGHT = 1.0

DEFAULT_THRESHOLD = 0.4

LEGAL_SUFFIXES = ["gmbh", "ltd", "inc", "llc", "ag", "co"]

_PUNCTUATION = re.compile(r"[.,/#!$%^&*;:{}=\-_`~()]")
_WHITESPACE = re.compile(r"\s+")


def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate Levenshtein (edit) distance between two strings.

    Example:
        levenshtein_distance("kitten", "sitting") -> 3
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))

    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def normalize_vendor_name(name: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    collapsed = _WHITESPACE.sub(" ", name.lower())
    return _PUNCTUATION.sub("", collapsed).strip()


def distance_score(query: str, candidate: str) -> float:
    """Normalized edit distance between two vendor names (0 = identical)."""
    a = normalize_vendor_name(query)
    b = normalize_vendor_name(candidate)
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return levenshtein_distance(a, b) / longest


def generate_fingerprints(name: str) -> list[str]:
    """Alias strings for a vendor: the name, its normalized form and the
    normalized form without a trailing legal suffix."""
    normalized = normalize_vendor_name(name)
    fingerprints = [name, normalized]

    for suffix in LEGAL_SUFFIXES:
        pattern = re.compile(rf"\s*\b{suffix}\s*$", re.IGNORECASE)
        if pattern.search(normalized):
            stripped = pattern.sub("", normalized).strip()
            if stripped:
                fingerprints.append(stripped)

    return list(dict.fromkeys(fingerprints))


def rank_candidates(
    query: str,
    candidates: Iterable[tuple[T, str, list[str]]],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[tuple[T, float]]:
    """Rank candidates whose best weighted score is below ``threshold``.

    Args:
        query: The vendor name to look up
        candidates: (item, name, fingerprints) tuples in stable insertion order
        threshold: Scores at or above this value are rejected

    Returns:
        (item, score) pairs sorted by ascending score; ties keep input order
    """
    ranked: list[tuple[T, float]] = []
    for item, name, fingerprints in candidates:
        scores = [distance_score(query, name) * NAME_WEIGHT]
        scores.extend(
            distance_score(query, alias) * FINGERPRINT_WEIGHT for alias in fingerprints
        )
        best = min(min(scores), 1.0)
        if best < threshold:
            ranked.append((item, best))

    # sorted() is stable, so equal scores stay in insertion order
    return sorted(ranked, key=lambda pair: pair[1])
