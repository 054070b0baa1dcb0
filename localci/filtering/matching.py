"""Fuzzy name matching for "did you mean" suggestions."""

from typing import Iterable, List, Tuple


DEFAULT_THRESHOLD = 2
MAX_SUGGESTIONS = 3
MAX_SUGGESTION_DISTANCE = 5


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings, case-insensitive."""
    a, b = a.lower(), b.lower()
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def is_fuzzy_match(candidate: str, target: str, threshold: int = DEFAULT_THRESHOLD) -> bool:
    return levenshtein(candidate, target) <= threshold


def find_similar(
    target: str,
    candidates: Iterable[str],
    max_suggestions: int = MAX_SUGGESTIONS,
    max_distance: int = MAX_SUGGESTION_DISTANCE,
) -> List[str]:
    """Return the closest candidates, nearest first."""
    scored: List[Tuple[int, str]] = []
    seen = set()
    for candidate in candidates:
        if candidate in seen:
            continue
        seen.add(candidate)
        distance = levenshtein(target, candidate)
        if distance <= max_distance or target.lower() in candidate.lower():
            scored.append((distance, candidate))
    scored.sort(key=lambda item: (item[0], item[1]))
    return [candidate for _, candidate in scored[:max_suggestions]]
