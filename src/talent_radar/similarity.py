from __future__ import annotations

import math
from typing import Iterable


def levenshtein_distance(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)
    if len(left) < len(right):
        left, right = right, left

    previous = list(range(len(right) + 1))
    for i, lch in enumerate(left, start=1):
        current = [i]
        for j, rch in enumerate(right, start=1):
            cost = 0 if lch == rch else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(left: str | None, right: str | None) -> float:
    """Normalized edit-distance similarity in [0, 1]; empty input scores 0."""
    if not left or not right:
        return 0.0
    s1 = left.lower().strip()
    s2 = right.lower().strip()
    if s1 == s2:
        return 1.0
    longest = max(len(s1), len(s2))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(s1, s2) / longest


def jaccard(left: Iterable[str], right: Iterable[str]) -> float:
    a = {item.strip().lower() for item in left if item and item.strip()}
    b = {item.strip().lower() for item in right if item and item.strip()}
    union = a | b
    if not union:
        return 0.0
    return len(a & b) / len(union)


def common_items(left: Iterable[str], right: Iterable[str]) -> list[str]:
    other = {item.strip().lower() for item in right if item}
    seen: set[str] = set()
    result: list[str] = []
    for item in left:
        key = (item or "").strip().lower()
        if key and key in other and key not in seen:
            seen.add(key)
            result.append(item)
    return result


def date_proximity(days_apart: float | None, half_life_days: float = 7.0) -> float:
    if days_apart is None:
        return 0.0
    days_apart = abs(days_apart)
    if days_apart <= 1.0:
        return 1.0
    return math.pow(0.5, (days_apart - 1.0) / half_life_days)
