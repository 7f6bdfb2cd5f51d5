"""Scoring primitives shared by the evidence, match and dispatch engines."""

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Sequence, Tuple, TypeVar

T = TypeVar("T")

CAP_EXCEEDED = "cap_exceeded"
UNVERIFIED = "unverified"


@dataclass(frozen=True)
class RankedEntry:
    """Per-item outcome of ``rank_and_cap``."""

    item: object
    base_score: int
    final_score: int
    counted: bool
    adjustments: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positives (Python's round() is banker's rounding)."""
    return int(math.floor(value + 0.5))


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def linear_decay(value: float, reference: float) -> float:
    """100 at ``value`` 0, falling linearly to 0 at ``reference`` and beyond."""
    if reference <= 0:
        return 0.0
    return clamp(100.0 * (1.0 - value / reference), 0.0, 100.0)


def weighted_sum(components: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Sum of ``components[k] * weights[k]``; components without a weight contribute nothing."""
    return sum(value * weights.get(name, 0.0) for name, value in components.items())


def weighted_fraction(factors: Iterable[Tuple[float, bool]]) -> int:
    """Matched weight over total weight, as a rounded percentage.

    Args:
        factors: (weight, matched) pairs

    Returns:
        0-100, or 0 when the total weight is 0
    """
    total = 0.0
    matched = 0.0
    for weight, is_matched in factors:
        total += weight
        if is_matched:
            matched += weight
    if total <= 0:
        return 0
    return round_half_up(matched / total * 100)


def rank_and_cap(
    items: Sequence[T],
    score_of: Callable[[T], int],
    category_of: Callable[[T], Hashable],
    cap_of: Callable[[Hashable], int],
    counts_if: Callable[[T], bool] = lambda _: True,
) -> Tuple[int, List[RankedEntry]]:
    """Sum the best-scoring items of each category up to its cap.

    Items are walked in descending score order (stable for ties). An item
    counts only when its category has not reached its cap and it passes
    ``counts_if``. Items that do not count consume no cap slot.

    Returns:
        (total, entries) with entries in the walk order
    """
    ordered = sorted(items, key=score_of, reverse=True)
    used: Dict[Hashable, int] = {}
    total = 0
    entries: List[RankedEntry] = []

    for item in ordered:
        score = score_of(item)
        category = category_of(item)
        within_cap = used.get(category, 0) < cap_of(category)
        eligible = counts_if(item)

        adjustments: Tuple[Tuple[str, int], ...] = ()
        if not within_cap:
            adjustments = ((CAP_EXCEEDED, -score),)
        elif not eligible:
            adjustments = ((UNVERIFIED, -score),)

        counted = within_cap and eligible
        if counted:
            total += score
            used[category] = used.get(category, 0) + 1

        entries.append(
            RankedEntry(
                item=item,
                base_score=score,
                final_score=score if counted else 0,
                counted=counted,
                adjustments=adjustments,
            )
        )

    return total, entries
