"""Loyalty tier classification from lifetime earned points."""

from typing import Literal

Tier = Literal["bronze", "silver", "gold", "platinum"]

# Upper bound (exclusive) of each tier's lifetime points
TIER_THRESHOLDS: dict[str, int] = {
    "bronze": 500,
    "silver": 1500,
    "gold": 5000,
}


def classify_tier(total: int) -> Tier:
    if total >= TIER_THRESHOLDS["gold"]:
        return "platinum"
    if total >= TIER_THRESHOLDS["silver"]:
        return "gold"
    if total >= TIER_THRESHOLDS["bronze"]:
        return "silver"
    return "bronze"


def points_to_next_tier(tier: str, total: int) -> int:
    """Points still needed to leave the given tier; 0 at platinum."""
    threshold = TIER_THRESHOLDS.get(tier)
    if threshold is None:
        return 0
    return max(0, threshold - total)
