import pytest

from app.services.tiers import classify_tier, points_to_next_tier


@pytest.mark.parametrize(
    "total,tier",
    [
        (0, "bronze"),
        (499, "bronze"),
        (500, "silver"),
        (1499, "silver"),
        (1500, "gold"),
        (4999, "gold"),
        (5000, "platinum"),
        (120000, "platinum"),
    ],
)
def test_classify_tier_boundaries(total, tier):
    assert classify_tier(total) == tier


def test_points_to_next_tier():
    assert points_to_next_tier("bronze", 120) == 380
    assert points_to_next_tier("silver", 500) == 1000
    assert points_to_next_tier("gold", 4999) == 1
    assert points_to_next_tier("platinum", 9000) == 0


def test_points_to_next_tier_never_negative():
    # tier can lag total when a stale document is inspected
    assert points_to_next_tier("bronze", 800) == 0
