"""Points packages sold over the counter or online, with promotional bonuses."""

from typing import Any

CURRENCY = "SAR"

# package size -> (bonus points, marketing tag)
PACKAGE_BONUSES: dict[int, tuple[int, str]] = {
    100: (20, "Special offer"),
    300: (35, "Save more"),
    500: (50, "Most popular"),
    1000: (100, "Best value"),
}

PACKAGE_SIZES: tuple[int, ...] = (
    *range(10, 210, 10),
    250,
    *range(300, 500, 50),
    *range(500, 1000, 50),
    1000,
)

MIN_PACKAGE_POINTS = 10
MAX_PACKAGE_POINTS = 1000


def bonus_for_package(package_points: int) -> int:
    bonus, _ = PACKAGE_BONUSES.get(package_points, (0, ""))
    return bonus


def describe_package(points: int, price: float | None = None) -> dict[str, Any]:
    price = float(points if price is None else price)
    bonus, tag = PACKAGE_BONUSES.get(points, (0, None))
    total = points + bonus
    out: dict[str, Any] = {
        "points": points,
        "price": price,
        "bonus": bonus,
        "popular": bonus > 0,
        "total_points": total,
        "savings": f"{round(bonus / points * 100)}%" if bonus else None,
        "price_per_point": f"{price / total:.2f}",
    }
    if tag:
        out["tag"] = tag
    return out


def list_packages() -> list[dict[str, Any]]:
    return [describe_package(size) for size in PACKAGE_SIZES]
