"""Volume pricing for multi-photo purchases.

All amounts are integer cents. The per-photo price never increases as the
count grows; counts past the last tier stay on the last tier.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, TypedDict

from .config import MAX_PHOTOS_PER_CHECKOUT


@dataclass(frozen=True)
class PricingTier:
    min_photos: int
    max_photos: Optional[int]
    price_per_photo: int  # cents

    def covers(self, count: int) -> bool:
        if count < self.min_photos:
            return False
        return self.max_photos is None or count <= self.max_photos

    @property
    def display_price(self) -> str:
        return format_price(self.price_per_photo)


PRICING_TIERS: tuple[PricingTier, ...] = (
    PricingTier(1, 1, 1499),
    PricingTier(2, 2, 1299),
    PricingTier(3, 3, 1166),
    PricingTier(4, 4, 1099),
    PricingTier(5, None, 999),
)


class Savings(TypedDict):
    savings: int
    savings_per_photo: int
    percentage_saved: int


def pricing_tier(count: int) -> Optional[PricingTier]:
    if count <= 0:
        return None
    for tier in PRICING_TIERS:
        if tier.covers(count):
            return tier
    return PRICING_TIERS[-1]


def price_per_photo(count: int) -> int:
    tier = pricing_tier(count)
    return tier.price_per_photo if tier else 0


def total_amount(count: int) -> int:
    if count <= 0:
        return 0
    return price_per_photo(count) * count


def savings(count: int) -> Savings:
    if count <= 1:
        return {"savings": 0, "savings_per_photo": 0, "percentage_saved": 0}
    single = PRICING_TIERS[0].price_per_photo
    per_photo = single - price_per_photo(count)
    return {
        "savings": per_photo * count,
        "savings_per_photo": per_photo,
        "percentage_saved": round(per_photo * 100 / single),
    }


def format_price(cents: int) -> str:
    return f"${cents / 100:.2f}"


def validate_photo_count(count: int) -> bool:
    return 0 < count <= MAX_PHOTOS_PER_CHECKOUT


def quote(count: int) -> dict:
    """Everything the gallery and selection responses show for a count."""
    return {
        "total_selected": max(0, count),
        "price_per_photo": price_per_photo(count),
        "total_price": total_amount(count),
        **savings(count),
    }


def tiers_as_dicts() -> list[dict]:
    return [
        {
            "min_photos": t.min_photos,
            "max_photos": t.max_photos,
            "price_per_photo": t.price_per_photo,
            "display_price": t.display_price,
        }
        for t in PRICING_TIERS
    ]
