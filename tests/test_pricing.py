import pytest

from racephotos import pricing


def test_per_photo_price_never_increases_with_count():
    prices = [pricing.price_per_photo(n) for n in range(1, 151)]
    assert all(b <= a for a, b in zip(prices, prices[1:]))


def test_total_is_non_decreasing_and_exact():
    totals = [pricing.total_amount(n) for n in range(0, 151)]
    assert all(b >= a for a, b in zip(totals, totals[1:]))
    for n in range(0, 151):
        assert pricing.total_amount(n) == pricing.price_per_photo(n) * n


@pytest.mark.parametrize("count,per_photo", [
    (1, 1499), (2, 1299), (3, 1166), (4, 1099), (5, 999), (40, 999),
])
def test_tiers(count, per_photo):
    assert pricing.price_per_photo(count) == per_photo


@pytest.mark.parametrize("count", [0, -1, -20])
def test_non_positive_counts_cost_nothing(count):
    assert pricing.pricing_tier(count) is None
    assert pricing.price_per_photo(count) == 0
    assert pricing.total_amount(count) == 0
    assert pricing.savings(count)["savings"] == 0


def test_five_photos():
    assert pricing.price_per_photo(5) == 999
    assert pricing.total_amount(5) == 4995
    assert pricing.savings(5) == {
        "savings": 2500,
        "savings_per_photo": 500,
        "percentage_saved": 33,
    }


def test_single_photo_has_no_savings():
    assert pricing.savings(1) == {
        "savings": 0, "savings_per_photo": 0, "percentage_saved": 0,
    }


def test_format_price():
    assert pricing.format_price(1499) == "$14.99"
    assert pricing.format_price(0) == "$0.00"
    assert pricing.format_price(100000) == "$1000.00"


def test_validate_photo_count():
    assert not pricing.validate_photo_count(0)
    assert pricing.validate_photo_count(1)
    assert pricing.validate_photo_count(100)
    assert not pricing.validate_photo_count(101)


def test_quote_and_tier_listing():
    q = pricing.quote(3)
    assert q["total_selected"] == 3
    assert q["price_per_photo"] == 1166
    assert q["total_price"] == 3498
    tiers = pricing.tiers_as_dicts()
    assert tiers[0]["display_price"] == "$14.99"
    assert tiers[-1]["max_photos"] is None


def test_pricing_endpoint(client):
    r = client.get("/api/pricing", params={"count": 5})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["total_price"] == 4995
    assert data["display_total"] == "$49.95"
    assert len(data["tiers"]) == 5

    assert client.get("/api/pricing", params={"count": -1}).status_code == 400
