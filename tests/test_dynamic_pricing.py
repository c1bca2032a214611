# tests/test_dynamic_pricing.py
import asyncio
from datetime import datetime, timedelta

import pytest

from market_price.cache import ResultCache
from market_price.dynamic_pricing import (
    NO_DATA_REASON,
    DynamicPriceCalculator,
    compare_with_competitors,
    competition_factor,
    confidence_for,
    count_nearby_competitors,
    demand_factor_from_hotspots,
    determine_action,
    determine_urgency,
    find_competitors,
    impulse_suggestions,
    position_for,
    quality_factor,
    seasonal_factor,
    time_of_day_factor,
)
from market_price.models import Listing

# a mid-January afternoon: no seasonal or time-of-day effect for most categories
FIXED_NOW = datetime(2026, 1, 14, 14, 30)


def fixed_clock():
    return FIXED_NOW


class FakeDemandEstimator:
    def __init__(self, result=None, error=None, delay=0):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls = []

    async def get_demand_hotspots(self, lat, lng, radius_km=10, hours=24):
        self.calls.append((lat, lng, radius_km, hours))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.result


class BrokenSession:
    def __init__(self):
        self.rollbacks = 0

    async def execute(self, *args, **kwargs):
        raise RuntimeError("database unavailable")

    async def rollback(self):
        self.rollbacks += 1


class FailingOnceSession:
    """Real session whose n-th statement fails, like an aborted transaction."""

    def __init__(self, session, fail_on):
        self.session = session
        self.fail_on = fail_on
        self.statements = 0
        self.rollbacks = 0

    async def execute(self, *args, **kwargs):
        self.statements += 1
        if self.statements == self.fail_on:
            raise RuntimeError("current transaction is aborted")
        return await self.session.execute(*args, **kwargs)

    async def rollback(self):
        self.rollbacks += 1
        await self.session.rollback()

    def __getattr__(self, name):
        return getattr(self.session, name)


def hotspots(category, score):
    return {"success": True, "data": {"hotspots": [{"top_categories": [category], "demand_score": score}]}}


@pytest.fixture
def calculator():
    return DynamicPriceCalculator(cache=ResultCache(), clock=fixed_clock)


@pytest.mark.parametrize("category,month,expected", [
    ("berries", 6, 1.0),
    ("berries", 1, 1.3),
    ("farmer-berries", 12, 1.3),
    ("flowers", 3, 1.15),
    ("honey", 8, 0.95),
    ("odezhda", 6, 1.0),
    (None, 6, 1.0),
])
def test_seasonal_factor(category, month, expected):
    assert seasonal_factor(category, month) == expected


@pytest.mark.parametrize("category,hour,expected", [
    ("bakery", 6, 1.15),
    ("bakery", 11, 1.15),
    ("bakery", 12, 1.0),
    ("farmer-bakery", 19, 0.9),
    ("flowers", 8, 1.1),
    ("berries", 21, 0.95),
    ("bakery", 22, 1.0),
    ("odezhda", 8, 1.0),
])
def test_time_of_day_factor(category, hour, expected):
    assert time_of_day_factor(category, hour) == expected


def test_quality_factor_bounds():
    poor = Listing(photo_count=0, description="", title="Jacket")
    rich = Listing(photo_count=8, description="x" * 250, title="Warm winter jacket, barely worn, size M",
                   contact_phone="+375291234567")
    average = Listing(photo_count=3, description="x" * 120, title="Winter jacket size M")
    assert quality_factor(poor) == 0.85
    assert quality_factor(rich) == 1.15
    assert quality_factor(average) == pytest.approx(1.05)


def test_competition_factor_is_non_increasing():
    values = [competition_factor(n) for n in range(0, 40)]
    assert values == sorted(values, reverse=True)
    assert competition_factor(0) == 1.15
    assert competition_factor(5) == 1.08
    assert competition_factor(10) == 1.0
    assert competition_factor(20) == 0.95
    assert competition_factor(21) == 0.9


def test_position_thresholds():
    assert position_for(900, 1000) == "low"
    assert position_for(901, 1000) == "optimal"
    assert position_for(1149, 1000) == "optimal"
    assert position_for(1150, 1000) == "high"
    assert position_for(1000, None) == "unknown"


def test_confidence_range_and_monotonicity():
    for demand in (1.0, 1.2):
        values = [confidence_for(n, demand) for n in range(0, 120)]
        assert all(0.5 <= v <= 0.95 for v in values)
        assert values == sorted(values)
    assert confidence_for(5, 1.0) == 0.65
    assert confidence_for(50, 1.2) == 0.95


def test_demand_factor_from_hotspots():
    assert demand_factor_from_hotspots(hotspots("odezhda", 100), "odezhda") == pytest.approx(1.2)
    assert demand_factor_from_hotspots(hotspots("odezhda", 500), "odezhda") == 1.3
    assert demand_factor_from_hotspots(hotspots("odezhda", -100), "odezhda") == 0.9
    assert demand_factor_from_hotspots(hotspots("obuv", 100), "odezhda") == 1.0
    assert demand_factor_from_hotspots({"success": False}, "odezhda") == 1.0


def test_demand_factor_reads_camel_case_hotspots():
    result = {"success": True, "data": {"hotspots": [{"topCategories": ["odezhda"], "demandScore": 100}]}}
    assert demand_factor_from_hotspots(result, "odezhda") == pytest.approx(1.2)


def test_impulse_suggestions():
    raise_now = impulse_suggestions("optimal", 1.2, 1.0)
    assert [(i.type, i.urgency) for i in raise_now] == [("raise", "high")]

    assert [i.type for i in impulse_suggestions("low", 1.0, 1.15)] == ["timing", "raise"]
    assert [i.type for i in impulse_suggestions("high", 0.95, 1.0)] == ["lower"]
    assert impulse_suggestions("high", 1.2, 1.0) == []


async def test_price_above_market(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5)
    subject = await make_listing(price=1500, photo_count=0, description="", title="Jacket")

    result = await calculator.calculate_price(db, subject)

    assert result.success
    assert result.has_market_data
    assert result.position == "high"
    assert result.diff_percent == 50.0
    assert result.reasons[0] == "Your price is 50% above market"
    assert "Add photos to justify a higher price" in result.reasons
    assert result.factors.quality == 0.85
    assert result.recommended == 850
    assert result.market_avg == 1000
    assert result.sample_size == 5
    assert result.window_days == 7
    assert result.confidence == 0.65


async def test_no_market_data_is_a_valid_outcome(db, calculator, make_listing):
    subject = await make_listing(price=1000)

    result = await calculator.calculate_price(db, subject)

    assert result.success
    assert result.has_market_data is False
    assert result.reasons == [NO_DATA_REASON]
    assert result.position == "unknown"
    assert len(calculator.cache) == 0


async def test_repeated_calls_are_served_from_cache(db, calculator, make_listing, make_listings):
    comparables = await make_listings([1000] * 5)
    subject = await make_listing(price=1100)

    first = await calculator.calculate_price(db, subject)
    for listing in comparables:
        await db.delete(listing)
    await db.commit()
    second = await calculator.calculate_price(db, subject)

    assert second.model_dump_json() == first.model_dump_json()


async def test_store_failure_is_reported_not_raised(calculator):
    listing = Listing(id=42, category_id="odezhda", price=1000)

    session = BrokenSession()

    result = await calculator.calculate_price(session, listing)

    assert result.success is False
    assert session.rollbacks == 1
    assert result.error == "database unavailable"
    assert result.recommended is None


async def test_listing_without_id_is_rejected(db, calculator):
    with pytest.raises(ValueError):
        await calculator.calculate_price(db, Listing(category_id="odezhda", price=1000))


async def test_demand_estimator_raises_price(db, make_listing, make_listings):
    await make_listings([1000] * 5)
    subject = await make_listing(price=1000, lat=53.9, lng=27.56, photo_count=3,
                                 description="x" * 100, title="Winter jacket size M")
    estimator = FakeDemandEstimator(result=hotspots("odezhda", 100))
    calculator = DynamicPriceCalculator(cache=ResultCache(), demand_estimator=estimator, clock=fixed_clock)

    result = await calculator.calculate_price(db, subject)

    assert estimator.calls == [(53.9, 27.56, 5, 24)]
    assert result.factors.demand == 1.2
    assert "High demand in your area" in result.reasons
    assert result.impulse_suggestions[0].type == "raise"
    assert result.confidence == 0.75


async def test_demand_failure_is_neutral():
    listing = Listing(id=1, category_id="odezhda", lat=53.9, lng=27.56)
    calculator = DynamicPriceCalculator(
        cache=ResultCache(), demand_estimator=FakeDemandEstimator(error=ConnectionError("down")))
    assert await calculator.demand_factor(listing) == 1.0


async def test_slow_demand_estimator_is_neutral():
    listing = Listing(id=1, category_id="odezhda", lat=53.9, lng=27.56)
    calculator = DynamicPriceCalculator(
        cache=ResultCache(),
        demand_estimator=FakeDemandEstimator(result=hotspots("odezhda", 100), delay=1),
        demand_timeout=0.01,
    )
    assert await calculator.demand_factor(listing) == 1.0


async def test_demand_skipped_without_location():
    estimator = FakeDemandEstimator(result=hotspots("odezhda", 100))
    calculator = DynamicPriceCalculator(cache=ResultCache(), demand_estimator=estimator)
    assert await calculator.demand_factor(Listing(id=1, category_id="odezhda")) == 1.0
    assert estimator.calls == []


async def test_nearby_competitors_within_radius(db, make_listing):
    subject = await make_listing(lat=53.900, lng=27.560)
    await make_listing(lat=53.905, lng=27.560)
    await make_listing(lat=53.900, lng=27.570)
    await make_listing(lat=53.910, lng=27.565)
    await make_listing(lat=54.000, lng=27.560)  # ~11 km away
    await make_listing(lat=53.901, lng=27.560, category_id="obuv")
    await make_listing(lat=53.901, lng=27.560, status="archived")

    assert await count_nearby_competitors(db, subject) == 3


async def test_competition_factor_in_calculation(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5, lat=53.901, lng=27.561)
    subject = await make_listing(price=1000, lat=53.900, lng=27.560)

    result = await calculator.calculate_price(db, subject)

    assert result.factors.competition == 1.08


async def test_recalculate_for_seller(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5, seller_id=1)
    await make_listing(price=1200, seller_id=2)
    await make_listing(price=800, seller_id=2, status="archived")

    result = await calculator.recalculate_for_seller(db, 2)

    assert result.success
    assert result.count == 1
    assert result.listings[0].current_price == 1200
    assert result.listings[0].recommendation.position == "high"


async def test_failed_listing_does_not_poison_the_rest(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5, seller_id=1)
    await make_listing(price=1200, seller_id=2, age_days=2)
    await make_listing(price=800, seller_id=2, age_days=1)
    session = FailingOnceSession(db, fail_on=2)

    result = await calculator.recalculate_for_seller(session, 2)

    assert session.rollbacks == 1
    assert result.count == 2
    assert [item.recommendation.success for item in result.listings] == [False, True]
    assert result.listings[0].current_price == 800
    assert result.listings[1].recommendation.position == "high"


async def test_cached_result_is_not_shared_with_callers(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5)
    subject = await make_listing(price=1500)

    first = await calculator.calculate_price(db, subject)
    first.reasons.append("edited by caller")
    first.recommended = 1
    second = await calculator.calculate_price(db, subject)

    assert "edited by caller" not in second.reasons
    assert second.recommended != 1


@pytest.mark.parametrize("current,recommended,expected", [
    (1000, 1100, "raise"),
    (1000, 1050, "keep"),
    (1000, 940, "lower"),
    (1000, None, "keep"),
])
def test_determine_action(current, recommended, expected):
    assert determine_action(current, recommended) == expected


@pytest.mark.parametrize("diff,demand,expected", [
    (25, 1.0, "high"),
    (0, 1.25, "high"),
    (-15, 1.0, "medium"),
    (5, 1.15, "medium"),
    (5, 1.0, "low"),
    (None, None, "low"),
])
def test_determine_urgency(diff, demand, expected):
    assert determine_urgency(diff, demand) == expected


async def test_analyze_listing(db, calculator, make_listing, make_listings):
    await make_listings([1000] * 5)
    subject = await make_listing(price=1500)

    analysis = await calculator.analyze_listing(db, subject)

    assert analysis.listing_id == subject.id
    assert analysis.current_price == 1500
    assert analysis.recommended_price == analysis.recommendation.recommended
    assert analysis.price_change == analysis.recommended_price - 1500
    assert analysis.action == "lower"
    assert analysis.market_position == "above_market"
    assert analysis.urgency == "high"
    assert analysis.potential_buyers == 5
    assert analysis.reasoning.startswith("Your price is 50% above market")
    assert analysis.market_trend.trend == "stable"
    assert analysis.valid_until == FIXED_NOW + timedelta(hours=1)


async def test_analyze_listing_without_market_data(db, calculator, make_listing):
    subject = await make_listing(price=1000)

    analysis = await calculator.analyze_listing(db, subject)

    assert analysis.recommended_price == 1000
    assert analysis.price_change == 0
    assert analysis.action == "keep"
    assert analysis.confidence == 0.5
    assert analysis.market_position == "fair_price"
    assert analysis.potential_buyers == 0


async def test_find_competitors_sorted_and_limited(db, make_listing):
    subject = await make_listing(price=1000, lat=53.900, lng=27.560)
    for price in (1500, 900, 1200):
        await make_listing(price=price, lat=53.905, lng=27.560)
    await make_listing(price=100, lat=54.000, lng=27.560)  # ~11 km away
    await make_listing(price=0, lat=53.901, lng=27.560)

    rivals = await find_competitors(db, subject, radius_km=5, limit=2)

    assert [float(r.price) for r in rivals] == [900, 1200]


async def test_compare_with_competitors(db, make_listing, make_listings):
    subject = await make_listing(price=1000)
    await make_listings([800, 900, 1300])

    comparison = await compare_with_competitors(db, subject)

    assert comparison.competitors_count == 3
    assert comparison.avg_price == 1000
    assert comparison.min_price == 800
    assert comparison.max_price == 1300
    assert comparison.price_position == "equal"
    assert [c.price for c in comparison.competitors] == [800, 900, 1300]


async def test_compare_without_competitors(db, make_listing):
    subject = await make_listing(price=1000)

    comparison = await compare_with_competitors(db, subject)

    assert comparison.competitors_count == 0
    assert comparison.avg_price is None
    assert comparison.price_position == "unknown"
