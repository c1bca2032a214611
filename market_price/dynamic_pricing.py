# market_price/dynamic_pricing.py
"""Dynamic price recommendations.

The market average from `market_stats` is scaled by five independent
multipliers (season, time of day, local demand, listing quality, local
competition). The result comes with a position for the current price, a
confidence score, short reasons and a few "act now" suggestions.
"""
import asyncio
import math
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from .cache import ResultCache
from .comparables import Subject
from .demand import DEMAND_TIMEOUT_SECONDS, DemandEstimator
from .market_stats import diff_from_average, get_market_stats
from .models import Listing
from .schemas import (
    Competitor,
    CompetitorComparison,
    ImpulseSuggestion,
    MarketTrend,
    PriceAnalysis,
    PriceFactors,
    PriceRecommendation,
    SellerListingPrice,
    SellerRecalculation,
)
from .trends import get_market_trend
from .utils import EARTH_RADIUS_KM, haversine_km, logger, round_half_up

NO_DATA_REASON = "Insufficient data for market analysis"

# category -> (peak months, peak multiplier, off-peak multiplier)
SEASON_PEAKS = {
    "berries": ((5, 6, 7, 8), 1.0, 1.3),
    "vegetables": ((6, 7, 8, 9), 1.0, 1.2),
    "fruits": ((7, 8, 9, 10), 1.0, 1.25),
    "flowers": ((2, 3, 4, 5), 1.15, 1.0),
    "honey": ((7, 8, 9), 0.95, 1.1),
    "mushrooms": ((8, 9, 10), 0.95, 1.2),
}
SEASON_PEAKS.update({f"farmer-{k}": v for k, v in list(SEASON_PEAKS.items())})

# category -> (morning multiplier, evening multiplier)
TIME_OF_DAY_MODIFIERS = {
    "bakery": (1.15, 0.9),
    "flowers": (1.1, 0.95),
    "berries": (1.1, 0.95),
}
TIME_OF_DAY_MODIFIERS.update({f"farmer-{k}": v for k, v in list(TIME_OF_DAY_MODIFIERS.items())})
MORNING_HOURS = range(6, 12)
EVENING_HOURS = range(18, 22)

DEMAND_RADIUS_KM = 5
DEMAND_HOURS = 24
DEMAND_BOUNDS = (0.9, 1.3)
QUALITY_BOUNDS = (0.85, 1.15)

COMPETITION_RADIUS_KM = 3
# (max nearby competitors, multiplier)
COMPETITION_BUCKETS = ((2, 1.15), (5, 1.08), (10, 1.0), (20, 0.95))
CROWDED_MARKET_MULTIPLIER = 0.9

LOW_POSITION_PERCENT = -10
HIGH_POSITION_PERCENT = 15
MAX_CONFIDENCE = 0.95

COMPARE_RADIUS_KM = 5
COMPARE_LIMIT = 10
ACTION_THRESHOLD_PERCENT = 5
ANALYSIS_VALID_FOR = timedelta(hours=1)
MARKET_POSITIONS = {"low": "below_market", "high": "above_market"}
ACTION_REASONING = {
    "raise": "Raise the price to earn more",
    "lower": "Lower the price to sell faster",
    "keep": "Your price suits the current market",
}


def _clamp(value, bounds):
    low, high = bounds
    return min(max(value, low), high)


def seasonal_factor(category_id, month: int) -> float:
    config = SEASON_PEAKS.get(category_id or "")
    if not config:
        return 1.0
    months, peak, off_peak = config
    return peak if month in months else off_peak


def time_of_day_factor(category_id, hour: int) -> float:
    config = TIME_OF_DAY_MODIFIERS.get(category_id or "")
    if not config:
        return 1.0
    morning, evening = config
    if hour in MORNING_HOURS:
        return morning
    if hour in EVENING_HOURS:
        return evening
    return 1.0


def demand_factor_from_hotspots(result, category_id) -> float:
    if not result or not result.get("success"):
        return 1.0
    hotspots = (result.get("data") or {}).get("hotspots") or []
    # the estimator service speaks camelCase; in-process estimators may not
    matching = [h for h in hotspots
                if category_id in (h.get("top_categories") or h.get("topCategories") or [])]
    if not matching:
        return 1.0
    avg_demand = sum(h.get("demand_score", h.get("demandScore")) or 0 for h in matching) / len(matching)
    return _clamp(1 + avg_demand / 100 * 0.2, DEMAND_BOUNDS)


def quality_factor(listing) -> float:
    score = 1.0

    photos = listing.photo_count or 0
    if photos == 0:
        score -= 0.1
    elif photos >= 5:
        score += 0.1
    elif photos >= 3:
        score += 0.05

    description = len(listing.description or "")
    if description < 50:
        score -= 0.05
    elif description >= 200:
        score += 0.05

    title = len(listing.title or "")
    if title < 10:
        score -= 0.03
    elif 30 <= title <= 80:
        score += 0.02

    if listing.contact_name or listing.contact_phone:
        score += 0.02

    return _clamp(score, QUALITY_BOUNDS)


def competition_factor(nearby_count: int) -> float:
    for max_count, multiplier in COMPETITION_BUCKETS:
        if nearby_count <= max_count:
            return multiplier
    return CROWDED_MARKET_MULTIPLIER


def position_for(price, avg) -> str:
    if not price or not avg:
        return "unknown"
    diff = diff_from_average(price, avg)
    if diff <= LOW_POSITION_PERCENT:
        return "low"
    if diff >= HIGH_POSITION_PERCENT:
        return "high"
    return "optimal"


def confidence_for(sample_size: int, demand: float) -> float:
    confidence = 0.5
    if sample_size >= 50:
        confidence += 0.3
    elif sample_size >= 20:
        confidence += 0.2
    elif sample_size >= 10:
        confidence += 0.1
    elif sample_size >= 5:
        confidence += 0.05
    if demand > 1.1:
        confidence += 0.1
    confidence += 0.1
    return round_half_up(min(confidence, MAX_CONFIDENCE), 2)


def build_reasons(listing, position, diff_percent, seasonal, time_of_day, demand, quality, competition):
    reasons = []

    if position == "high":
        reasons.append(f"Your price is {round_half_up(diff_percent)}% above market")
    elif position == "low":
        reasons.append(f"Your price is {round_half_up(abs(diff_percent))}% below market")
    else:
        reasons.append("Your price matches the market")

    if demand >= 1.1:
        reasons.append("High demand in your area")
    elif demand < 0.95:
        reasons.append("Demand in your area is below average")

    if competition >= 1.1:
        reasons.append("Few competitors nearby, there is room to raise the price")
    elif competition < 0.95:
        reasons.append("Many competitors nearby, a competitive price matters")

    if seasonal > 1.05:
        reasons.append("Seasonal conditions support a higher price")
    elif seasonal < 0.95:
        reasons.append("Seasonal conditions call for a lower price")

    if time_of_day > 1.05:
        reasons.append("Good time to sell: morning hours")
    elif time_of_day < 0.95:
        reasons.append("Evening hours: demand is lower")

    if quality < 0.95:
        if not listing.photo_count:
            reasons.append("Add photos to justify a higher price")
        if len(listing.description or "") < 100:
            reasons.append("Expand the description to make the listing more attractive")

    return reasons


def impulse_suggestions(position, demand, time_of_day):
    impulses = []
    if demand >= 1.15 and position != "high":
        impulses.append(ImpulseSuggestion(
            type="raise", urgency="high",
            message="Demand is up: you can raise the price by 10-15%", icon="trending_up"))
    if time_of_day > 1.1:
        impulses.append(ImpulseSuggestion(
            type="timing", urgency="medium",
            message="Peak selling hours right now", icon="schedule"))
    if position == "low" and demand >= 1.0:
        impulses.append(ImpulseSuggestion(
            type="raise", urgency="medium",
            message="Your price is below market: you can raise it", icon="attach_money"))
    if position == "high" and demand < 1.0:
        impulses.append(ImpulseSuggestion(
            type="lower", urgency="medium",
            message="The market has cooled: consider lowering the price", icon="trending_down"))
    return impulses


def determine_action(current_price, recommended) -> str:
    if not recommended or not current_price:
        return "keep"
    change = (recommended - current_price) / current_price * 100
    if change > ACTION_THRESHOLD_PERCENT:
        return "raise"
    if change < -ACTION_THRESHOLD_PERCENT:
        return "lower"
    return "keep"


def determine_urgency(diff_percent, demand) -> str:
    diff = abs(diff_percent or 0)
    demand = demand or 1.0
    if diff > 20 or demand > 1.2:
        return "high"
    if diff > 10 or demand > 1.1:
        return "medium"
    return "low"


def _bounding_box(listing, radius_km):
    dlat = math.degrees(radius_km / EARTH_RADIUS_KM)
    dlng = dlat / max(math.cos(math.radians(listing.lat)), 0.01)
    return [
        Listing.lat.between(listing.lat - dlat, listing.lat + dlat),
        Listing.lng.between(listing.lng - dlng, listing.lng + dlng),
    ]


def _same_category_rivals(listing):
    return [
        Listing.category_id == listing.category_id,
        Listing.status == "active",
        Listing.moderation_status == "approved",
        Listing.id != listing.id,
    ]


async def count_nearby_competitors(db: AsyncSession, listing, radius_km: float = COMPETITION_RADIUS_KM) -> int:
    # bounding box in SQL, exact great-circle distance in Python
    rows = await db.execute(
        select(Listing.lat, Listing.lng).where(and_(*_same_category_rivals(listing), *_bounding_box(listing, radius_km)))
    )
    return sum(1 for lat, lng in rows if haversine_km(listing.lat, listing.lng, lat, lng) <= radius_km)


async def find_competitors(db: AsyncSession, listing, radius_km: float = COMPARE_RADIUS_KM,
                           limit: int = COMPARE_LIMIT):
    """Cheapest priced rivals in the category, within `radius_km` when the listing has a location."""
    conds = _same_category_rivals(listing) + [Listing.price > 0]
    located = listing.lat is not None and listing.lng is not None
    query = select(Listing).order_by(Listing.price.asc(), Listing.id.asc())
    if located:
        conds += _bounding_box(listing, radius_km)
    else:
        query = query.limit(limit)
    rivals = (await db.execute(query.where(and_(*conds)))).scalars().all()
    if located:
        rivals = [r for r in rivals if haversine_km(listing.lat, listing.lng, r.lat, r.lng) <= radius_km][:limit]
    return rivals


async def compare_with_competitors(db: AsyncSession, listing, radius_km: float = COMPARE_RADIUS_KM,
                                   limit: int = COMPARE_LIMIT) -> CompetitorComparison:
    current_price = float(listing.price or 0)
    rivals = await find_competitors(db, listing, radius_km, limit)
    prices = [float(r.price) for r in rivals]

    avg = round_half_up(sum(prices) / len(prices)) if prices else None
    if not avg:
        position = "unknown"
    elif current_price > avg:
        position = "above"
    elif current_price < avg:
        position = "below"
    else:
        position = "equal"

    return CompetitorComparison(
        listing_id=listing.id,
        current_price=current_price,
        competitors_count=len(rivals),
        avg_price=avg,
        min_price=min(prices) if prices else None,
        max_price=max(prices) if prices else None,
        price_position=position,
        competitors=[
            Competitor(listing_id=r.id, title=r.title, price=float(r.price),
                       photo_count=r.photo_count, created_at=r.created_at)
            for r in rivals
        ],
    )


class DynamicPriceCalculator:
    """Computes and memoizes price recommendations per listing id."""

    def __init__(self, cache: ResultCache = None, demand_estimator: Optional[DemandEstimator] = None,
                 clock: Callable[[], datetime] = datetime.now, demand_timeout: float = DEMAND_TIMEOUT_SECONDS):
        self.cache = cache if cache is not None else ResultCache()
        self.demand_estimator = demand_estimator
        self.clock = clock
        self.demand_timeout = demand_timeout

    async def calculate_price(self, db: AsyncSession, listing) -> PriceRecommendation:
        if listing is None or listing.id is None:
            raise ValueError("listing id is required")

        listing_id = listing.id
        cached = self.cache.get(listing_id)
        if cached is not None:
            return cached.model_copy(deep=True)

        try:
            result = await self._calculate(db, listing)
        except Exception as e:
            logger.exception("Price calculation failed for listing %s: %s", listing_id, e)
            await self._rollback(db, listing_id)
            return PriceRecommendation(success=False, error=str(e))

        if result.has_market_data:
            self.cache.set(listing_id, result.model_copy(deep=True))
        return result

    async def _rollback(self, db, listing_id):
        # a failed statement leaves the transaction unusable for the next listing
        try:
            await db.rollback()
        except Exception as e:
            logger.warning("Rollback after failed calculation for listing %s failed: %r", listing_id, e)

    async def _calculate(self, db, listing) -> PriceRecommendation:
        stats = await get_market_stats(db, Subject.from_listing(listing))
        if not stats.has_market_data:
            return PriceRecommendation(has_market_data=False, reasons=[NO_DATA_REASON])

        now = self.clock()
        seasonal = seasonal_factor(listing.category_id, now.month)
        time_of_day = time_of_day_factor(listing.category_id, now.hour)
        demand = await self.demand_factor(listing)
        quality = quality_factor(listing)
        competition = await self.competition_factor(db, listing)

        avg = stats.avg_price
        price = float(listing.price)
        position = position_for(price, avg)
        diff = diff_from_average(price, avg) or 0.0

        return PriceRecommendation(
            has_market_data=True,
            recommended=round_half_up(avg * seasonal * time_of_day * demand * quality * competition),
            market_min=stats.min_price,
            market_max=stats.max_price,
            market_avg=avg,
            median_price=stats.median_price,
            position=position,
            confidence=confidence_for(stats.count, demand),
            diff_percent=round_half_up(diff, 1),
            reasons=build_reasons(listing, position, diff, seasonal, time_of_day, demand, quality, competition),
            factors=PriceFactors(
                seasonal=round_half_up(seasonal, 2),
                time_of_day=round_half_up(time_of_day, 2),
                demand=round_half_up(demand, 2),
                quality=round_half_up(quality, 2),
                competition=round_half_up(competition, 2),
            ),
            sample_size=stats.count,
            window_days=stats.window_days,
            impulse_suggestions=impulse_suggestions(position, demand, time_of_day),
        )

    async def demand_factor(self, listing) -> float:
        if self.demand_estimator is None or listing.lat is None or listing.lng is None:
            return 1.0
        try:
            result = await asyncio.wait_for(
                self.demand_estimator.get_demand_hotspots(
                    lat=listing.lat, lng=listing.lng, radius_km=DEMAND_RADIUS_KM, hours=DEMAND_HOURS),
                timeout=self.demand_timeout,
            )
            return demand_factor_from_hotspots(result, listing.category_id)
        except Exception as e:
            logger.warning("Demand estimate unavailable for listing %s: %r", listing.id, e)
            return 1.0

    async def competition_factor(self, db, listing) -> float:
        if listing.lat is None or listing.lng is None:
            return 1.0
        try:
            nearby = await count_nearby_competitors(db, listing)
        except Exception as e:
            logger.warning("Competition count failed for listing %s: %r", listing.id, e)
            return 1.0
        return competition_factor(nearby)

    async def analyze_listing(self, db: AsyncSession, listing) -> PriceAnalysis:
        """Recommendation plus the seller-facing verdict: what to do, how urgently, where the market goes."""
        # read before calculating; a failed calculation rolls the session back
        listing_id, title, category_id = listing.id, listing.title, listing.category_id
        lat, lng = listing.lat, listing.lng
        current_price = float(listing.price or 0)

        recommendation = await self.calculate_price(db, listing)
        try:
            trend = await get_market_trend(db, category_id, lat, lng, 7)
        except Exception as e:
            logger.warning("Market trend unavailable for listing %s: %r", listing_id, e)
            await self._rollback(db, listing_id)
            trend = MarketTrend(trend="unknown")

        recommended = recommendation.recommended or current_price
        change = recommended - current_price
        demand = recommendation.factors.demand if recommendation.factors else 1.0
        action = determine_action(current_price, recommendation.recommended)

        return PriceAnalysis(
            listing_id=listing_id,
            title=title,
            current_price=current_price,
            recommended_price=recommended,
            price_change=change,
            percent_change=round_half_up(change / current_price * 100, 1) if current_price > 0 else 0.0,
            action=action,
            confidence=recommendation.confidence or 0.5,
            reasoning=". ".join(recommendation.reasons) if recommendation.reasons else ACTION_REASONING[action],
            market_position=MARKET_POSITIONS.get(recommendation.position, "fair_price"),
            potential_buyers=round_half_up((recommendation.sample_size or 0) * demand),
            urgency=determine_urgency(recommendation.diff_percent, demand),
            valid_until=self.clock() + ANALYSIS_VALID_FOR,
            market_trend=trend,
            recommendation=recommendation,
        )

    async def recalculate_for_seller(self, db: AsyncSession, seller_id: int, limit: int = 50) -> SellerRecalculation:
        try:
            rows = await db.execute(
                select(Listing)
                .where(and_(
                    Listing.seller_id == seller_id,
                    Listing.status == "active",
                    Listing.moderation_status == "approved",
                ))
                .order_by(Listing.created_at.desc())
                .limit(limit)
            )
            listings = rows.scalars().all()
        except Exception as e:
            logger.exception("Loading listings for seller %s failed: %s", seller_id, e)
            return SellerRecalculation(success=False, error=str(e))
        # detached, so a rollback after one failed listing does not expire the rest
        for listing in listings:
            db.expunge(listing)

        items = []
        for listing in listings:
            items.append(SellerListingPrice(
                listing_id=listing.id,
                title=listing.title,
                current_price=float(listing.price) if listing.price is not None else None,
                recommendation=await self.calculate_price(db, listing),
            ))
        return SellerRecalculation(count=len(items), listings=items)

    def clear_cache(self):
        self.cache.clear()
