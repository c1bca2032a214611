# market_price/trends.py
"""Category-level market trend and the analytics summary built around it."""
import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from .demand import DemandEstimator, SeasonalTrendEstimator
from .models import Listing
from .schemas import MarketAnalytics, MarketTrend, TimingInfo
from .utils import as_utc, haversine_km, logger, round_half_up, utcnow

TREND_RADIUS_KM = 10
TREND_THRESHOLD_PERCENT = 5


async def get_market_trend(db: AsyncSession, category_id: str, lat: float = None, lng: float = None,
                           days: int = 7, radius_km: float = TREND_RADIUS_KM, now=None) -> MarketTrend:
    """Compare average asking prices in the first and second half of the period."""
    now = now or utcnow()
    since = now - timedelta(days=days)
    midpoint = now - timedelta(days=days / 2)

    rows = await db.execute(
        select(Listing.price, Listing.lat, Listing.lng, Listing.created_at).where(and_(
            Listing.category_id == category_id,
            Listing.status == "active",
            Listing.moderation_status == "approved",
            Listing.price > 0,
            Listing.created_at >= since,
        ))
    )

    first, second = [], []
    for price, item_lat, item_lng, created_at in rows:
        if lat is not None and lng is not None:
            if item_lat is None or item_lng is None or haversine_km(lat, lng, item_lat, item_lng) > radius_km:
                continue
        (first if as_utc(created_at) < midpoint else second).append(float(price))

    if not first or not second:
        return MarketTrend(trend="stable", change_percent=0.0)

    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    change = (second_avg - first_avg) / first_avg * 100

    trend = "stable"
    if change >= TREND_THRESHOLD_PERCENT:
        trend = "rising"
    elif change <= -TREND_THRESHOLD_PERCENT:
        trend = "falling"

    return MarketTrend(
        trend=trend,
        change_percent=round_half_up(change, 1),
        first_period_avg=round_half_up(first_avg),
        second_period_avg=round_half_up(second_avg),
    )


async def get_market_analytics(
    db: AsyncSession,
    category_id: str,
    lat: float = None,
    lng: float = None,
    radius_km: float = TREND_RADIUS_KM,
    demand_estimator: Optional[DemandEstimator] = None,
    seasonal_estimator: Optional[SeasonalTrendEstimator] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> MarketAnalytics:
    async def demand_summary():
        if demand_estimator is None or lat is None or lng is None:
            return None
        result = await demand_estimator.get_demand_hotspots(lat=lat, lng=lng, radius_km=radius_km, hours=24)
        return (result.get("data") or {}).get("summary")

    async def seasonal_trends():
        if seasonal_estimator is None:
            return None
        result = await seasonal_estimator.get_seasonal_trends(lat=lat, lng=lng, radius_km=radius_km)
        return result.get("data")

    demand, trend, seasonal = await asyncio.gather(
        demand_summary(),
        get_market_trend(db, category_id, lat, lng, 7),
        seasonal_trends(),
        return_exceptions=True,
    )
    if isinstance(demand, Exception):
        logger.warning("Demand summary unavailable for %s: %r", category_id, demand)
        demand = None
    if isinstance(trend, Exception):
        logger.warning("Market trend unavailable for %s: %r", category_id, trend)
        trend = MarketTrend(trend="unknown")
    if isinstance(seasonal, Exception):
        logger.warning("Seasonal trends unavailable for %s: %r", category_id, seasonal)
        seasonal = None

    now = clock()
    return MarketAnalytics(
        demand=demand,
        trend=trend,
        seasonal=seasonal,
        timing=TimingInfo(
            current_hour=now.hour,
            is_weekend=now.weekday() >= 5,
            is_morning_peak=7 <= now.hour < 11,
            is_evening_peak=18 <= now.hour < 21,
        ),
    )
