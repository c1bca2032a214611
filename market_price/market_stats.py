# market_price/market_stats.py
"""Market statistics for a single listing or draft.

Walks the subject's relaxation ladder through the windowed aggregator and
turns the first sufficient sample into a `MarketStats` with the listing's
percent difference from the market average and a below/fair/above level.
"""
from typing import Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from .aggregator import DEFAULT_WINDOWS, MIN_SAMPLE_SIZE, collect_with_dynamic_window
from .comparables import Metric, Subject, build_ladder
from .models import Listing
from .schemas import ListingDraft, MarketStats, PriceRange, SellerLabels, SellerMarketData
from .utils import logger, round_half_up

BELOW_MARKET_PERCENT = -5
ABOVE_MARKET_PERCENT = 10
PRICE_BAND = 0.05


def market_level(diff_percent) -> str:
    if diff_percent is None:
        return "unknown"
    if diff_percent <= BELOW_MARKET_PERCENT:
        return "below"
    if diff_percent >= ABOVE_MARKET_PERCENT:
        return "above"
    return "fair"


def diff_from_average(price, avg):
    if not avg:
        return None
    return (price - avg) / avg * 100


def _absolute_prices(stats, subject: Subject):
    if stats.metric is Metric.PRICE_PER_AREA:
        area = subject.realty_area_total
        return {
            "avg_price": round_half_up(stats.avg * area),
            "min_price": round_half_up(stats.min * area),
            "max_price": round_half_up(stats.max * area),
            "median_price": round_half_up(stats.median * area) if stats.median is not None else None,
            "avg_price_per_area": stats.avg,
        }
    return {
        "avg_price": stats.avg,
        "min_price": stats.min,
        "max_price": stats.max,
        "median_price": stats.median,
    }


async def get_market_stats(
    db: AsyncSession,
    subject: Subject,
    windows: Sequence[int] = DEFAULT_WINDOWS,
    min_count: int = MIN_SAMPLE_SIZE,
    now=None,
) -> MarketStats:
    if not subject.price or subject.price <= 0:
        return MarketStats()

    for rung in build_ladder(subject):
        stats = await collect_with_dynamic_window(
            db, rung.criteria, subject.listing_id, windows, min_count, rung.metric, now
        )
        if stats.sufficient:
            break
    else:
        logger.debug("No sufficient comparables for listing %s in category %s", subject.listing_id, subject.category_id)
        return MarketStats()

    prices = _absolute_prices(stats, subject)
    diff = diff_from_average(subject.price, prices["avg_price"])
    return MarketStats(
        has_market_data=True,
        count=stats.count,
        diff_percent=round_half_up(diff, 1),
        market_level=market_level(diff),
        window_days=stats.window_days,
        comparison_type=rung.comparison_type.value,
        **prices,
    )


async def get_stats_for_listing(db: AsyncSession, listing_id: int) -> Optional[MarketStats]:
    listing = await db.get(Listing, listing_id)
    if listing is None:
        return None
    return await get_market_stats(db, Subject.from_listing(listing))


def generate_labels(stats: MarketStats) -> Optional[SellerLabels]:
    if not stats or not stats.has_market_data:
        return None

    if stats.market_level == "below":
        message = f"Your price is {round_half_up(abs(stats.diff_percent))}% below the market average"
    elif stats.market_level == "above":
        message = f"Your price is {round_half_up(stats.diff_percent)}% above the market average"
    else:
        message = "Your price matches the market"

    price_range = None
    if stats.avg_price:
        price_range = PriceRange(
            price_from=round_half_up(stats.avg_price * (1 - PRICE_BAND)),
            price_to=round_half_up(stats.avg_price * (1 + PRICE_BAND)),
        )
    return SellerLabels(market_level=stats.market_level, message_for_seller=message, recommended_price_range=price_range)


def _with_labels(stats: MarketStats, **extra) -> SellerMarketData:
    if not stats.has_market_data:
        return SellerMarketData(has_market_data=False, **extra)
    return SellerMarketData(**stats.model_dump(), labels=generate_labels(stats), **extra)


async def get_market_data_for_seller(db: AsyncSession, listing_id: int) -> SellerMarketData:
    listing = await db.get(Listing, listing_id)
    if listing is None:
        return SellerMarketData(has_market_data=False, error="Listing not found")
    stats = await get_market_stats(db, Subject.from_listing(listing))
    return _with_labels(stats, listing_id=listing.id)


async def get_stats_for_draft(db: AsyncSession, draft: ListingDraft) -> SellerMarketData:
    """Estimate for a listing that has not been saved yet; nothing is persisted."""
    stats = await get_market_stats(db, Subject.from_draft(draft))
    return _with_labels(stats)
