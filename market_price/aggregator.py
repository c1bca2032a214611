# market_price/aggregator.py
"""Windowed aggregation of comparable listing prices.

The listing store is queried over an ascending sequence of look-back windows
until one of them holds at least `min_count` comparables. When none does, the
widest window's result is returned as-is so callers always get an answer.
"""
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence
from sqlalchemy import select, and_, func
from sqlalchemy.ext.asyncio import AsyncSession
from .comparables import Metric
from .models import Listing
from .utils import logger, median, round_half_up, utcnow

DEFAULT_WINDOWS = (7, 30, 90)
MIN_SAMPLE_SIZE = 5

# attributes normalized to lower case on the subject side
CASE_INSENSITIVE_FIELDS = frozenset({"brand", "model", "car_make", "car_model", "realty_city", "realty_district"})


@dataclass(frozen=True)
class WindowStats:
    count: int
    window_days: int
    sufficient: bool
    metric: Metric = Metric.PRICE
    avg: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    median: Optional[float] = None


def comparable_conditions(criteria: Dict[str, Any], metric: Metric, since, exclude_id=None):
    column = getattr(Listing, metric.value)
    conds = [
        Listing.status == "active",
        Listing.moderation_status == "approved",
        Listing.price > 0,
        column > 0,
        Listing.created_at >= since,
    ]
    if exclude_id is not None:
        conds.append(Listing.id != exclude_id)
    for name, value in criteria.items():
        attr = getattr(Listing, name)
        if isinstance(value, tuple):
            low, high = value
            conds.append(attr.between(low, high))
        elif name in CASE_INSENSITIVE_FIELDS:
            conds.append(func.lower(attr) == str(value).lower())
        else:
            conds.append(attr == value)
    return conds


def _round_stats(metric, avg, low, high, mid):
    if metric is Metric.PRICE:
        return round_half_up(avg), round_half_up(low, 2), round_half_up(high, 2), round_half_up(mid, 2)
    # per-area bounds stay raw until they are scaled back to a price
    return round_half_up(avg, 2), low, high, mid


async def aggregate_window(
    db: AsyncSession,
    criteria: Dict[str, Any],
    days: int,
    exclude_id=None,
    metric: Metric = Metric.PRICE,
    min_count: int = MIN_SAMPLE_SIZE,
    now=None,
) -> WindowStats:
    since = (now or utcnow()) - timedelta(days=days)
    column = getattr(Listing, metric.value)
    conds = comparable_conditions(criteria, metric, since, exclude_id)

    row = (await db.execute(
        select(func.count(), func.avg(column), func.min(column), func.max(column)).where(and_(*conds))
    )).one()
    count = row[0] or 0
    if count == 0:
        return WindowStats(count=0, window_days=days, sufficient=False, metric=metric)

    # median needs the individual values
    values = [float(v) for v in (await db.execute(select(column).where(and_(*conds)))).scalars()]
    avg, low, high, mid = _round_stats(metric, float(row[1]), float(row[2]), float(row[3]), median(values))
    return WindowStats(
        count=count,
        window_days=days,
        sufficient=count >= min_count,
        metric=metric,
        avg=avg,
        min=low,
        max=high,
        median=mid,
    )


async def collect_with_dynamic_window(
    db: AsyncSession,
    criteria: Dict[str, Any],
    exclude_id=None,
    windows: Sequence[int] = DEFAULT_WINDOWS,
    min_count: int = MIN_SAMPLE_SIZE,
    metric: Metric = Metric.PRICE,
    now=None,
) -> WindowStats:
    if not windows:
        raise ValueError("at least one window is required")
    now = now or utcnow()

    stats = None
    for days in sorted(windows):
        stats = await aggregate_window(db, criteria, days, exclude_id, metric, min_count, now)
        if stats.sufficient:
            logger.debug("Window %sd satisfied %s with %d comparables", days, criteria, stats.count)
            return stats

    # widest window, whatever it holds
    logger.debug("No window reached %d comparables for %s; widest window has %d", min_count, criteria, stats.count)
    return stats
