# market_price/snapshots.py
"""Persisted price snapshots and the brief lookups served from them.

A snapshot is the last computed market brief for a listing. Reads trust it
for `SNAPSHOT_TTL_HOURS`; after that the brief is recomputed and the row is
upserted. Every write derives from a fresh read, so concurrent refreshes of
the same listing simply overwrite each other.
"""
import os
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional
from sqlalchemy import select, delete, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from .comparables import Subject
from .market_stats import get_market_stats
from .models import Listing, PriceSnapshot
from .schemas import MarketStats, PriceBrief
from .utils import as_utc, logger, utcnow

SNAPSHOT_TTL_HOURS = float(os.getenv("SNAPSHOT_TTL_HOURS", "6"))

_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


def _insert_for(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect not in _INSERTS:
        raise NotImplementedError(f"upsert not supported on {dialect}")
    return _INSERTS[dialect]


async def upsert_snapshot(db: AsyncSession, listing_id: int, data: Dict[str, Any]):
    table = PriceSnapshot.__table__
    stmt = _insert_for(db)(table).values(listing_id=listing_id, updated_at=utcnow(), **data)
    # copy every column from EXCLUDED except the keys
    excluded = {c.name: stmt.excluded[c.name] for c in table.columns if c.name not in ("id", "listing_id")}
    stmt = stmt.on_conflict_do_update(index_elements=["listing_id"], set_=excluded)
    await db.execute(stmt)
    await db.commit()


async def get_snapshot(db: AsyncSession, listing_id: int) -> Optional[PriceSnapshot]:
    result = await db.execute(
        select(PriceSnapshot)
        .where(PriceSnapshot.listing_id == listing_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_snapshots(db: AsyncSession, listing_ids: Iterable[int]) -> Dict[int, PriceSnapshot]:
    result = await db.execute(
        select(PriceSnapshot)
        .where(PriceSnapshot.listing_id.in_(list(listing_ids)))
        .execution_options(populate_existing=True)
    )
    return {s.listing_id: s for s in result.scalars()}


async def get_stale_listing_ids(db: AsyncSession, max_age_hours: float = 24, limit: int = 100, now=None) -> List[int]:
    threshold = (now or utcnow()) - timedelta(hours=max_age_hours)
    result = await db.execute(
        select(PriceSnapshot.listing_id)
        .where(or_(PriceSnapshot.updated_at < threshold, PriceSnapshot.updated_at.is_(None)))
        .order_by(PriceSnapshot.updated_at.asc())
        .limit(limit)
    )
    return list(result.scalars())


def is_fresh(snapshot: Optional[PriceSnapshot], now=None, ttl_hours: float = SNAPSHOT_TTL_HOURS) -> bool:
    if snapshot is None or snapshot.updated_at is None:
        return False
    age = (now or utcnow()) - as_utc(snapshot.updated_at)
    return age < timedelta(hours=ttl_hours)


def snapshot_data(stats: MarketStats, listing: Listing) -> Dict[str, Any]:
    return {
        "has_market_data": stats.has_market_data,
        "avg_price": stats.avg_price,
        "min_price": stats.min_price,
        "max_price": stats.max_price,
        "median_price": stats.median_price,
        "avg_price_per_area": stats.avg_price_per_area,
        "count": stats.count,
        "diff_percent": stats.diff_percent,
        "market_level": stats.market_level,
        "window_days": stats.window_days,
        "comparison_type": stats.comparison_type or "general",
        "snapshot_listing_price": float(listing.price) if listing.price is not None else None,
        "snapshot_category_id": listing.category_id,
    }


def brief_from_snapshot(snapshot: PriceSnapshot) -> PriceBrief:
    return PriceBrief.model_validate(snapshot)


def brief_from_stats(listing_id: int, stats: MarketStats) -> PriceBrief:
    return PriceBrief(
        listing_id=listing_id,
        has_market_data=stats.has_market_data,
        diff_percent=stats.diff_percent,
        market_level=stats.market_level,
        avg_price=stats.avg_price,
    )


async def update_snapshot_for_listing(db: AsyncSession, listing_id: int,
                                      stats: MarketStats = None) -> Optional[MarketStats]:
    """Recompute (unless `stats` is given) and upsert; None if the listing is gone."""
    listing = await db.get(Listing, listing_id)
    if listing is None:
        return None
    if stats is None:
        stats = await get_market_stats(db, Subject.from_listing(listing))
    await upsert_snapshot(db, listing_id, snapshot_data(stats, listing))
    return stats


async def _recompute_brief(db, listing_id) -> PriceBrief:
    stats = await update_snapshot_for_listing(db, listing_id)
    if stats is None:
        return PriceBrief(listing_id=listing_id)
    return brief_from_stats(listing_id, stats)


async def get_brief(db: AsyncSession, listing_id: int, now=None) -> PriceBrief:
    snapshot = await get_snapshot(db, listing_id)
    if is_fresh(snapshot, now):
        return brief_from_snapshot(snapshot)
    return await _recompute_brief(db, listing_id)


async def get_briefs(db: AsyncSession, listing_ids: List[int], now=None) -> List[PriceBrief]:
    """Fresh snapshots first, then recomputed ones, each group in input order."""
    listing_ids = list(dict.fromkeys(listing_ids or []))
    if not listing_ids:
        return []

    snapshots = await get_snapshots(db, listing_ids)
    fresh, stale = [], []
    for listing_id in listing_ids:
        snapshot = snapshots.get(listing_id)
        if is_fresh(snapshot, now):
            fresh.append(brief_from_snapshot(snapshot))
        else:
            stale.append(listing_id)

    if stale:
        logger.debug("Recomputing %d stale price briefs", len(stale))
    recomputed = [await _recompute_brief(db, listing_id) for listing_id in stale]
    return fresh + recomputed


async def refresh_stale_snapshots(db: AsyncSession, max_age_hours: float = 24, batch_size: int = 50, now=None) -> int:
    listing_ids = await get_stale_listing_ids(db, max_age_hours, batch_size, now)

    refreshed = 0
    for listing_id in listing_ids:
        try:
            stats = await update_snapshot_for_listing(db, listing_id)
        except Exception as e:
            logger.exception("Failed refreshing price snapshot for listing %s: %s", listing_id, e)
            await db.rollback()
            continue
        if stats is None:
            # listing was deleted; drop its snapshot so it stops occupying the batch
            await db.execute(delete(PriceSnapshot).where(PriceSnapshot.listing_id == listing_id))
            await db.commit()
            continue
        refreshed += 1

    logger.info("Refreshed %d of %d stale price snapshots", refreshed, len(listing_ids))
    return refreshed
