# market_price/api/routes.py
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from .. import market_stats, schemas, snapshots, trends
from ..db import get_db
from ..dynamic_pricing import COMPARE_RADIUS_KM, DynamicPriceCalculator, compare_with_competitors
from ..models import Listing
from ..utils import logger

router = APIRouter()

MAX_BATCH_SIZE = 50
MAX_REFRESH_AGE_HOURS = 168
MAX_REFRESH_BATCH = 200


def get_calculator(request: Request) -> DynamicPriceCalculator:
    return request.app.state.price_calculator


def get_demand_estimator(request: Request):
    return getattr(request.app.state, "demand_estimator", None)


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/pricing/listings/{listing_id}/market", response_model=schemas.SellerMarketData)
async def listing_market(listing_id: int, db: AsyncSession = Depends(get_db)):
    result = await market_stats.get_market_data_for_seller(db, listing_id)
    if result.error:
        raise HTTPException(status_code=404, detail=result.error)
    return result


@router.get("/pricing/listings/{listing_id}/dynamic", response_model=schemas.PriceRecommendation)
async def listing_dynamic_price(
    listing_id: int,
    db: AsyncSession = Depends(get_db),
    calculator: DynamicPriceCalculator = Depends(get_calculator),
):
    listing = await db.get(Listing, listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return await calculator.calculate_price(db, listing)


@router.get("/pricing/listings/{listing_id}/analyze", response_model=schemas.PriceAnalysis)
async def listing_price_analysis(
    listing_id: int,
    seller_id: int | None = Query(None),
    db: AsyncSession = Depends(get_db),
    calculator: DynamicPriceCalculator = Depends(get_calculator),
):
    listing = await db.get(Listing, listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    if seller_id is not None and listing.seller_id != seller_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return await calculator.analyze_listing(db, listing)


@router.get("/pricing/listings/{listing_id}/compare", response_model=schemas.CompetitorComparison)
async def listing_competitors(
    listing_id: int,
    radius_km: float = Query(COMPARE_RADIUS_KM, gt=0, le=50),
    db: AsyncSession = Depends(get_db),
):
    listing = await db.get(Listing, listing_id)
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")
    return await compare_with_competitors(db, listing, radius_km)


@router.get("/pricing/brief/{listing_id}", response_model=schemas.PriceBrief)
async def brief(listing_id: int, db: AsyncSession = Depends(get_db)):
    return await snapshots.get_brief(db, listing_id)


@router.post("/pricing/brief/batch", response_model=schemas.BriefBatchOut)
async def brief_batch(payload: schemas.BriefBatchRequest, db: AsyncSession = Depends(get_db)):
    if not payload.listing_ids:
        raise HTTPException(status_code=400, detail="listing_ids must be a non-empty array")
    if len(payload.listing_ids) > MAX_BATCH_SIZE:
        raise HTTPException(status_code=400, detail=f"Maximum {MAX_BATCH_SIZE} listings per batch request")
    return {"items": await snapshots.get_briefs(db, payload.listing_ids)}


@router.post("/pricing/estimate", response_model=schemas.SellerMarketData)
async def estimate(draft: schemas.ListingDraft, db: AsyncSession = Depends(get_db)):
    return await market_stats.get_stats_for_draft(db, draft)


@router.post("/pricing/refresh-snapshots", response_model=schemas.RefreshResult)
async def refresh_snapshots(payload: schemas.RefreshRequest, db: AsyncSession = Depends(get_db)):
    try:
        count = await snapshots.refresh_stale_snapshots(
            db,
            max_age_hours=min(payload.max_age_hours, MAX_REFRESH_AGE_HOURS),
            batch_size=min(payload.batch_size, MAX_REFRESH_BATCH),
        )
    except Exception as e:
        logger.exception("Snapshot refresh failed: %s", e)
        raise HTTPException(status_code=500, detail="Snapshot refresh failed")
    return {"success": True, "refreshed_count": count}


@router.get("/pricing/sellers/{seller_id}/recalculate", response_model=schemas.SellerRecalculation)
async def recalculate_seller(
    seller_id: int,
    db: AsyncSession = Depends(get_db),
    calculator: DynamicPriceCalculator = Depends(get_calculator),
):
    return await calculator.recalculate_for_seller(db, seller_id)


@router.get("/pricing/trend/{category_id}", response_model=schemas.MarketTrend)
async def trend(
    category_id: str,
    lat: float | None = Query(None),
    lng: float | None = Query(None),
    days: int = Query(7, gt=0, le=90),
    db: AsyncSession = Depends(get_db),
):
    return await trends.get_market_trend(db, category_id, lat, lng, days)


@router.get("/pricing/analytics/market", response_model=schemas.MarketAnalytics)
async def market_analytics(
    category_id: str,
    lat: float | None = Query(None),
    lng: float | None = Query(None),
    radius_km: float = Query(10, gt=0, le=100),
    db: AsyncSession = Depends(get_db),
    estimator=Depends(get_demand_estimator),
):
    return await trends.get_market_analytics(
        db, category_id, lat, lng, radius_km,
        demand_estimator=estimator,
        seasonal_estimator=estimator,
    )
