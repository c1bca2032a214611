# market_price/schemas.py
from datetime import datetime
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class ListingDraft(BaseModel):
    """Attributes a seller has typed in before the listing exists."""
    category_id: str = Field(..., min_length=1)
    subcategory_id: Optional[str] = None
    price: float = Field(..., gt=0)
    city: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    storage_gb: Optional[int] = None
    ram_gb: Optional[int] = None
    car_make: Optional[str] = None
    car_model: Optional[str] = None
    car_year: Optional[int] = None
    car_engine_volume: Optional[float] = None
    car_transmission: Optional[str] = None
    realty_type: Optional[str] = None
    realty_rooms: Optional[int] = None
    realty_area_total: Optional[float] = None
    realty_city: Optional[str] = None
    realty_district: Optional[str] = None


class MarketStats(BaseModel):
    has_market_data: bool = False
    count: int = 0
    avg_price: Optional[float] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    median_price: Optional[float] = None
    avg_price_per_area: Optional[float] = None
    diff_percent: Optional[float] = None
    market_level: str = "unknown"
    window_days: Optional[int] = None
    comparison_type: Optional[str] = None


class PriceRange(BaseModel):
    price_from: int
    price_to: int


class SellerLabels(BaseModel):
    market_level: str
    message_for_seller: str
    recommended_price_range: Optional[PriceRange] = None


class SellerMarketData(MarketStats):
    listing_id: Optional[int] = None
    labels: Optional[SellerLabels] = None
    error: Optional[str] = None


class PriceBrief(BaseModel):
    listing_id: int
    has_market_data: bool = False
    diff_percent: Optional[float] = None
    market_level: str = "unknown"
    avg_price: Optional[float] = None

    class Config:
        from_attributes = True


class BriefBatchRequest(BaseModel):
    listing_ids: List[int] = []


class BriefBatchOut(BaseModel):
    items: List[PriceBrief]


class RefreshRequest(BaseModel):
    max_age_hours: float = Field(24, gt=0)
    batch_size: int = Field(50, gt=0)


class RefreshResult(BaseModel):
    success: bool = True
    refreshed_count: int


class PriceFactors(BaseModel):
    seasonal: float = 1.0
    time_of_day: float = 1.0
    demand: float = 1.0
    quality: float = 1.0
    competition: float = 1.0


class ImpulseSuggestion(BaseModel):
    type: str
    urgency: str
    message: str
    icon: str


class PriceRecommendation(BaseModel):
    success: bool = True
    has_market_data: bool = False
    recommended: Optional[int] = None
    market_min: Optional[float] = None
    market_max: Optional[float] = None
    market_avg: Optional[float] = None
    median_price: Optional[float] = None
    position: str = "unknown"
    confidence: float = 0.0
    diff_percent: Optional[float] = None
    reasons: List[str] = []
    factors: Optional[PriceFactors] = None
    sample_size: Optional[int] = None
    window_days: Optional[int] = None
    impulse_suggestions: List[ImpulseSuggestion] = []
    error: Optional[str] = None


class SellerListingPrice(BaseModel):
    listing_id: int
    title: Optional[str] = None
    current_price: Optional[float] = None
    recommendation: PriceRecommendation


class SellerRecalculation(BaseModel):
    success: bool = True
    count: int = 0
    listings: List[SellerListingPrice] = []
    error: Optional[str] = None


class MarketTrend(BaseModel):
    trend: str = "stable"
    change_percent: float = 0.0
    first_period_avg: Optional[int] = None
    second_period_avg: Optional[int] = None


class TimingInfo(BaseModel):
    current_hour: int
    is_weekend: bool
    is_morning_peak: bool
    is_evening_peak: bool


class MarketAnalytics(BaseModel):
    demand: Optional[Dict[str, Any]] = None
    trend: MarketTrend
    seasonal: Optional[Dict[str, Any]] = None
    timing: TimingInfo


class PriceAnalysis(BaseModel):
    listing_id: int
    title: Optional[str] = None
    current_price: float
    recommended_price: float
    price_change: float
    percent_change: float
    action: str
    confidence: float
    reasoning: str
    market_position: str
    potential_buyers: int
    urgency: str
    valid_until: datetime
    market_trend: MarketTrend
    recommendation: PriceRecommendation


class Competitor(BaseModel):
    listing_id: int
    title: Optional[str] = None
    price: float
    photo_count: Optional[int] = None
    created_at: Optional[datetime] = None


class CompetitorComparison(BaseModel):
    listing_id: int
    current_price: float
    competitors_count: int = 0
    avg_price: Optional[int] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    price_position: str = "unknown"
    competitors: List[Competitor] = []
