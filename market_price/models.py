# market_price/models.py
"""SQLAlchemy ORM models for persisted entities.

`Listing` is owned by the marketplace and only ever read here.
`PriceSnapshot` is the engine's own table: one upserted row per listing
holding the last computed market brief.
"""
from sqlalchemy import Column, Integer, Text, Numeric, Float, Boolean, TIMESTAMP, ForeignKey, func, Index
from .db import Base


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    seller_id = Column(Integer, index=True)
    title = Column(Text)
    description = Column(Text)
    price = Column(Numeric(14, 2))
    category_id = Column(Text, nullable=False)
    subcategory_id = Column(Text)
    city = Column(Text)
    # electronics
    brand = Column(Text)
    model = Column(Text)
    storage_gb = Column(Integer)
    # vehicles
    car_make = Column(Text)
    car_model = Column(Text)
    car_year = Column(Integer)
    # real estate
    realty_type = Column(Text)
    realty_city = Column(Text)
    realty_district = Column(Text)
    realty_area_total = Column(Float)
    price_per_area = Column(Float)
    lat = Column(Float)
    lng = Column(Float)
    photo_count = Column(Integer, nullable=False, default=0)
    contact_name = Column(Text)
    contact_phone = Column(Text)
    status = Column(Text, nullable=False, default="active")
    moderation_status = Column(Text, nullable=False, default="pending")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class PriceSnapshot(Base):
    __tablename__ = "price_snapshots"
    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False, unique=True, index=True)
    has_market_data = Column(Boolean, nullable=False, default=False)
    avg_price = Column(Float)
    min_price = Column(Float)
    max_price = Column(Float)
    median_price = Column(Float)
    avg_price_per_area = Column(Float)
    count = Column(Integer, nullable=False, default=0)
    diff_percent = Column(Float)
    market_level = Column(Text, nullable=False, default="unknown")
    window_days = Column(Integer)
    comparison_type = Column(Text, nullable=False, default="general")
    snapshot_listing_price = Column(Float)
    snapshot_category_id = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False)


Index("idx_listings_comparables", Listing.category_id, Listing.status, Listing.moderation_status, Listing.created_at)
Index("idx_listings_location", Listing.lat, Listing.lng)
Index("idx_price_snapshots_updated_at", PriceSnapshot.updated_at)
