# tests/conftest.py
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from market_price.db import Base
from market_price.models import Listing
from market_price.utils import utcnow


@pytest.fixture
async def engine():
    # in-memory SQLite shared across the test through a single connection
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_listing(db):
    async def _make(age_days=1, **fields):
        data = {
            "category_id": "odezhda",
            "price": 1000,
            "title": "Winter jacket, size M",
            "description": "Warm jacket in good condition",
            "photo_count": 2,
            "status": "active",
            "moderation_status": "approved",
            "created_at": utcnow() - timedelta(days=age_days),
        }
        data.update(fields)
        listing = Listing(**data)
        db.add(listing)
        await db.commit()
        return listing
    return _make


@pytest.fixture
def make_listings(make_listing):
    async def _make(prices, **fields):
        return [await make_listing(price=p, **fields) for p in prices]
    return _make
