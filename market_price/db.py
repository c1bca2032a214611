# market_price/db.py
"""Database engine and session utilities.

Async SQLAlchemy engine creation plus the session dependency used by the
FastAPI routes. The engine is built explicitly at startup so tests can point
the engine at their own database.
"""
import os
from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

load_dotenv()

Base = declarative_base()

engine = None
SessionLocal = None


def normalize_database_url(url: str) -> str:
    # SQLAlchemy doesn't accept 'postgres://', and the async engine needs an async driver
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def init_engine(url: str = None):
    global engine, SessionLocal
    url = url or os.getenv("POSTGRES_URL")
    if not url:
        raise RuntimeError("POSTGRES_URL not set")
    url = normalize_database_url(url)

    kwargs = {"pool_pre_ping": True}
    if url.startswith("postgresql"):
        # tuned pool settings for cloud DB
        kwargs["pool_size"] = int(os.getenv("DB_POOL_SIZE", 5))
        kwargs["max_overflow"] = int(os.getenv("DB_MAX_OVERFLOW", 10))
    engine = create_async_engine(url, **kwargs)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    return engine


async def create_tables(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    if engine is not None:
        await engine.dispose()


async def get_db():
    if SessionLocal is None:
        raise RuntimeError("database engine not initialized")
    async with SessionLocal() as db:
        yield db
