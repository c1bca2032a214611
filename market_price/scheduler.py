# market_price/scheduler.py
import os
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from .snapshots import refresh_stale_snapshots
from .utils import logger

REFRESH_INTERVAL_MINUTES = int(os.getenv("SNAPSHOT_REFRESH_INTERVAL_MINUTES", "30"))
REFRESH_MAX_AGE_HOURS = float(os.getenv("SNAPSHOT_REFRESH_MAX_AGE_HOURS", "24"))
REFRESH_BATCH_SIZE = int(os.getenv("SNAPSHOT_REFRESH_BATCH_SIZE", "50"))


async def run_snapshot_refresh(session_factory, max_age_hours=REFRESH_MAX_AGE_HOURS, batch_size=REFRESH_BATCH_SIZE):
    async with session_factory() as db:
        return await refresh_stale_snapshots(db, max_age_hours=max_age_hours, batch_size=batch_size)


def build_scheduler(session_factory) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_snapshot_refresh, 'interval',
        minutes=REFRESH_INTERVAL_MINUTES,
        args=[session_factory],
        id="refresh-price-snapshots",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Snapshot refresh scheduled every %d minutes", REFRESH_INTERVAL_MINUTES)
    return scheduler
