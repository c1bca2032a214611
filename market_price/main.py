import os
from fastapi import FastAPI
from . import db
from .api.routes import router as api_router
from .cache import ResultCache
from .demand import estimator_from_env
from .dynamic_pricing import DynamicPriceCalculator
from .scheduler import build_scheduler
from .utils import logger

SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "1") == "1"
CREATE_TABLES = os.getenv("CREATE_TABLES", "1") == "1"

# create FastAPI instance
app = FastAPI(title="market-price")
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    db.init_engine()
    if CREATE_TABLES:
        await db.create_tables()

    estimator = estimator_from_env()
    app.state.demand_estimator = estimator
    app.state.price_calculator = DynamicPriceCalculator(cache=ResultCache(), demand_estimator=estimator)

    app.state.scheduler = None
    if SCHEDULER_ENABLED:
        app.state.scheduler = build_scheduler(db.SessionLocal)
        app.state.scheduler.start()
        logger.info("Scheduler started")


@app.on_event("shutdown")
async def on_shutdown():
    if app.state.scheduler is not None:
        app.state.scheduler.shutdown(wait=False)
    if app.state.demand_estimator is not None:
        await app.state.demand_estimator.aclose()
    await db.dispose_engine()
