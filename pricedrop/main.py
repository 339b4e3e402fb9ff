# pricedrop/main.py

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from pricedrop.core.config import get_settings
from pricedrop.core.logging_config import configure_logging
from pricedrop.routes import accounts, health
from pricedrop.routes import scheduler as scheduler_routes
from pricedrop.scheduler import start_scheduler, stop_scheduler

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if settings.SCHEDULER_ENABLED:
        await start_scheduler()
    else:
        logger.info("Scheduler disabled; ticks only run when triggered")

    yield  # This is where the app runs

    await stop_scheduler()


app = FastAPI(
    title="pricedrop",
    description="Scheduled eBay price reduction",
    lifespan=lifespan,
)

app.include_router(scheduler_routes.router)
app.include_router(accounts.router)
app.include_router(health.router)  # Health check should be accessible without auth
