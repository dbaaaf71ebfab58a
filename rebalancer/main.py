"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rebalancer.config import settings
from rebalancer.database import create_db_and_tables
from rebalancer.utils.logging import setup_logging
from rebalancer.api import positions, system, users

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    from rebalancer.engine.scheduler import get_scheduler_status, start_scheduler, stop_scheduler
    from rebalancer.engine.scanner import build_scanner

    # Start Telegram bot first so the notifier picks it up as its transport
    telegram_bot = None
    if settings.telegram_bot_token:
        from rebalancer.services.telegram_bot import init_bot
        telegram_bot = init_bot(status_provider=get_scheduler_status)
        telegram_bot.start()
    else:
        logger.warning("RB_TELEGRAM_BOT_TOKEN not set, notifications will only be logged")

    scanner = build_scanner()
    start_scheduler(scanner, settings.scan_interval_seconds)

    yield

    stop_scheduler()
    await scanner.close()
    if telegram_bot:
        telegram_bot.stop()


app = FastAPI(
    title="DLMM Rebalancer",
    description="Automatic repositioning of out-of-range DLMM liquidity positions",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system.router)
app.include_router(positions.router)
app.include_router(users.router)
