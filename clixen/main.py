"""
Clixen AI - Telegram intent routing service, main application entry point
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from clixen import __version__
from clixen.agent.structured_logging import configure_logging
from clixen.config import settings
from clixen.db import async_session_maker, init_db
from clixen.api import telegram_router, access_router

logger = logging.getLogger("clixen.main")

# Global start time for uptime tracking
_app_start_time = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown"""
    global _app_start_time
    _app_start_time = time.time()

    configure_logging(json_output=settings.log_json, level=settings.log_level)
    logger.info("🚀 Clixen AI starting up...")
    await init_db()
    logger.info("✅ Database initialized")

    # Telegram bot (outbound only; updates arrive on the webhook route)
    bot = None
    if settings.telegram_bot_token:
        try:
            from telegram import Bot
            bot = Bot(token=settings.telegram_bot_token)
            await bot.initialize()
            logger.info(f"🤖 Telegram bot ready (@{bot.username})")
        except Exception as e:
            logger.warning(f"⚠️ Could not initialize Telegram bot: {e}")
            bot = None
    else:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN not set; replies will be dropped")

    from clixen.agent.pipeline import build_runtime
    runtime = build_runtime(settings, async_session_maker, bot=bot)
    app.state.runtime = runtime
    app.state.bot = bot
    logger.info("✅ Message pipeline ready")

    # Linking token sweep
    if settings.enable_scheduler:
        try:
            from clixen.scripts.scheduled_tasks import start_scheduler
            start_scheduler(runtime.linking, settings.linking_sweep_interval_minutes)
            logger.info("✅ Linking maintenance scheduler started")
        except Exception as e:
            logger.warning(f"⚠️ Could not start scheduler: {e}")

    yield

    # Shutdown in reverse order
    logger.info("Clixen AI shutting down gracefully...")

    if settings.enable_scheduler:
        from clixen.scripts.scheduled_tasks import stop_scheduler
        stop_scheduler()
        logger.info("📅 Scheduler stopped")

    await runtime.dispatcher.aclose()

    if bot:
        try:
            await bot.shutdown()
            logger.info("🤖 Telegram bot stopped")
        except Exception as e:
            logger.warning(f"⚠️ Bot shutdown error: {e}")

    app.state.runtime = None
    logger.info("Clixen AI shutdown complete.")


app = FastAPI(
    title=settings.app_name,
    description="Telegram intent routing and user isolation for Clixen AI workflows",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(telegram_router, prefix=settings.api_prefix)
app.include_router(access_router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    """Health check endpoint"""
    return {
        "name": settings.app_name,
        "status": "healthy",
        "version": __version__,
        "features": ["telegram_webhook", "account_linking", "intent_routing", "signed_access_tokens", "audit_log"],
    }


@app.get("/health")
async def health():
    """Detailed health check with database and channel checks."""
    db_status = "connected"
    try:
        async with async_session_maker() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        db_status = f"error: {type(e).__name__}"

    bot = getattr(app.state, "bot", None)
    uptime = time.time() - _app_start_time if _app_start_time else 0

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": __version__,
        "uptime_seconds": round(uptime, 1),
        "database": db_status,
        "telegram": "configured" if bot is not None else "not_configured",
        "pipeline": "ready" if getattr(app.state, "runtime", None) is not None else "starting",
        "classifier_model": settings.classifier_model,
    }
