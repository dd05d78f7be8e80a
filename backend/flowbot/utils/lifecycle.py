# /flowbot/utils/lifecycle.py

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI

from flowbot.config.settings import settings
from flowbot.services.bot_service import flow_bot
from flowbot.services.telegram_service import telegram_service
from flowbot.utils.alerting import alerting_service
from flowbot.utils.logging import setup_logging

# Startup loads the bot definition and starts the session expiry sweep;
# shutdown stops the sweep and closes HTTP clients.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    logger.info("Application starting up...")

    if os.path.exists(settings.flows_path):
        await flow_bot.load_flows(settings.flows_path)
    else:
        logger.warning(f"Flow definition file not found at {settings.flows_path}; starting with no flows")

    if flow_bot.definition.register_commands and flow_bot.definition.commands:
        try:
            await telegram_service.set_my_commands(flow_bot.definition.commands)
            logger.info(f"Registered {len(flow_bot.definition.commands)} bot commands with Telegram")
        except Exception as e:
            logger.error(f"Telegram command registration failed: {e}")

    if settings.telegram_webhook_url:
        try:
            await telegram_service.set_webhook(settings.telegram_webhook_url, settings.telegram_webhook_secret)
            logger.info(f"Telegram webhook registered at {settings.telegram_webhook_url}")
        except Exception as e:
            logger.error(f"Telegram webhook registration failed: {e}")

    stop_cleanup = asyncio.Event()
    cleanup_task = asyncio.create_task(
        flow_bot.store.run_cleanup(stop_cleanup, settings.cleanup_interval_seconds)
    )
    app.state.flow_bot = flow_bot

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    stop_cleanup.set()
    await cleanup_task
    await telegram_service.cleanup()
    await alerting_service.cleanup()
