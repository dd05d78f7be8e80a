# /flowbot/routes/webhooks.py

import json
import asyncio
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from flowbot.config.settings import settings
from flowbot.models.events import event_from_update
from flowbot.services.bot_service import flow_bot
from flowbot.utils.dependencies import verify_telegram_secret
from flowbot.utils.metrics import response_time_histogram, events_counter
from flowbot.utils.rate_limiter import limiter

# Telegram delivers updates here. The secret-token dependency rejects forged
# calls; accepted updates are dispatched in the background so Telegram gets
# its 200 immediately.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)

# Strong references so in-flight dispatches are not garbage collected
_background_tasks = set()


@router.post("/telegram")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_telegram_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_telegram_secret)
):
    """Receives a single Telegram update."""
    with response_time_histogram.labels(endpoint="telegram_webhook").time():
        try:
            update = json.loads(verified_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Webhook payload is not valid JSON.")
            raise HTTPException(status_code=400, detail="Invalid JSON payload")

        event = event_from_update(update)
        if event is None:
            events_counter.labels(event_type="unsupported", status="ignored").inc()
            log.debug("Ignoring unsupported update", update_id=update.get("update_id"))
            return JSONResponse({"status": "ignored"})

        log.info("Dispatching update", update_id=update.get("update_id"), event_type=type(event).__name__)
        task = asyncio.create_task(flow_bot.router.dispatch(event))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return JSONResponse({"status": "success"})
