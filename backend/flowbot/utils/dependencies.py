# /flowbot/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException

from flowbot.config.settings import settings
from flowbot.utils.metrics import webhook_secret_counter
from flowbot.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


async def verify_telegram_secret(request: Request) -> bytes:
    """
    Telegram echoes the secret_token given to setWebhook in this header.
    Without a configured secret every request is accepted.
    """
    body = await request.body()
    if not settings.telegram_webhook_secret:
        return body

    provided = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
    if not (provided and secrets.compare_digest(provided, settings.telegram_webhook_secret)):
        webhook_secret_counter.labels(status="invalid").inc()
        log.error("Invalid webhook secret token.", client_ip=get_remote_address(request))
        raise HTTPException(status_code=403, detail="Invalid secret token")
    webhook_secret_counter.labels(status="valid").inc()
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
