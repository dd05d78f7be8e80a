# /flowbot/utils/alerting.py

import time
import httpx
import logging
from typing import Optional, Dict, Any
from datetime import datetime, timezone

from flowbot.config.settings import settings
from flowbot.utils.metrics import alerts_counter

# Critical alerts are POSTed to ALERTING_WEBHOOK_URL. The same error is
# reported at most once per cooldown window, since a revoked bot token fails
# every Bot API call.

logger = logging.getLogger(__name__)


class AlertingService:
    def __init__(self, webhook_url: Optional[str], cooldown_seconds: float = 300.0):
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.client = httpx.AsyncClient(timeout=5.0) if webhook_url else None
        self._last_sent: Dict[str, float] = {}

    def _in_cooldown(self, error: str) -> bool:
        last = self._last_sent.get(error)
        return last is not None and time.monotonic() - last < self.cooldown_seconds

    async def send_critical_alert(self, error: str, context: Dict[str, Any]):
        """Report `error` to the alerting webhook. Never raises."""
        logger.critical(f"critical_alert: {error} {context}")
        if not self.client:
            alerts_counter.labels(status="not_configured").inc()
            return
        if self._in_cooldown(error):
            alerts_counter.labels(status="suppressed").inc()
            return

        self._last_sent[error] = time.monotonic()
        alert_data = {
            "severity": "critical",
            "service": "flowbot",
            "error": error,
            "context": context,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.environment,
        }
        try:
            response = await self.client.post(self.webhook_url, json=alert_data)
            response.raise_for_status()
            alerts_counter.labels(status="sent").inc()
        except httpx.HTTPError as e:
            alerts_counter.labels(status="failed").inc()
            logger.error(f"Failed to send critical alert: {e}")

    async def cleanup(self):
        if self.client:
            await self.client.aclose()


# Globally accessible instance
alerting_service = AlertingService(settings.alerting_webhook_url, settings.alert_cooldown_seconds)
