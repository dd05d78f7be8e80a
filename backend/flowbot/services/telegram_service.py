# /flowbot/services/telegram_service.py

import httpx
import logging
import tenacity
from typing import Any, Dict, List, Optional, Protocol

from flowbot.config.settings import settings
from flowbot.models.config import CommandConfig
from flowbot.models.flow import ButtonData
from flowbot.utils.alerting import alerting_service
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import telegram_requests_counter

logger = logging.getLogger(__name__)

Keyboard = List[List[ButtonData]]


class RendererError(Exception):
    """A message could not be delivered to, or changed on, the chat platform."""

    def __init__(self, message: str, status_code: int = 0, description: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.description = description


class MessageRenderer(Protocol):
    """The outbound half of the chat platform. All failures raise RendererError."""

    async def send_message(self, chat_id: int, text: str, topic_id: int = 0,
                           keyboard: Optional[Keyboard] = None, parse_mode: str = "") -> int:
        ...

    async def edit_message(self, chat_id: int, message_id: int, text: str,
                           keyboard: Optional[Keyboard] = None, parse_mode: str = ""):
        ...

    async def delete_message(self, chat_id: int, message_id: int):
        ...

    async def answer_callback(self, callback_id: str, text: str = "", show_alert: bool = False):
        ...


def build_reply_markup(keyboard: Optional[Keyboard]) -> Optional[Dict[str, Any]]:
    if not keyboard:
        return None
    rows = []
    for row in keyboard:
        buttons = []
        for button in row:
            if button.url:
                buttons.append({"text": button.text, "url": button.url})
            else:
                buttons.append({"text": button.text, "callback_data": button.callback})
        if buttons:
            rows.append(buttons)
    return {"inline_keyboard": rows} if rows else None


class TelegramService:
    def __init__(self, bot_token: str, base_url: str, timeout: float = 15.0):
        self.http_client = httpx.AsyncClient(timeout=timeout)
        self.base_url = f"{base_url.rstrip('/')}/bot{bot_token}"
        self.circuit_breaker = CircuitBreaker("telegram")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    async def call_api(self, method: str, payload: Dict[str, Any]) -> Any:
        """Generic method to call the Bot API. Returns the 'result' field of a successful reply."""
        url = f"{self.base_url}/{method}"
        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload)
        except Exception as e:
            telegram_requests_counter.labels(method=method, status="error").inc()
            logger.error(f"telegram_request_error {method}: {e}")
            raise RendererError(f"{method} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code == 200 and data.get("ok"):
            telegram_requests_counter.labels(method=method, status="success").inc()
            return data.get("result")

        description = data.get("description", "Unknown error")
        telegram_requests_counter.labels(method=method, status="failed").inc()
        logger.error(f"telegram_request_failed {method}: {response.status_code} - {description}")
        if response.status_code == 401:
            await alerting_service.send_critical_alert("Telegram authentication failed", {"error": "Invalid bot token"})
        raise RendererError(f"{method} failed: {response.status_code} - {description}",
                            status_code=response.status_code, description=description)

    async def send_message(self, chat_id: int, text: str, topic_id: int = 0,
                           keyboard: Optional[Keyboard] = None, parse_mode: str = "") -> int:
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text[:4096]}
        if topic_id:
            payload["message_thread_id"] = topic_id
        if parse_mode:
            payload["parse_mode"] = parse_mode
        markup = build_reply_markup(keyboard)
        if markup:
            payload["reply_markup"] = markup

        result = await self.call_api("sendMessage", payload)
        message_id = (result or {}).get("message_id", 0)
        logger.info(f"Telegram message sent to {chat_id}, message_id: {message_id}")
        return message_id

    async def edit_message(self, chat_id: int, message_id: int, text: str,
                           keyboard: Optional[Keyboard] = None, parse_mode: str = ""):
        payload: Dict[str, Any] = {"chat_id": chat_id, "message_id": message_id, "text": text[:4096]}
        if parse_mode:
            payload["parse_mode"] = parse_mode
        markup = build_reply_markup(keyboard)
        if markup:
            payload["reply_markup"] = markup

        try:
            await self.call_api("editMessageText", payload)
        except RendererError as e:
            # Re-rendering an unchanged prompt is not an error
            if "message is not modified" in e.description:
                return
            raise

    async def delete_message(self, chat_id: int, message_id: int):
        await self.call_api("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def answer_callback(self, callback_id: str, text: str = "", show_alert: bool = False):
        payload: Dict[str, Any] = {"callback_query_id": callback_id}
        if text:
            payload["text"] = text
        if show_alert:
            payload["show_alert"] = True
        await self.call_api("answerCallbackQuery", payload)

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> bool:
        payload: Dict[str, Any] = {"url": url, "allowed_updates": ["message", "callback_query"]}
        if secret_token:
            payload["secret_token"] = secret_token
        return bool(await self.call_api("setWebhook", payload))

    async def set_my_commands(self, commands: List[CommandConfig]) -> bool:
        """Publish the command list shown in the client's command menu."""
        entries = []
        for config in commands:
            name = config.command.removeprefix("/")
            # Telegram rejects empty descriptions
            entries.append({"command": name, "description": (config.description or name)[:256]})
        return bool(await self.call_api("setMyCommands", {"commands": entries}))

    async def cleanup(self):
        await self.http_client.aclose()


telegram_service = TelegramService(
    settings.telegram_bot_token,
    settings.telegram_api_base_url,
    settings.telegram_timeout_sec,
)
