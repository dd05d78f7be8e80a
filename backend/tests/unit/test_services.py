# backend/tests/unit/test_services.py
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from flowbot.config.settings import settings
from flowbot.models.config import CommandConfig
from flowbot.models.conversation import Session
from flowbot.models.flow import ButtonData, FlowCatalog, FlowDefinition
from flowbot.services.prompt_service import PromptService
from flowbot.services.telegram_service import RendererError, TelegramService, build_reply_markup
from flowbot.utils.alerting import AlertingService
from flowbot.utils.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.registry import HandlerRegistry


def telegram_reply(status_code=200, body=None):
    return MagicMock(status_code=status_code, json=lambda: body if body is not None else {"ok": True, "result": {}})


@pytest.mark.asyncio
async def test_telegram_send_message_success(mocker):
    """Test successful message sending."""
    mock_call = mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(body={"ok": True, "result": {"message_id": 321}}),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    message_id = await service.send_message(10, "Hello", topic_id=4,
                                            keyboard=[[ButtonData(text="Go", callback="go")]])

    assert message_id == 321
    payload = mock_call.await_args.kwargs["json"]
    assert payload["message_thread_id"] == 4
    assert payload["reply_markup"] == {"inline_keyboard": [[{"text": "Go", "callback_data": "go"}]]}
    assert mock_call.await_args.args[1].endswith("/sendMessage")


@pytest.mark.asyncio
async def test_telegram_api_error_raises_renderer_error(mocker):
    mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(400, {"ok": False, "description": "Bad Request: chat not found"}),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    with pytest.raises(RendererError) as exc_info:
        await service.send_message(10, "Hello")
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_telegram_unauthorized_sends_alert(mocker):
    mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(401, {"ok": False, "description": "Unauthorized"}),
    )
    mock_alert = mocker.patch('flowbot.services.telegram_service.alerting_service.send_critical_alert', new_callable=AsyncMock)
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    with pytest.raises(RendererError):
        await service.delete_message(10, 1)
    mock_alert.assert_awaited_once()


@pytest.mark.asyncio
async def test_telegram_edit_ignores_not_modified(mocker):
    mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(400, {"ok": False, "description": "Bad Request: message is not modified"}),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    await service.edit_message(10, 5, "Same text")


@pytest.mark.asyncio
async def test_telegram_transport_error_raises_renderer_error(mocker):
    mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        side_effect=httpx.ConnectError("connection refused"),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    with pytest.raises(RendererError):
        await service.answer_callback("cb", "hi")


@pytest.mark.asyncio
async def test_set_webhook_passes_secret(mocker):
    mock_call = mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(body={"ok": True, "result": True}),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")

    assert await service.set_webhook("https://bot.example.com/hook", "s3cret")
    assert mock_call.await_args.kwargs["json"]["secret_token"] == "s3cret"


@pytest.mark.asyncio
async def test_set_my_commands_publishes_names_and_descriptions(mocker):
    mock_call = mocker.patch(
        'flowbot.services.telegram_service.TelegramService.resilient_api_call',
        new_callable=AsyncMock,
        return_value=telegram_reply(body={"ok": True, "result": True}),
    )
    service = TelegramService(settings.telegram_bot_token, "https://api.telegram.org")
    commands = [
        CommandConfig(command="/register", description="Create your profile", action="start_flow", target="register"),
        CommandConfig(command="stats", handler="show_stats"),
    ]

    assert await service.set_my_commands(commands)

    assert mock_call.await_args.args[1].endswith("/setMyCommands")
    assert mock_call.await_args.kwargs["json"] == {"commands": [
        {"command": "register", "description": "Create your profile"},
        {"command": "stats", "description": "stats"},
    ]}


def test_reply_markup_uses_url_buttons():
    markup = build_reply_markup([[ButtonData(text="Docs", url="https://example.com")], []])
    assert markup == {"inline_keyboard": [[{"text": "Docs", "url": "https://example.com"}]]}
    assert build_reply_markup(None) is None


@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_failures():
    breaker = CircuitBreaker("test", failure_threshold=2, timeout=60)
    failing = AsyncMock(side_effect=ValueError("down"))

    for _ in range(2):
        with pytest.raises(ValueError):
            await breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_circuit_breaker_closes_after_trial_successes():
    breaker = CircuitBreaker("recovering", failure_threshold=1, timeout=10, success_threshold=2)

    with pytest.raises(ValueError):
        await breaker.call(AsyncMock(side_effect=ValueError("down")))
    assert breaker.state == CircuitState.OPEN

    breaker.opened_at -= 11
    ok = AsyncMock(return_value="ok")
    assert await breaker.call(ok) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    await breaker.call(ok)
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_repeated_alerts_are_suppressed_during_cooldown():
    service = AlertingService("https://alerts.example.com/hook", cooldown_seconds=300)
    service.client = MagicMock()
    service.client.post = AsyncMock(return_value=MagicMock(raise_for_status=MagicMock()))

    await service.send_critical_alert("Telegram authentication failed", {})
    await service.send_critical_alert("Telegram authentication failed", {})
    await service.send_critical_alert("Something else", {})

    assert service.client.post.await_count == 2
    assert service.client.post.await_args_list[0].kwargs["json"]["error"] == "Telegram authentication failed"


@pytest.mark.asyncio
async def test_alerts_without_webhook_are_only_logged():
    service = AlertingService(None)
    await service.send_critical_alert("boom", {"a": 1})
    assert service.client is None


# --- PromptService ---

KEYBOARD_FLOW = {
    "id": "shop",
    "initial_step": "pick",
    "steps": {
        "pick": {
            "prompt_text": "Pick a coin",
            "parse_mode": "HTML",
            "keyboard": {
                "buttons": [[{"text": "Refresh", "callback": "refresh"}]],
                "provider": "coins",
                "callback_prefix": "coin:",
                "columns": 2,
                "add_back": True,
                "add_main": True,
            },
        },
    },
}


@pytest.mark.asyncio
async def test_prompt_builds_static_dynamic_and_navigation_rows(mock_renderer):
    registry = HandlerRegistry()
    registry.register_keyboard_provider("coins", AsyncMock(return_value=[
        ButtonData(text="BTC", callback="btc"),
        ButtonData(text="ETH", callback="eth"),
        ButtonData(text="SOL", callback="sol"),
    ]))
    engine = FlowEngine(FlowCatalog({"shop": FlowDefinition.model_validate(KEYBOARD_FLOW)}), registry)
    prompts = PromptService(engine, mock_renderer)
    session = Session(user_id=1, chat_id=10, flow_id="shop", step_id="pick", ttl=timedelta(minutes=5))

    await prompts.show_step_prompt(session)

    chat_id, text, topic_id, keyboard, parse_mode = mock_renderer.send_message.await_args.args
    assert (chat_id, text, parse_mode) == (10, "Pick a coin", "HTML")
    assert [[b.callback for b in row] for row in keyboard] == [
        ["refresh"],
        ["coin:btc", "coin:eth"],
        ["coin:sol"],
        ["back"],
        ["main_menu"],
    ]
    assert session.keyboard_message_id == 500


@pytest.mark.asyncio
async def test_prompt_for_unknown_step_renders_nothing(mock_renderer):
    engine = FlowEngine(FlowCatalog(), HandlerRegistry())
    prompts = PromptService(engine, mock_renderer)
    session = Session(user_id=1, chat_id=10, flow_id="gone", step_id="x", ttl=timedelta(minutes=5))

    await prompts.show_step_prompt(session)

    mock_renderer.send_message.assert_not_awaited()
    mock_renderer.edit_message.assert_not_awaited()
