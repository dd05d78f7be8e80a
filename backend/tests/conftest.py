import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock, MagicMock

# Load environment variables FIRST, before any flowbot imports, so that
# pydantic-settings finds the required variables when settings are created.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"))

from flowbot.main import app  # noqa: E402
from flowbot.models.config import BotDefinition  # noqa: E402
from flowbot.services.bot_service import FlowBot  # noqa: E402

FLOWS_FILE = os.path.join(os.path.dirname(__file__), "..", "flows", "bot.json")


@pytest.fixture
def mock_renderer():
    """A MessageRenderer whose calls are recorded instead of sent to Telegram."""
    renderer = MagicMock()
    renderer.send_message = AsyncMock(return_value=500)
    renderer.edit_message = AsyncMock(return_value=None)
    renderer.delete_message = AsyncMock(return_value=None)
    renderer.answer_callback = AsyncMock(return_value=None)
    return renderer


@pytest.fixture
def make_bot(mock_renderer):
    """Builds a FlowBot over the mock renderer from a plain bot-definition dict."""
    def _make(definition: dict, **kwargs) -> FlowBot:
        return FlowBot(mock_renderer, definition=BotDefinition.model_validate(definition), **kwargs)
    return _make


@pytest.fixture
def sample_bot(mock_renderer):
    """FlowBot loaded with the bundled flows/bot.json."""
    return FlowBot(mock_renderer, definition=BotDefinition.from_file(FLOWS_FILE))


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests.
    Flows are loaded from the bundled definition; the cleanup sweep and
    command registration are stubbed out so nothing runs against Telegram.
    """
    mocker.patch("flowbot.utils.lifecycle.settings.flows_path", FLOWS_FILE)
    mocker.patch("flowbot.services.session_service.SessionStore.run_cleanup", new_callable=AsyncMock)
    mocker.patch("flowbot.utils.lifecycle.telegram_service.set_my_commands", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client
