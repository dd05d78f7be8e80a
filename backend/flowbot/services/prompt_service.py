# /flowbot/services/prompt_service.py

import logging
from typing import Any, List, Optional

from flowbot.models.flow import ButtonData, KeyboardDefinition, StepDefinition
from flowbot.models.conversation import Session
from flowbot.services.telegram_service import Keyboard, MessageRenderer
from flowbot.workflows.engine import FlowEngine

logger = logging.getLogger(__name__)

CALLBACK_BACK = "back"
CALLBACK_CANCEL = "cancel"
CALLBACK_MAIN_MENU = "main_menu"


def grid(buttons: List[ButtonData], columns: int) -> Keyboard:
    columns = max(columns, 1)
    return [buttons[i:i + columns] for i in range(0, len(buttons), columns)]


class PromptService:
    """
    Renders the current step of a session: prompt text plus its keyboard.
    Edits the session's keyboard message in place when there is one,
    otherwise sends a new message and remembers its id.
    """

    def __init__(self, engine: FlowEngine, renderer: MessageRenderer):
        self.engine = engine
        self.renderer = renderer

    async def build_keyboard(self, event: Any, session: Session, definition: Optional[KeyboardDefinition]) -> Optional[Keyboard]:
        if definition is None:
            return None

        rows: Keyboard = [list(row) for row in definition.buttons if row]

        if definition.provider:
            dynamic = await self.engine.get_dynamic_keyboard_data(event, session, definition.provider)
            prefixed = [
                ButtonData(text=b.text, url=b.url, callback=definition.callback_prefix + b.callback if not b.url else "")
                for b in dynamic
            ]
            rows.extend(grid(prefixed, definition.columns))

        if definition.add_back:
            rows.append([ButtonData(text=definition.back_text, callback=CALLBACK_BACK)])
        if definition.add_main:
            rows.append([ButtonData(text=definition.main_text, callback=CALLBACK_MAIN_MENU)])

        return rows or None

    async def show_step_prompt(self, session: Session, event: Any = None):
        """Display the session's current step. Unknown flows or steps render nothing."""
        step: Optional[StepDefinition] = self.engine.current_step(session)
        if step is None:
            logger.debug(f"prompt_skipped_no_step: {session.flow_id}/{session.step_id}")
            return

        keyboard = await self.build_keyboard(event, session, step.keyboard)

        if session.keyboard_message_id:
            await self.renderer.edit_message(
                session.chat_id, session.keyboard_message_id, step.prompt_text, keyboard, step.parse_mode
            )
            return

        message_id = await self.renderer.send_message(
            session.chat_id, step.prompt_text, session.topic_id, keyboard, step.parse_mode
        )
        if message_id:
            session.set_keyboard_message_id(message_id)
