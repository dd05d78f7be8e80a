# /flowbot/services/bot_service.py

import logging
from datetime import timedelta
from typing import Any, Optional, Set

from flowbot.config.settings import settings
from flowbot.models.config import BotDefinition, CallbackConfig, CommandConfig
from flowbot.models.conversation import Session
from flowbot.models.events import CallbackEvent
from flowbot.models.flow import FlowCatalog
from flowbot.services.prompt_service import PromptService
from flowbot.services.router_service import Router
from flowbot.services.session_service import SessionStore
from flowbot.services.telegram_service import MessageRenderer, telegram_service
from flowbot.workflows.engine import FlowEngine
from flowbot.workflows.registry import EventHandler, HandlerRegistry

logger = logging.getLogger(__name__)

FLOW_CALLBACK_PREFIX = "flow:"


class FlowBot:
    """
    Wires the conversation engine together: flow catalog, handler registry,
    engine, session store, router and prompt rendering. Commands and
    callbacks declared in the bot definition are registered on the router.
    """

    def __init__(
        self,
        renderer: MessageRenderer,
        definition: Optional[BotDefinition] = None,
        registry: Optional[HandlerRegistry] = None,
        default_ttl: timedelta = timedelta(minutes=30),
        strict_conditions: bool = False,
        serialize_events: bool = True,
        delete_user_input: bool = True,
        allowed_user_ids: Optional[Set[int]] = None,
    ):
        self.renderer = renderer
        self.registry = registry or HandlerRegistry()
        self.definition = definition or BotDefinition()
        self.allowed_user_ids = set(allowed_user_ids or ())

        self.catalog = FlowCatalog.from_definition(self.definition)
        self.engine = FlowEngine(self.catalog, self.registry, strict_conditions=strict_conditions)
        self.store = SessionStore(
            default_ttl,
            on_start=self._on_start,
            on_end=self._on_end,
            on_step_change=self._on_step_change,
        )
        self.prompts = PromptService(self.engine, renderer)
        self.router = Router(
            self.engine,
            self.store,
            renderer,
            render_step=self.prompts.show_step_prompt,
            serialize_events=serialize_events,
            delete_user_input=delete_user_input,
        )
        self.router.set_auth(self.check_auth)
        self.router.set_main_menu_handler(self.show_default_main_menu)
        self.router.register_callback_prefix(FLOW_CALLBACK_PREFIX, self._start_flow_from_callback)
        self._apply_definition()

    # --- Lifecycle hooks, resolved from the registry at call time ---

    async def _on_start(self, session: Session):
        if self.registry.on_start is not None:
            await self.registry.on_start(session)

    async def _on_end(self, session: Session):
        if self.registry.on_end is not None:
            await self.registry.on_end(session)

    async def _on_step_change(self, session: Session, old_step: str, new_step: str):
        if self.registry.on_step_change is not None:
            await self.registry.on_step_change(session, old_step, new_step)

    async def check_auth(self, user_id: int, username: str) -> bool:
        if self.registry.auth is not None:
            return await self.registry.auth(user_id, username)
        if self.allowed_user_ids:
            return user_id in self.allowed_user_ids
        return True

    # --- Flow definitions ---

    async def load_flows(self, path: str):
        """Replace the bot definition with the one in `path` and re-register its routes."""
        self.definition = BotDefinition.from_file(path)
        self.catalog = FlowCatalog.from_definition(self.definition)
        self.engine.catalog = self.catalog
        self._apply_definition()
        logger.info(
            f"Bot definition loaded from {path}: {len(self.definition.flows)} flows, "
            f"{len(self.definition.commands)} commands, {len(self.definition.callbacks)} callbacks"
        )

    def _named_handler(self, table: str, name: str) -> EventHandler:
        async def invoke(event: Any):
            handler = getattr(self.registry, table).get(name)
            if handler is None:
                logger.warning(f"handler_not_registered: {table}[{name}]")
                return
            await handler(event)
        return invoke

    def _command_handler(self, config: CommandConfig) -> Optional[EventHandler]:
        if config.handler:
            return self._named_handler("command_handlers", config.handler)
        if config.action == "start_flow":
            async def start_flow(event):
                session = await self.start_conversation(
                    event.user_id, event.chat_id, event.topic_id, config.target, event=event,
                )
                if session is None:
                    await self.router.show_main_menu(event)
            return start_flow
        if config.action == "show_menu":
            return self.router.show_main_menu
        logger.warning(f"command_action_unknown: /{config.command} action={config.action}")
        return None

    def _callback_handler(self, config: CallbackConfig) -> Optional[EventHandler]:
        if config.handler:
            return self._named_handler("callback_handlers", config.handler)
        if config.action == "start_flow":
            async def start_flow(event: CallbackEvent):
                await self.renderer.answer_callback(event.callback_id, config.answer_text)
                session = await self.start_conversation(
                    event.user_id, event.chat_id, event.topic_id, config.target,
                    keyboard_message_id=event.message_id, event=event,
                )
                if session is None:
                    await self.router.show_main_menu(event)
            return start_flow
        if config.action == "show_menu":
            return self.router.handle_main_menu
        if config.action == "answer":
            async def answer(event: CallbackEvent):
                await self.renderer.answer_callback(event.callback_id, config.answer_text)
            return answer
        logger.warning(f"callback_action_unknown: {config.callback} action={config.action}")
        return None

    def _apply_definition(self):
        for command in self.definition.commands:
            handler = self._command_handler(command)
            if handler is not None:
                self.router.register_command(command.command, handler)

        for callback in self.definition.callbacks:
            handler = self._callback_handler(callback)
            if handler is None:
                continue
            if callback.is_prefix:
                self.router.register_callback_prefix(callback.callback, handler)
            else:
                self.router.register_callback(callback.callback, handler)

    # --- Conversations ---

    async def start_conversation(
        self,
        user_id: int,
        chat_id: int,
        topic_id: int,
        flow_id: str,
        keyboard_message_id: int = 0,
        event: Any = None,
    ) -> Optional[Session]:
        """
        Start `flow_id` for the user and render its first step. When
        keyboard_message_id is given the first prompt edits that message.
        Returns None for an unknown flow; the command and callback actions
        that start flows fall back to the main menu in that case.
        """
        flow = self.engine.get_flow(flow_id)
        if flow is None:
            logger.warning(f"start_conversation_unknown_flow: {flow_id}")
            return None

        session = await self.store.start(
            user_id, chat_id, topic_id, flow.id, flow.initial_step,
            flow.get_ttl(self.store.default_ttl),
        )
        if keyboard_message_id:
            session.set_keyboard_message_id(keyboard_message_id)

        first_step = await self.router.resolve_skips(session, flow.initial_step)
        if first_step and first_step != session.step_id:
            await self.store.change_step(user_id, chat_id, first_step)

        await self.router.display(session, event)
        return session

    async def end_conversation(self, user_id: int, chat_id: int) -> Optional[Session]:
        return await self.store.end(user_id, chat_id)

    async def _start_flow_from_callback(self, event: CallbackEvent):
        await self.renderer.answer_callback(event.callback_id)
        flow_id = event.data[len(FLOW_CALLBACK_PREFIX):]
        session = await self.start_conversation(
            event.user_id, event.chat_id, event.topic_id, flow_id,
            keyboard_message_id=event.message_id, event=event,
        )
        if session is None:
            await self.router.show_main_menu(event)

    async def show_default_main_menu(self, event: Any):
        """Render the configured main menu, editing the pressed keyboard when there is one."""
        menu = self.definition.main_menu
        keyboard = [list(row) for row in menu.buttons if row] or None
        if isinstance(event, CallbackEvent) and event.message_id:
            await self.renderer.edit_message(event.chat_id, event.message_id, menu.text, keyboard)
            return
        await self.renderer.send_message(event.chat_id, menu.text, event.topic_id, keyboard)


# Globally accessible instance
flow_bot = FlowBot(
    telegram_service,
    default_ttl=timedelta(minutes=settings.default_ttl_minutes),
    strict_conditions=settings.strict_conditions,
    serialize_events=settings.serialize_session_events,
    delete_user_input=settings.delete_user_input,
    allowed_user_ids=settings.get_allowed_user_ids(),
)
