# /flowbot/services/router_service.py

import contextlib
import threading
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping, Optional, Tuple

import structlog

from flowbot.config import strings
from flowbot.models.events import CallbackEvent, CommandEvent, Event, MessageEvent
from flowbot.models.flow import InputKind
from flowbot.models.conversation import Session
from flowbot.services.prompt_service import CALLBACK_BACK, CALLBACK_CANCEL, CALLBACK_MAIN_MENU
from flowbot.services.session_service import SessionStore
from flowbot.services.telegram_service import MessageRenderer
from flowbot.utils.metrics import events_counter, handler_errors_counter, validation_failures_counter
from flowbot.workflows.engine import FlowEngine, OutcomeKind
from flowbot.workflows.registry import AuthPredicate, EventHandler

# The router turns inbound events into conversation transitions. It owns the
# routing tables (commands, callbacks, default message handlers) and runs the
# shared "apply input, advance, render" sequence for live conversations.

log = structlog.get_logger(__name__)

RenderCallback = Callable[[Session, Any], Awaitable[None]]


class Router:
    def __init__(
        self,
        engine: FlowEngine,
        store: SessionStore,
        renderer: MessageRenderer,
        render_step: Optional[RenderCallback] = None,
        serialize_events: bool = True,
        delete_user_input: bool = True,
    ):
        self.engine = engine
        self.store = store
        self.renderer = renderer
        self.render_step = render_step
        self.serialize_events = serialize_events
        self.delete_user_input = delete_user_input

        self._lock = threading.Lock()
        self._commands: Mapping[str, EventHandler] = MappingProxyType({})
        self._callbacks: Mapping[str, EventHandler] = MappingProxyType({})
        self._prefixes: Tuple[Tuple[str, EventHandler], ...] = ()
        self._media_handlers: Mapping[InputKind, EventHandler] = MappingProxyType({})
        self._main_menu_handler: Optional[EventHandler] = None
        self._auth: Optional[AuthPredicate] = None

    # --- Registration ---

    def register_command(self, command: str, handler: EventHandler):
        name = command.removeprefix("/")
        with self._lock:
            self._commands = MappingProxyType({**self._commands, name: handler})

    def register_callback(self, data: str, handler: EventHandler):
        with self._lock:
            self._callbacks = MappingProxyType({**self._callbacks, data: handler})

    def register_callback_prefix(self, prefix: str, handler: EventHandler):
        """Prefixes are tried in registration order; re-registering keeps the original position."""
        with self._lock:
            entries = list(self._prefixes)
            for i, (existing, _) in enumerate(entries):
                if existing == prefix:
                    entries[i] = (prefix, handler)
                    break
            else:
                entries.append((prefix, handler))
            self._prefixes = tuple(entries)

    def _set_media_handler(self, kind: InputKind, handler: Optional[EventHandler]):
        with self._lock:
            updated = dict(self._media_handlers)
            if handler is None:
                updated.pop(kind, None)
            else:
                updated[kind] = handler
            self._media_handlers = MappingProxyType(updated)

    def set_message_handler(self, handler: Optional[EventHandler]):
        self._set_media_handler(InputKind.TEXT, handler)

    def set_photo_handler(self, handler: Optional[EventHandler]):
        self._set_media_handler(InputKind.PHOTO, handler)

    def set_document_handler(self, handler: Optional[EventHandler]):
        self._set_media_handler(InputKind.DOCUMENT, handler)

    def set_main_menu_handler(self, handler: Optional[EventHandler]):
        with self._lock:
            self._main_menu_handler = handler

    def set_auth(self, predicate: Optional[AuthPredicate]):
        with self._lock:
            self._auth = predicate

    def set_render_callback(self, render_step: Optional[RenderCallback]):
        with self._lock:
            self.render_step = render_step

    # --- Helpers ---

    async def _invoke(self, kind: str, func: Callable[..., Awaitable[Any]], *args: Any) -> bool:
        """Run a handler or renderer call; failures are logged and counted, never raised."""
        try:
            await func(*args)
            return True
        except Exception as e:
            handler_errors_counter.labels(kind=kind).inc()
            log.error("handler_failed", kind=kind, error=str(e), exc_info=True)
            return False

    async def is_authorized(self, user_id: int, username: str) -> bool:
        auth = self._auth
        if auth is None:
            return True
        try:
            return bool(await auth(user_id, username))
        except Exception as e:
            log.error("auth_predicate_failed", user_id=user_id, error=str(e), exc_info=True)
            return False

    async def _answer(self, event: CallbackEvent, text: str = ""):
        await self._invoke("renderer", self.renderer.answer_callback, event.callback_id, text)

    async def display(self, session: Session, event: Any = None):
        render = self.render_step
        if render is not None:
            await self._invoke("renderer", render, session, event)

    def _serialized(self, event: Event):
        if not self.serialize_events:
            return contextlib.nullcontext()
        return self.store.serialize(event.user_id, event.chat_id)

    # --- Entry point ---

    async def dispatch(self, event: Event):
        event_type = type(event).__name__
        structlog.contextvars.bind_contextvars(user_id=event.user_id, chat_id=event.chat_id)
        try:
            async with self._serialized(event):
                if isinstance(event, CommandEvent):
                    await self.handle_command(event)
                elif isinstance(event, CallbackEvent):
                    await self.handle_callback(event)
                elif isinstance(event, MessageEvent):
                    await self.handle_message(event)
                else:
                    log.warning("event_type_unsupported", event_type=event_type)
                    return
            events_counter.labels(event_type=event_type, status="handled").inc()
        except Exception as e:
            events_counter.labels(event_type=event_type, status="error").inc()
            log.error("dispatch_failed", event_type=event_type, error=str(e), exc_info=True)
        finally:
            structlog.contextvars.unbind_contextvars("user_id", "chat_id")

    # --- Commands ---

    async def handle_command(self, event: CommandEvent):
        if not await self.is_authorized(event.user_id, event.username):
            log.info("command_unauthorized", command=event.command)
            return

        handler = self._commands.get(event.command)
        if handler is None:
            log.info("command_not_found", command=event.command)
            return

        log.debug("command_received", command=event.command)
        await self._invoke("command", handler, event)

    # --- Callbacks ---

    async def handle_callback(self, event: CallbackEvent):
        if not await self.is_authorized(event.user_id, event.username):
            await self._answer(event)
            return

        data = event.data
        log.debug("callback_received", data=data)

        if data == CALLBACK_MAIN_MENU:
            await self.handle_main_menu(event)
            return
        if data in (CALLBACK_BACK, CALLBACK_CANCEL):
            await self.handle_back(event)
            return

        handler = self._callbacks.get(data)
        if handler is not None:
            await self._invoke("callback", handler, event)
            return

        for prefix, prefix_handler in self._prefixes:
            if data.startswith(prefix):
                await self._invoke("callback", prefix_handler, event)
                return

        session = await self.store.get(event.user_id, event.chat_id)
        if session is not None:
            await self._answer(event)
            await self.handle_conversation_input(event, session, InputKind.CALLBACK, data)
            return

        await self._answer(event)

    async def handle_main_menu(self, event: Any):
        if isinstance(event, CallbackEvent):
            await self._answer(event)
        await self.show_main_menu(event)

    async def show_main_menu(self, event: Any):
        """End any conversation and hand over to the main-menu handler."""
        await self.store.end(event.user_id, event.chat_id)
        handler = self._main_menu_handler
        if handler is None:
            log.debug("main_menu_handler_not_set")
            return
        await self._invoke("main_menu", handler, event)

    async def handle_back(self, event: CallbackEvent):
        await self._answer(event)

        session = await self.store.get(event.user_id, event.chat_id)
        if session is None:
            await self.show_main_menu(event)
            return

        previous = session.rewind()
        if not previous:
            await self.show_main_menu(event)
            return

        await self.store.change_step(event.user_id, event.chat_id, previous)
        session.refresh()
        await self.display(session, event)

    # --- Messages ---

    async def handle_message(self, event: MessageEvent):
        if not await self.is_authorized(event.user_id, event.username):
            return

        session = await self.store.get(event.user_id, event.chat_id)
        if session is not None:
            step = self.engine.current_step(session)
            if step is None:
                log.debug("conversation_step_missing", flow_id=session.flow_id, step_id=session.step_id)
                # Text is swallowed; photos and documents still reach their default handler
                if event.kind == InputKind.TEXT:
                    return
            elif step.input_type.accepts(event.kind):
                await self.handle_conversation_input(event, session, event.kind, event.value, event.file_name)
                return
            else:
                log.debug("conversation_input_not_accepted", step_id=step.id, kind=event.kind.value)

        handler = self._media_handlers.get(event.kind)
        if handler is None:
            log.debug("message_unhandled", kind=event.kind.value)
            return
        await self._invoke("message", handler, event)

    # --- Conversation ---

    async def handle_conversation_input(
        self,
        event: Event,
        session: Session,
        kind: InputKind,
        value: str,
        file_name: str = "",
    ):
        """Apply one input to a live conversation, then advance and render."""
        session.mark_processing()
        try:
            outcome = await self.engine.process_input(event, session, kind, value, file_name)
        except Exception as e:
            handler_errors_counter.labels(kind="step").inc()
            log.error("step_handler_failed", flow_id=session.flow_id, step_id=session.step_id,
                      error=str(e), exc_info=True)
            return
        finally:
            session.mark_waiting()

        if outcome.kind in (OutcomeKind.NO_STEP, OutcomeKind.REJECTED):
            log.debug("conversation_input_ignored", outcome=outcome.kind.value, step_id=session.step_id)
            return

        if outcome.kind == OutcomeKind.VALIDATION_FAILED:
            validation_failures_counter.labels(flow_id=session.flow_id).inc()
            log.info("conversation_validation_failed", step_id=session.step_id, message=outcome.message)
            await self._invoke(
                "renderer", self.renderer.send_message,
                event.chat_id, strings.VALIDATION_ERROR_PREFIX + outcome.message, event.topic_id,
            )
            return

        session.refresh()
        if kind == InputKind.TEXT and self.delete_user_input and event.message_id:
            await self._invoke("renderer", self.renderer.delete_message, event.chat_id, event.message_id)

        if outcome.kind == OutcomeKind.HANDLED_BY_CALLBACK:
            return

        if outcome.next_step:
            await self.advance(session, outcome.next_step, event)

    async def resolve_skips(self, session: Session, step_id: str) -> str:
        """
        Follow skip_if from step_id to the first step that should be shown.
        Returns "" when the chain runs off the end of the flow, or the first
        revisited step when the chain loops.
        """
        visited = set()
        while step_id:
            if step_id in visited:
                log.warning("skip_chain_cycle", flow_id=session.flow_id, step_id=step_id)
                return step_id
            visited.add(step_id)
            step = self.engine.get_step(session.flow_id, step_id)
            if step is None or not await self.engine.should_skip(session, step):
                return step_id
            log.debug("step_skipped", flow_id=session.flow_id, step_id=step_id)
            step_id = step.next_step
        return ""

    async def advance(self, session: Session, next_step: str, event: Any = None):
        target = await self.resolve_skips(session, next_step)
        if not target:
            log.info("conversation_no_step_after_skips", flow_id=session.flow_id, step_id=session.step_id)
            return
        moved = await self.store.change_step(session.user_id, session.chat_id, target)
        if moved is not session:
            # A handler replaced or ended the conversation while this input was processed
            return
        await self.display(session, event)
