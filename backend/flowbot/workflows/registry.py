# /flowbot/workflows/registry.py

import logging
import threading
from types import MappingProxyType
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Any

from flowbot.models.flow import ButtonData
from flowbot.models.conversation import Session
from flowbot.workflows.validator import ValidationResult

# This file holds every piece of user code that flow definitions refer to by
# name: step handlers, keyboard providers, validators and the lifecycle hooks.
# Tables are replaced wholesale on registration so readers never see a
# half-updated mapping and need no lock.

logger = logging.getLogger(__name__)

StepHandler = Callable[[Any, Session], Awaitable[None]]
KeyboardProvider = Callable[[Any, Session], Awaitable[List[ButtonData]]]
Validator = Callable[[str, Session], Awaitable[ValidationResult]]
ConditionEvaluator = Callable[[Session, str], Awaitable[bool]]
EventHandler = Callable[[Any], Awaitable[None]]
AuthPredicate = Callable[[int, str], Awaitable[bool]]
SessionHook = Callable[[Session], Awaitable[None]]
StepChangeHook = Callable[[Session, str, str], Awaitable[None]]


class HandlerRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self.step_handlers: Mapping[str, StepHandler] = MappingProxyType({})
        self.keyboard_providers: Mapping[str, KeyboardProvider] = MappingProxyType({})
        self.validators: Mapping[str, Validator] = MappingProxyType({})
        self.command_handlers: Mapping[str, EventHandler] = MappingProxyType({})
        self.callback_handlers: Mapping[str, EventHandler] = MappingProxyType({})
        self.condition_evaluator: Optional[ConditionEvaluator] = None
        self.auth: Optional[AuthPredicate] = None
        self.on_start: Optional[SessionHook] = None
        self.on_end: Optional[SessionHook] = None
        self.on_step_change: Optional[StepChangeHook] = None

    def _add(self, table: str, name: str, func: Callable) -> "HandlerRegistry":
        if not name:
            raise ValueError(f"Cannot register an unnamed entry in {table}")
        with self._lock:
            updated: Dict[str, Callable] = dict(getattr(self, table))
            if name in updated:
                logger.warning(f"registry_overwrite: {table}[{name}]")
            updated[name] = func
            setattr(self, table, MappingProxyType(updated))
        return self

    def register_step_handler(self, name: str, handler: StepHandler) -> "HandlerRegistry":
        return self._add("step_handlers", name, handler)

    def register_keyboard_provider(self, name: str, provider: KeyboardProvider) -> "HandlerRegistry":
        return self._add("keyboard_providers", name, provider)

    def register_validator(self, name: str, validator: Validator) -> "HandlerRegistry":
        return self._add("validators", name, validator)

    def register_command_handler(self, name: str, handler: EventHandler) -> "HandlerRegistry":
        return self._add("command_handlers", name, handler)

    def register_callback_handler(self, name: str, handler: EventHandler) -> "HandlerRegistry":
        return self._add("callback_handlers", name, handler)

    def set_condition_evaluator(self, evaluator: Optional[ConditionEvaluator]) -> "HandlerRegistry":
        with self._lock:
            self.condition_evaluator = evaluator
        return self

    def set_auth(self, predicate: Optional[AuthPredicate]) -> "HandlerRegistry":
        with self._lock:
            self.auth = predicate
        return self

    def set_hooks(
        self,
        on_start: Optional[SessionHook] = None,
        on_end: Optional[SessionHook] = None,
        on_step_change: Optional[StepChangeHook] = None,
    ) -> "HandlerRegistry":
        with self._lock:
            if on_start is not None:
                self.on_start = on_start
            if on_end is not None:
                self.on_end = on_end
            if on_step_change is not None:
                self.on_step_change = on_step_change
        return self
