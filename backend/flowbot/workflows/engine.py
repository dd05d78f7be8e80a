# /flowbot/workflows/engine.py

"""
Flow execution engine.

The engine is stateless: it reads flow definitions from the catalog and
user code from the registry, and applies one user input to one session.
It never sends messages and never touches the session index; moving the
session to the next step and rendering it are the router's job.
"""

import logging
from enum import Enum
from dataclasses import dataclass
from typing import Optional, List, Any

from flowbot.config import strings
from flowbot.models.flow import (
    BranchDefinition,
    ButtonData,
    FlowCatalog,
    FlowDefinition,
    InputKind,
    StepDefinition,
)
from flowbot.models.conversation import Session
from flowbot.workflows.conditions import ConditionKind, evaluate_builtin, matches_input, parse_condition
from flowbot.workflows.registry import HandlerRegistry
from flowbot.workflows.validator import ValidationResult, validate_builtin, valid

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    CONTINUE = "continue"
    HANDLED_BY_CALLBACK = "handled_by_callback"
    VALIDATION_FAILED = "validation_failed"
    REJECTED = "rejected"
    NO_STEP = "no_step"


@dataclass(frozen=True)
class StepOutcome:
    """What happened when an input was applied to the current step."""
    kind: OutcomeKind
    next_step: str = ""
    message: str = ""

    @classmethod
    def proceed(cls, next_step: str) -> "StepOutcome":
        return cls(OutcomeKind.CONTINUE, next_step=next_step)

    @classmethod
    def failed(cls, message: str) -> "StepOutcome":
        return cls(OutcomeKind.VALIDATION_FAILED, message=message)


NO_STEP = StepOutcome(OutcomeKind.NO_STEP)
REJECTED = StepOutcome(OutcomeKind.REJECTED)
HANDLED_BY_CALLBACK = StepOutcome(OutcomeKind.HANDLED_BY_CALLBACK)


class FlowEngine:
    def __init__(self, catalog: FlowCatalog, registry: HandlerRegistry, strict_conditions: bool = False):
        self.catalog = catalog
        self.registry = registry
        self.strict_conditions = strict_conditions

    def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return self.catalog.get_flow(flow_id)

    def get_step(self, flow_id: str, step_id: str) -> Optional[StepDefinition]:
        return self.catalog.get_step(flow_id, step_id)

    def current_step(self, session: Session) -> Optional[StepDefinition]:
        return self.get_step(session.flow_id, session.step_id)

    async def validate_input(self, session: Session, value: str) -> ValidationResult:
        """
        Validate user input against the current step's rule.
        No step, no rule, an unknown rule type or an unregistered custom
        validator all accept the input.
        """
        step = self.current_step(session)
        if step is None or step.validation is None:
            return valid()

        rule = step.validation
        if rule.type != "custom":
            return validate_builtin(value, rule)

        validator = self.registry.validators.get(rule.custom) if rule.custom else None
        if validator is None:
            logger.debug(f"custom_validator_not_registered: {rule.custom}")
            return valid()

        result = await validator(value, session)
        if not result["is_valid"] and not result.get("message"):
            result = {**result, "message": rule.error_msg or strings.INVALID_INPUT}
        return result

    async def evaluate_condition(self, session: Session, expression: str) -> bool:
        """
        Evaluate a condition against session data. A registered condition
        evaluator sees every non-empty expression first; otherwise the
        built-in equality forms apply.
        """
        if not expression:
            return True

        evaluator = self.registry.condition_evaluator
        if evaluator is not None:
            return await evaluator(session, expression)

        condition = parse_condition(expression)
        if condition.kind == ConditionKind.CUSTOM:
            logger.debug(f"condition_unrecognized: {expression!r} strict={self.strict_conditions}")
        return evaluate_builtin(condition, session.snapshot(), strict=self.strict_conditions)

    async def _branch_matches(self, session: Session, branch: BranchDefinition, user_input: str) -> bool:
        condition = parse_condition(branch.condition)
        if condition.kind == ConditionKind.INPUT_EQUALS:
            return matches_input(condition, user_input)
        return await self.evaluate_condition(session, branch.condition)

    async def resolve_branch(self, session: Session, user_input: str) -> Optional[BranchDefinition]:
        """The first branch of the current step whose condition holds, if any."""
        step = self.current_step(session)
        if step is None:
            return None
        for branch in step.branches:
            if await self._branch_matches(session, branch, user_input):
                return branch
        return None

    async def determine_next_step(self, session: Session, user_input: str) -> str:
        """
        Pick the next step id: the first matching branch wins, otherwise the
        step's default next_step. Returns "" when there is nowhere to go.
        """
        step = self.current_step(session)
        if step is None:
            return ""
        branch = await self.resolve_branch(session, user_input)
        if branch is not None:
            return branch.next_step
        return step.next_step

    async def execute_step_handler(self, event: Any, session: Session, name: str):
        """Run a named step handler. Unregistered names are a no-op; handler errors propagate."""
        handler = self.registry.step_handlers.get(name)
        if handler is None:
            logger.debug(f"step_handler_not_registered: {name}")
            return
        await handler(event, session)

    async def get_dynamic_keyboard_data(self, event: Any, session: Session, provider: str) -> List[ButtonData]:
        func = self.registry.keyboard_providers.get(provider)
        if func is None:
            logger.debug(f"keyboard_provider_not_registered: {provider}")
            return []
        return list(await func(event, session) or [])

    async def should_skip(self, session: Session, step: StepDefinition) -> bool:
        return bool(step.skip_if) and await self.evaluate_condition(session, step.skip_if)

    async def process_input(
        self,
        event: Any,
        session: Session,
        kind: InputKind,
        value: str,
        file_name: str = "",
    ) -> StepOutcome:
        """
        Apply one input to the session's current step.

        Args:
            event: The inbound event, passed through to handlers
            session: The live session
            kind: TEXT, CALLBACK, PHOTO or DOCUMENT
            value: Text, callback data or the uploaded file id
            file_name: Original name of an uploaded document

        Returns:
            StepOutcome. On CONTINUE the session has stored the input and
            recorded history, but is still on the old step.
        """
        step = self.current_step(session)
        if step is None:
            return NO_STEP

        if not step.input_type.accepts(kind):
            logger.debug(f"step_rejected_input: {session.flow_id}/{step.id} expects {step.input_type.value}, got {kind.value}")
            return REJECTED

        if kind == InputKind.TEXT:
            result = await self.validate_input(session, value)
            if not result["is_valid"]:
                return StepOutcome.failed(result.get("message") or strings.INVALID_INPUT)

        history_value = value
        if step.store_as:
            session.set(step.store_as, value)
        if kind == InputKind.PHOTO:
            if step.store_as:
                session.set(f"{step.store_as}_file_id", value)
            history_value = f"photo:{value}"
        elif kind == InputKind.DOCUMENT:
            if step.store_as:
                session.set(f"{step.store_as}_file_id", value)
                session.set(f"{step.store_as}_file_name", file_name)
            history_value = f"doc:{value}"
        session.add_history(step.id, history_value)

        if step.on_complete:
            await self.execute_step_handler(event, session, step.on_complete)
            return HANDLED_BY_CALLBACK

        branch = await self.resolve_branch(session, value)
        if branch is None:
            return StepOutcome.proceed(step.next_step)
        if branch.handler:
            await self.execute_step_handler(event, session, branch.handler)
        return StepOutcome.proceed(branch.next_step)
