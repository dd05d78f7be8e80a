# /flowbot/models/flow.py

import json
import logging
from enum import Enum
from datetime import timedelta
from typing import Optional, List, Dict
from pydantic import BaseModel, Field, field_validator, model_validator

from flowbot.config import strings

logger = logging.getLogger(__name__)


class InputKind(str, Enum):
    """What kind of user input a step expects."""
    TEXT = "text"
    CALLBACK = "callback"
    ANY = "any"
    NONE = "none"
    PHOTO = "photo"
    DOCUMENT = "document"

    def accepts(self, kind: "InputKind") -> bool:
        # ANY covers typed answers and button presses, never uploads
        if self == InputKind.ANY:
            return kind in (InputKind.TEXT, InputKind.CALLBACK)
        if self == InputKind.NONE:
            return False
        return self == kind


class ButtonData(BaseModel):
    """A single inline button. Returned by keyboard providers and used for static rows."""
    text: str
    callback: str = ""
    url: str = ""


class ValidationRule(BaseModel):
    type: str = Field(..., description="number, address, email, regex, custom, text or required")
    pattern: str = ""
    error_msg: str = ""
    min: str = ""
    max: str = ""
    min_length: int = 0
    max_length: int = 0
    custom: str = ""


class BranchDefinition(BaseModel):
    condition: str = ""
    next_step: str = ""
    handler: str = ""


class KeyboardDefinition(BaseModel):
    buttons: List[List[ButtonData]] = Field(default_factory=list)
    provider: str = ""
    callback_prefix: str = ""
    columns: int = 2
    add_back: bool = False
    add_main: bool = False
    back_text: str = strings.BACK_BUTTON_TEXT
    main_text: str = strings.MAIN_MENU_BUTTON_TEXT

    @field_validator("columns")
    @classmethod
    def columns_must_be_positive(cls, v):
        return v if v > 0 else 2


class StepDefinition(BaseModel):
    id: str = ""
    prompt_text: str = ""
    keyboard: Optional[KeyboardDefinition] = None
    input_type: InputKind = InputKind.NONE
    validation: Optional[ValidationRule] = None
    next_step: str = ""
    branches: List[BranchDefinition] = Field(default_factory=list)
    on_complete: str = ""
    store_as: str = ""
    skip_if: str = ""
    parse_mode: str = ""


class FlowDefinition(BaseModel):
    """
    A named, multi-step interaction. Steps are keyed by id; the flow is
    rejected at load time if the initial step is missing.
    """
    id: str
    name: str = ""
    initial_step: str
    steps: Dict[str, StepDefinition]
    ttl: Optional[timedelta] = None

    @field_validator("id", "initial_step")
    @classmethod
    def must_not_be_empty(cls, v):
        if not v:
            raise ValueError("flow id and initial_step cannot be empty")
        return v

    @model_validator(mode="after")
    def check_steps(self):
        if not self.steps:
            raise ValueError(f"flow '{self.id}' has no steps")
        if self.initial_step not in self.steps:
            raise ValueError(f"flow '{self.id}' initial step '{self.initial_step}' not found")
        for step_id, step in self.steps.items():
            if not step.id:
                step.id = step_id
        return self

    def get_step(self, step_id: str) -> Optional[StepDefinition]:
        return self.steps.get(step_id)

    def get_ttl(self, default_ttl: timedelta) -> timedelta:
        if self.ttl and self.ttl > timedelta(0):
            return self.ttl
        return default_ttl


class FlowCatalog:
    """Read-only lookup of flow definitions by id."""

    def __init__(self, flows: Optional[Dict[str, FlowDefinition]] = None):
        self._flows: Dict[str, FlowDefinition] = dict(flows or {})

    def get_flow(self, flow_id: str) -> Optional[FlowDefinition]:
        return self._flows.get(flow_id)

    def get_step(self, flow_id: str, step_id: str) -> Optional[StepDefinition]:
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        return flow.get_step(step_id)

    def add_flow(self, flow: FlowDefinition):
        self._flows[flow.id] = flow

    def flow_ids(self) -> List[str]:
        return list(self._flows)

    @classmethod
    def from_definition(cls, definition) -> "FlowCatalog":
        """Builds a catalog from a loaded BotDefinition."""
        return cls(definition.flows)

    @classmethod
    def from_file(cls, path: str) -> "FlowCatalog":
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        flows = raw.get("flows", raw)
        catalog = cls()
        for flow_id, flow_data in flows.items():
            flow_data.setdefault("id", flow_id)
            catalog.add_flow(FlowDefinition.model_validate(flow_data))
        logger.info(f"Loaded {len(catalog._flows)} flows from {path}")
        return catalog
