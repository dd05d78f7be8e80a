# /flowbot/models/config.py

import json
from typing import List, Dict
from pydantic import BaseModel, Field, model_validator

from flowbot.config import strings
from flowbot.models.flow import ButtonData, FlowDefinition


class CommandConfig(BaseModel):
    """A slash command either bound to a named handler or to a built-in action."""
    command: str = Field(..., description="Command name, with or without the leading slash")
    description: str = Field(default="", description="Shown in the client's command list")
    handler: str = Field(default="", description="Name of a registered command handler")
    action: str = Field(default="", description="Built-in action: 'start_flow' or 'show_menu'")
    target: str = Field(default="", description="Flow id for 'start_flow'")

    @model_validator(mode="after")
    def handler_or_action(self):
        if not self.handler and not self.action:
            raise ValueError(f"command '{self.command}' needs a handler or an action")
        if self.action == "start_flow" and not self.target:
            raise ValueError(f"command '{self.command}' uses start_flow without a target flow")
        return self


class CallbackConfig(BaseModel):
    """An inline-button callback bound to a named handler or a built-in action."""
    callback: str = Field(..., description="Callback data, or a prefix when is_prefix is set")
    is_prefix: bool = Field(default=False)
    handler: str = Field(default="")
    action: str = Field(default="", description="Built-in action: 'start_flow', 'show_menu' or 'answer'")
    target: str = Field(default="")
    answer_text: str = Field(default="", description="Toast text for the 'answer' action")

    @model_validator(mode="after")
    def handler_or_action(self):
        if not self.handler and not self.action:
            raise ValueError(f"callback '{self.callback}' needs a handler or an action")
        return self


class MainMenuConfig(BaseModel):
    """Fallback main menu rendered when no main-menu handler is registered."""
    text: str = Field(default=strings.MAIN_MENU_TEXT)
    buttons: List[List[ButtonData]] = Field(default_factory=list)


class BotDefinition(BaseModel):
    """
    Static bot configuration loaded from the flows file.
    This is read-only at runtime; conversation state lives in the session store.
    """
    flows: Dict[str, FlowDefinition] = Field(default_factory=dict)
    commands: List[CommandConfig] = Field(default_factory=list)
    callbacks: List[CallbackConfig] = Field(default_factory=list)
    main_menu: MainMenuConfig = Field(default_factory=MainMenuConfig)
    register_commands: bool = Field(default=True, description="Publish commands with setMyCommands on startup")

    @model_validator(mode="before")
    @classmethod
    def fill_flow_ids(cls, data):
        if isinstance(data, dict):
            for flow_id, flow in (data.get("flows") or {}).items():
                if isinstance(flow, dict):
                    flow.setdefault("id", flow_id)
        return data

    @classmethod
    def from_file(cls, path: str) -> "BotDefinition":
        with open(path, "r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))
