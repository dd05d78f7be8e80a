# /flowbot/workflows/conditions.py

"""
Branch and skip conditions.

Condition strings from flow definitions are parsed once into a small closed
set of forms. Anything that is not an equality test is kept as CUSTOM and
is only meaningful to a registered condition evaluator.
"""

from enum import Enum
from functools import lru_cache
from dataclasses import dataclass
from typing import Any, Mapping

QUOTES = "\"'"


class ConditionKind(str, Enum):
    ALWAYS = "always"
    INPUT_EQUALS = "input_equals"
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CUSTOM = "custom"


@dataclass(frozen=True)
class Condition:
    kind: ConditionKind
    key: str = ""
    value: str = ""
    expression: str = ""


ALWAYS = Condition(ConditionKind.ALWAYS)


def _split_comparison(expression: str, operator: str):
    parts = expression.split(operator)
    if len(parts) != 2:
        return None
    key = parts[0].strip().removeprefix("data.")
    value = parts[1].strip().strip(QUOTES)
    return key, value


@lru_cache(maxsize=1024)
def parse_condition(expression: str) -> Condition:
    """
    Parse a condition string.

    Supported forms:
        ""                    -> ALWAYS
        input == "value"      -> INPUT_EQUALS, compared with the raw user input
        data.key == "value"   -> EQUALS (the data. prefix is optional)
        data.key != "value"   -> NOT_EQUALS
        anything else         -> CUSTOM
    """
    if not expression:
        return ALWAYS

    equals = _split_comparison(expression, "==")
    if equals is not None:
        key, value = equals
        if expression.startswith("input") and key == "input":
            return Condition(ConditionKind.INPUT_EQUALS, key=key, value=value, expression=expression)
        return Condition(ConditionKind.EQUALS, key=key, value=value, expression=expression)

    not_equals = _split_comparison(expression, "!=")
    if not_equals is not None:
        key, value = not_equals
        return Condition(ConditionKind.NOT_EQUALS, key=key, value=value, expression=expression)

    return Condition(ConditionKind.CUSTOM, expression=expression)


def _as_string(value: Any) -> str:
    return value if isinstance(value, str) else ""


def evaluate_builtin(condition: Condition, data: Mapping[str, Any], strict: bool = False) -> bool:
    """
    Evaluate a parsed condition against session data using string equality.
    Non-string values compare as "". CUSTOM conditions cannot be decided
    here: they pass unless strict is set.
    """
    if condition.kind == ConditionKind.ALWAYS:
        return True
    if condition.kind in (ConditionKind.EQUALS, ConditionKind.INPUT_EQUALS):
        return _as_string(data.get(condition.key)) == condition.value
    if condition.kind == ConditionKind.NOT_EQUALS:
        return _as_string(data.get(condition.key)) != condition.value
    return not strict


def matches_input(condition: Condition, user_input: str) -> bool:
    return condition.kind == ConditionKind.INPUT_EQUALS and user_input == condition.value
