# /flowbot/workflows/validator.py

"""
Built-in input validators for flow steps.

Every validator takes the raw user input and the step's ValidationRule and
returns a ValidationResult. A failure carries the rule's own error_msg when
one is configured, otherwise the default message from config.strings.

The only side effect in this module is logging a malformed regex rule,
which is a configuration error rather than a user error.
"""

import math
import re
import logging
from typing import Optional, TypedDict

from flowbot.config import strings
from flowbot.models.flow import ValidationRule

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
HEX_DIGITS = set("0123456789abcdefABCDEF")


class ValidationResult(TypedDict):
    """Result of a validation check."""
    is_valid: bool
    error_code: Optional[str]
    message: Optional[str]


def valid() -> ValidationResult:
    return {"is_valid": True, "error_code": None, "message": None}


def invalid(error_code: str, rule: ValidationRule, default_message: str) -> ValidationResult:
    return {
        "is_valid": False,
        "error_code": error_code,
        "message": rule.error_msg or default_message
    }


def _parse_number(raw: str) -> Optional[float]:
    """Parse a plain decimal number; padding, digit separators and nan/inf are not numbers here."""
    if raw != raw.strip() or "_" in raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _parse_bound(raw: str) -> Optional[float]:
    # An empty or unparsable bound is ignored rather than failing every input
    return _parse_number(raw) if raw else None


def validate_number(value: str, rule: ValidationRule) -> ValidationResult:
    """
    Validate a numeric input against optional inclusive bounds.

    Args:
        value: Raw user input
        rule: Rule with optional min and max, given as strings

    Returns:
        ValidationResult; the bound messages quote the configured bound verbatim
    """
    number = _parse_number(value)
    if number is None:
        return invalid("INVALID_NUMBER", rule, strings.INVALID_NUMBER)

    minimum = _parse_bound(rule.min)
    if minimum is not None and number < minimum:
        return invalid("NUMBER_TOO_SMALL", rule, strings.NUMBER_TOO_SMALL.format(min=rule.min))

    maximum = _parse_bound(rule.max)
    if maximum is not None and number > maximum:
        return invalid("NUMBER_TOO_LARGE", rule, strings.NUMBER_TOO_LARGE.format(max=rule.max))

    return valid()


def validate_address(value: str, rule: ValidationRule) -> ValidationResult:
    """Validate an Ethereum-style address: '0x' followed by 40 hex digits."""
    if len(value) != 42 or not value.startswith("0x"):
        return invalid("INVALID_ADDRESS", rule, strings.INVALID_ADDRESS)
    if not all(c in HEX_DIGITS for c in value[2:]):
        return invalid("INVALID_ADDRESS", rule, strings.INVALID_ADDRESS)
    return valid()


def validate_email(value: str, rule: ValidationRule) -> ValidationResult:
    if not EMAIL_PATTERN.fullmatch(value):
        return invalid("INVALID_EMAIL", rule, strings.INVALID_EMAIL)
    return valid()


def validate_regex(value: str, rule: ValidationRule) -> ValidationResult:
    """
    Validate input against the rule's pattern. The pattern may match
    anywhere in the input; anchor it with ^...$ for a full match.
    An empty pattern accepts everything.
    """
    if not rule.pattern:
        return valid()

    try:
        matched = re.search(rule.pattern, value)
    except re.error as e:
        logger.error(f"validation_rule_invalid_pattern: {rule.pattern!r}: {e}")
        return {
            "is_valid": False,
            "error_code": "RULE_CONFIG_ERROR",
            "message": strings.RULE_CONFIG_ERROR
        }

    if not matched:
        return invalid("PATTERN_MISMATCH", rule, strings.INVALID_FORMAT)
    return valid()


def validate_text(value: str, rule: ValidationRule) -> ValidationResult:
    """Validate text length against min_length / max_length (0 means unbounded)."""
    length = len(value)
    if rule.min_length and length < rule.min_length:
        return invalid("TEXT_TOO_SHORT", rule, strings.TEXT_TOO_SHORT.format(min_length=rule.min_length))
    if rule.max_length and length > rule.max_length:
        return invalid("TEXT_TOO_LONG", rule, strings.TEXT_TOO_LONG.format(max_length=rule.max_length))
    return valid()


def validate_required(value: str, rule: ValidationRule) -> ValidationResult:
    if not value.strip():
        return invalid("VALUE_REQUIRED", rule, strings.VALUE_REQUIRED)
    return valid()


BUILTIN_VALIDATORS = {
    "number": validate_number,
    "address": validate_address,
    "email": validate_email,
    "regex": validate_regex,
    "text": validate_text,
    "required": validate_required,
}


def validate_builtin(value: str, rule: ValidationRule) -> ValidationResult:
    """Run the built-in validator for rule.type; unknown types accept the input."""
    validator = BUILTIN_VALIDATORS.get(rule.type)
    if validator is None:
        return valid()
    return validator(value, rule)
