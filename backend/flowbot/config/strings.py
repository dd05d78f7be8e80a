# /flowbot/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.

# Validation
INVALID_NUMBER = "Please enter a valid number"
NUMBER_TOO_SMALL = "Number cannot be less than {min}"
NUMBER_TOO_LARGE = "Number cannot be greater than {max}"
INVALID_ADDRESS = "Please enter a valid Ethereum address"
INVALID_EMAIL = "Please enter a valid email address"
RULE_CONFIG_ERROR = "Validation rule configuration error"
INVALID_FORMAT = "Input format is incorrect"
TEXT_TOO_SHORT = "Text must be at least {min_length} characters"
TEXT_TOO_LONG = "Text cannot be longer than {max_length} characters"
VALUE_REQUIRED = "This field is required"
INVALID_INPUT = "Invalid input, please try again"

# Prefix prepended to every validation error sent to the chat
VALIDATION_ERROR_PREFIX = "❌ "

# Navigation buttons
BACK_BUTTON_TEXT = "⬅️ Back"
MAIN_MENU_BUTTON_TEXT = "🏠 Main Menu"

# Fallback main menu shown when no main-menu handler is registered
MAIN_MENU_TEXT = "🏠 Main Menu"
