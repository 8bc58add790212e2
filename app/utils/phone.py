"""
Phone and identifier normalization used when reading imported values.
"""

import re
from typing import Any, Optional
import logging

logger = logging.getLogger(__name__)

# Loose shape check used by column type inference: digits plus common separators.
PHONE_LIKE_PATTERN = re.compile(r"^[\d\s\-()+ ]{10,}$")
# Validation for a value mapped onto a phone target field.
PHONE_VALUE_PATTERN = re.compile(r"^[\d\s\-()+ .]{7,}$")


def digits_only(value: Any) -> str:
    """Strip every non-digit character."""
    if value is None:
        return ""
    return re.sub(r"\D", "", str(value))


def normalize_us_phone(value: Any) -> Optional[str]:
    """
    Reduce a phone number to its digits, dropping a leading US country code.

    ``+1 (415) 555-1234`` -> ``4155551234``. Numbers that are not 11 digits
    starting with ``1`` keep all their digits.
    """
    if value is None or value == "":
        return None

    digits = digits_only(value)
    if len(digits) == 11 and digits.startswith("1"):
        return digits[1:]
    return digits


def looks_like_phone(value: str) -> bool:
    return bool(PHONE_LIKE_PATTERN.match(value))


def validate_phone(value: Any) -> bool:
    """True if the value is plausibly a phone number (7+ digits/separators)."""
    if value is None:
        return False
    return bool(PHONE_VALUE_PATTERN.match(str(value).strip()))
