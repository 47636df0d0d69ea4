"""
Validation helpers for Shiprocket payloads.

Pure functions; every failure raises ShiprocketInvalidDataError naming the
offending field so the message can be shown to an operator as-is.
"""
import re
from typing import Any, Optional

from shiprocket_fulfillment.core.exceptions import ShiprocketInvalidDataError

PHONE_LENGTH = 10
PINCODE_PATTERN = re.compile(r"^\d{6}$")
NON_DIGITS = re.compile(r"[^0-9]")


def digits_only(value: Any) -> str:
    """Strip everything except 0-9."""
    return NON_DIGITS.sub("", str(value))


def validate_phone(phone: Optional[Any], field_name: str = "Phone") -> str:
    """
    Sanitize an Indian phone number to its 10 digits.

    Spaces, dashes and brackets are dropped. A country prefix is not
    stripped, so "+91 98765 43210" is rejected as 12 digits.
    """
    if phone is None or phone == "":
        raise ShiprocketInvalidDataError(f"{field_name} is required", field=field_name)

    cleaned = digits_only(phone)
    if len(cleaned) != PHONE_LENGTH:
        raise ShiprocketInvalidDataError(
            f"{field_name} must be {PHONE_LENGTH} digits, got {len(cleaned)}: {phone}",
            field=field_name,
        )
    return cleaned


def validate_pincode(pincode: Optional[Any], field_name: str = "Pincode") -> str:
    """Sanitize an Indian postal code to exactly 6 digits."""
    if pincode is None or pincode == "":
        raise ShiprocketInvalidDataError(f"{field_name} is required", field=field_name)

    cleaned = digits_only(pincode)
    if not PINCODE_PATTERN.match(cleaned):
        raise ShiprocketInvalidDataError(
            f"{field_name} must be 6 digits, got {len(cleaned)}: {pincode}",
            field=field_name,
        )
    return cleaned


def is_valid_pincode(pincode: Optional[str]) -> bool:
    """Strict check used for query parameters: no sanitizing, exactly 6 digits."""
    return bool(pincode) and bool(PINCODE_PATTERN.match(pincode))


def require_field(value: Any, field_name: str) -> Any:
    """Return value unchanged, or raise if it is None or an empty string."""
    if value is None or value == "":
        raise ShiprocketInvalidDataError(f"Missing required field: {field_name}", field=field_name)
    return value
