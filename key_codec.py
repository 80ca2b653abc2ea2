"""
License key and machine id formats.

License keys look like PS-XXXX-XXXX-XXXX (X = hex digit) and are stored
uppercase. Machine ids are 32 hex characters, stored lowercase.
"""

import random
import re
from dataclasses import dataclass
from typing import Optional

KEY_PREFIX = "PS"
KEY_LENGTH = 17  # PS-XXXX-XXXX-XXXX
GROUP_SIZE = 4
GROUP_COUNT = 3
HEX_DIGITS = "0123456789ABCDEF"

LICENSE_KEY_PATTERN = re.compile(r"^PS-[A-F0-9]{4}-[A-F0-9]{4}-[A-F0-9]{4}$")
MACHINE_ID_PATTERN = re.compile(r"^[a-fA-F0-9]{32}$")

_NOT_HEX_OR_DASH = re.compile(r"[^A-F0-9-]")


@dataclass(frozen=True)
class KeyFormatResult:
    valid: bool
    key: Optional[str] = None
    error: Optional[str] = None


def generate() -> str:
    """Generate a new license key. Uniqueness is enforced by the store, not here."""
    groups = [
        "".join(random.choice(HEX_DIGITS) for _ in range(GROUP_SIZE))
        for _ in range(GROUP_COUNT)
    ]
    return "-".join([KEY_PREFIX] + groups)


def validate_format(raw) -> KeyFormatResult:
    if not raw or not isinstance(raw, str):
        return KeyFormatResult(valid=False, error="License key is required")

    key = raw.strip().upper()
    if not LICENSE_KEY_PATTERN.fullmatch(key):
        return KeyFormatResult(valid=False, error="Invalid format. Use: PS-XXXX-XXXX-XXXX")

    return KeyFormatResult(valid=True, key=key)


def format_as_typed(partial: Optional[str]) -> str:
    """
    Format partially typed input towards PS-XXXX-XXXX-XXXX.

    Safe to call on every keystroke: formatting an already formatted value
    returns it unchanged.
    """
    if not partial:
        return ""

    # "P" and "S" are not hex digits, so the prefix never survives filtering
    body = _NOT_HEX_OR_DASH.sub("", partial.upper()).replace("-", "")

    groups = [body[i:i + GROUP_SIZE] for i in range(0, GROUP_SIZE * GROUP_COUNT, GROUP_SIZE)]
    formatted = "-".join([KEY_PREFIX] + [g for g in groups if g])
    return formatted[:KEY_LENGTH]


def is_valid_machine_id(value) -> bool:
    return isinstance(value, str) and bool(MACHINE_ID_PATTERN.fullmatch(value))


def normalize_machine_id(value: str) -> str:
    return value.strip().lower()
