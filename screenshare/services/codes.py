"""Sharing code generation, formatting and validation."""
from __future__ import annotations

import re
import secrets

CODE_PATTERN = re.compile(r"^\d{3}-\d{3}-\d{3}$|^\d{9}$")
_NON_DIGITS = re.compile(r"\D")
_WHITESPACE = re.compile(r"\s")


def generate_code() -> str:
    """Return a random ``DDD-DDD-DDD`` code; each group is in 100..999."""

    groups = [secrets.randbelow(900) + 100 for _ in range(3)]
    return "-".join(str(group) for group in groups)


def format_code(value: str) -> str:
    """Format partial input as the user types, e.g. ``1234`` -> ``123-4``."""

    digits = _NON_DIGITS.sub("", value)
    if len(digits) <= 3:
        return digits
    if len(digits) <= 6:
        return f"{digits[:3]}-{digits[3:]}"
    return f"{digits[:3]}-{digits[3:6]}-{digits[6:9]}"


def is_valid_code(value: str) -> bool:
    return bool(CODE_PATTERN.match(_WHITESPACE.sub("", value)))


def normalize_code(value: str) -> str | None:
    """Return the canonical ``DDD-DDD-DDD`` form, or ``None`` if not nine digits."""

    digits = _NON_DIGITS.sub("", value or "")
    if len(digits) != 9:
        return None
    return format_code(digits)
