"""Phone number normalization used for identity lookups."""
from __future__ import annotations

import re

from .errors import InvalidContact
from .models import Contact

DEFAULT_COUNTRY_CODE = "55"
MIN_DIGITS = 8
MAX_DIGITS = 15

_NATIONAL_LENGTHS = (10, 11)
_NON_DIGITS = re.compile(r"\D")


def _digits(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def normalize_phone(raw: str, *, country_code: str = DEFAULT_COUNTRY_CODE) -> Contact:
    """Return the canonical :class:`Contact` for a user supplied phone string.

    A number that starts with ``country_code`` and still has a full national
    number after it is already international and is kept. Other national
    numbers (area code + subscriber, 10 or 11 digits) receive the country
    code. Anything else cannot be expanded unambiguously and is kept too.
    """

    digits = _digits(raw)
    if not MIN_DIGITS <= len(digits) <= MAX_DIGITS:
        raise InvalidContact(
            f"Phone numbers must contain between {MIN_DIGITS} and {MAX_DIGITS} digits"
        )

    if not _is_international(digits, country_code) and len(digits) in _NATIONAL_LENGTHS:
        normalized = country_code + digits
    else:
        normalized = digits

    return Contact(
        raw=raw,
        normalized=normalized,
        bare_variant=_bare_variant(normalized, country_code),
    )


def _is_international(digits: str, country_code: str) -> bool:
    return digits.startswith(country_code) and len(digits) >= min(_NATIONAL_LENGTHS) + len(country_code)


def _bare_variant(normalized: str, country_code: str) -> str | None:
    if not _is_international(normalized, country_code):
        return None
    return normalized[len(country_code):]


def format_phone_for_display(value: str) -> str:
    """Group the national part of a number for display, e.g. ``11 91234 5678``."""

    digits = _digits(value)
    if _is_international(digits, DEFAULT_COUNTRY_CODE):
        digits = digits[len(DEFAULT_COUNTRY_CODE):]
    if len(digits) <= 2:
        return digits
    if len(digits) <= 6:
        return f"{digits[:2]} {digits[2:]}"
    if len(digits) <= 10:
        return f"{digits[:2]} {digits[2:6]} {digits[6:]}"
    return f"{digits[:2]} {digits[2:7]} {digits[7:11]}"


__all__ = [
    "DEFAULT_COUNTRY_CODE",
    "MAX_DIGITS",
    "MIN_DIGITS",
    "format_phone_for_display",
    "normalize_phone",
]
