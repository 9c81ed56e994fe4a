"""
Phone number normalization.

Canonical keys are ``+1`` followed by ten digits. They are the subscriber
identity everywhere else in the service.
"""

import re

from smsrelay.exceptions import InvalidPhoneFormat

DEFAULT_COUNTRY_CODE = "1"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(raw) -> str:
    """
    Normalize a raw phone string to its canonical key.

    Accepts 10 digits (default country code assumed) or 11 digits starting
    with the country code. Formatting characters are ignored.

    Args:
        raw: User or carrier supplied phone text

    Returns:
        Canonical key, e.g. ``+14087977416``

    Raises:
        InvalidPhoneFormat: if the digits do not form a US number
    """
    if not isinstance(raw, str):
        raise InvalidPhoneFormat()

    digits = _NON_DIGITS.sub("", raw)

    if len(digits) == 10:
        return f"+{DEFAULT_COUNTRY_CODE}{digits}"
    if len(digits) == 11 and digits.startswith(DEFAULT_COUNTRY_CODE):
        return f"+{digits}"

    raise InvalidPhoneFormat()


def mask_phone(phone: str) -> str:
    """Render a phone number for logs, keeping only the last four digits."""
    if not phone:
        return "unknown"
    return f"***{phone[-4:]}"
