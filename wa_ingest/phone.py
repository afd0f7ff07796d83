"""
Phone identifier normalization.

Every component that keys on a phone number goes through to_e164 so that
conversation and ledger rows join on the same value.
"""

import re

from wa_ingest.errors import InvalidPhoneNumber

_NON_DIGITS = re.compile(r"\D")


def to_e164(raw: str) -> str:
    """
    Canonicalize a phone identifier to E.164 (``+`` then digits).

    The provider sends digits only ("237670000000"). Separators, a leading
    ``+``, the international ``00`` prefix and other leading zeros are all
    dropped, so formatting variants of one number converge.

    Raises:
        InvalidPhoneNumber: if the input holds no digits.
    """
    digits = _NON_DIGITS.sub("", raw or "").lstrip("0")
    if not digits:
        raise InvalidPhoneNumber(f"no digits in phone identifier {raw!r}")
    return f"+{digits}"


def mask_phone(phone: str | None) -> str:
    """Masked phone for log lines: keeps the prefix and last two digits."""
    if not phone:
        return "-"
    if len(phone) <= 7:
        return phone[:2] + "*" * (len(phone) - 2)
    return phone[:5] + "*" * (len(phone) - 7) + phone[-2:]
