"""Referral code format rules."""

import re
from typing import Any

REFERRAL_CODE_PREFIX = "CG-"

# CG-XXXXXX (6 hex chars, any case)
_STRUCTURED_CODE_RE = re.compile(rf"{re.escape(REFERRAL_CODE_PREFIX)}[0-9a-f]{{6}}", re.IGNORECASE)
# Custom alphanumeric codes, 4-20 chars
_CUSTOM_CODE_RE = re.compile(r"[A-Za-z0-9]{4,20}")


def is_valid_referral_code(code: Any) -> bool:
    """
    Check that a candidate referral code is well formed.

    Accepts "CG-" + 6 hex characters (case-insensitive) or a custom
    alphanumeric token of 4-20 characters. Everything else, including
    empty strings and non-string values, is rejected.
    """
    if not isinstance(code, str) or not code:
        return False
    return bool(_STRUCTURED_CODE_RE.fullmatch(code) or _CUSTOM_CODE_RE.fullmatch(code))
