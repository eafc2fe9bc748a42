"""
Phone number normalization.

Numbers reach us in every shape: "+1 (555) 123-4567", "15551234567",
"5551234567", or an unrendered template like "{{system__caller_id}}".
Everything the pipeline stores or compares goes through normalize_phone().
"""

import re
from typing import List, Optional

# Values the voice provider sends when it has no caller id
PLACEHOLDER_VALUES = {
    "",
    "unknown",
    "anonymous",
    "restricted",
    "private",
    "null",
    "none",
    "undefined",
    "n/a",
}

_TEMPLATE_PATTERN = re.compile(r"^\{\{.*\}\}$|^\{.*\}$|^\$\{.*\}$")

# Shortest digit string we accept as a phone number
MIN_DIGITS = 7


def digits_only(raw: str) -> str:
    """Strip everything except digits."""
    return "".join(ch for ch in raw if ch.isdigit())


def is_placeholder(raw: Optional[str]) -> bool:
    """
    True when the value is missing or is not a real number.

    Examples:
        is_placeholder("{{system__caller_id}}") -> True
        is_placeholder("anonymous") -> True
        is_placeholder("+15551234567") -> False
    """
    if raw is None:
        return True
    value = str(raw).strip()
    if value.lower() in PLACEHOLDER_VALUES:
        return True
    if _TEMPLATE_PATTERN.match(value):
        return True
    return len(digits_only(value)) < MIN_DIGITS


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Canonical form: digits with an optional leading "+".

    Returns None for placeholders.

    Examples:
        normalize_phone("+1 (555) 123-4567") -> "+15551234567"
        normalize_phone("555.123.4567") -> "5551234567"
    """
    if is_placeholder(raw):
        return None
    value = str(raw).strip()
    digits = digits_only(value)
    if value.startswith("+") or value.startswith("00"):
        if value.startswith("00"):
            digits = digits[2:]
        return f"+{digits}"
    return digits


def phone_variants(raw: Optional[str]) -> List[str]:
    """
    Every exact form a stored number could plausibly take.

    Used for the indexed lookup before falling back to the last-10-digit
    comparison. Order is most to least specific.

    Examples:
        phone_variants("5551234567")
        -> ["5551234567", "+5551234567", "15551234567", "+15551234567"]
    """
    canonical = normalize_phone(raw)
    if canonical is None:
        return []
    digits = canonical.lstrip("+")
    candidates = [canonical, digits, f"+{digits}"]
    if len(digits) == 10:
        # North American number without country code
        candidates.extend([f"1{digits}", f"+1{digits}"])
    elif len(digits) == 11 and digits.startswith("1"):
        candidates.extend([digits[1:], f"+{digits[1:]}"])

    seen = []
    for candidate in candidates:
        if candidate not in seen:
            seen.append(candidate)
    return seen


def last_ten_digits(raw: Optional[str]) -> Optional[str]:
    """The national significant part used for loose matching, or None if too short."""
    if raw is None:
        return None
    digits = digits_only(str(raw))
    if len(digits) < 10:
        return None
    return digits[-10:]


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """Loose equality: exact canonical match or same last 10 digits."""
    na, nb = normalize_phone(a), normalize_phone(b)
    if na is None or nb is None:
        return False
    if na.lstrip("+") == nb.lstrip("+"):
        return True
    ta, tb = last_ten_digits(na), last_ten_digits(nb)
    return ta is not None and ta == tb
