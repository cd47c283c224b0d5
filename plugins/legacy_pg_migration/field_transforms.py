"""
Pure helpers used by computed field rules.

All functions accept None and blank input; none of them touch shared state,
so they are safe to call from any transform worker.
"""

from typing import Any, Optional
import re

_NON_DIGIT = re.compile(r'\D')


def clean_text(value: Any) -> Optional[str]:
    """Strip whitespace; blank strings become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def text_or_default(value: Any, default: str) -> str:
    text = clean_text(value)
    return default if text is None else text


def mask_email(email: Any) -> Optional[str]:
    """
    Mask the local part of an email address.

    >>> mask_email('john.doe@example.com')
    'j******e@example.com'
    """
    text = clean_text(email)
    if text is None:
        return None
    local, sep, domain = text.partition('@')
    if not sep:
        return mask_text(text)
    if len(local) <= 2:
        masked = local[:1] + '*' * (len(local) - 1)
    else:
        masked = local[0] + '*' * (len(local) - 2) + local[-1]
    return f"{masked}@{domain}"


def mask_phone(number: Any, visible: int = 4) -> Optional[str]:
    """Keep the last digits of a phone number, mask the rest."""
    text = clean_text(number)
    if text is None:
        return None
    digits = _NON_DIGIT.sub('', text)
    if len(digits) <= visible:
        return '*' * len(digits)
    return '*' * (len(digits) - visible) + digits[-visible:]


def mask_text(value: Any, visible: int = 1) -> Optional[str]:
    text = clean_text(value)
    if text is None:
        return None
    return text[:visible] + '*' * max(0, len(text) - visible)


def concat(*parts: Any, separator: str = '') -> Optional[str]:
    """Join the non-blank parts; None when every part is blank."""
    cleaned = [clean_text(p) for p in parts]
    present = [p for p in cleaned if p is not None]
    if not present:
        return None
    return separator.join(present)


def prefix_path(prefix: str, value: Any) -> Optional[str]:
    """Prefix a relative file name with a storage folder."""
    text = clean_text(value)
    if text is None:
        return None
    return prefix.rstrip('/') + '/' + text.lstrip('/')


def choose_by_discriminator(discriminator: Any, match: Any, when_match: Any, otherwise: Any) -> Any:
    """Pick one of two source values depending on a third column."""
    return when_match if discriminator == match else otherwise


def to_bool(value: Any) -> Optional[bool]:
    """Legacy flags arrive as bit, int or 'Y'/'N' strings."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ('1', 'y', 'yes', 'true', 't'):
        return True
    if text in ('0', 'n', 'no', 'false', 'f', ''):
        return False
    raise ValueError(f"Cannot interpret {value!r} as boolean")


def to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if value == '':
            return None
    return int(value)


def non_zero_or(value: Any, default: Any) -> Any:
    """Replace missing and zero values (e.g. an unset exchange rate)."""
    if value is None or value == 0:
        return default
    return value
