"""
BSON value to SQL bind value conversion.

Each declared column type has one converter. Converters never raise on bad
input: source documents are untrusted, so anything that cannot be
represented in the target column becomes ``None`` (NULL).
"""

import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Pattern

from bson import Decimal128, Int64, ObjectId, Timestamp
from bson import json_util

from .field_path import MISSING


def to_boolean(value: Any) -> Optional[bool]:
    """Truthiness of the value; absent and null stay NULL."""
    if value is None or value is MISSING:
        return None
    return bool(value)


def to_number(value: Any) -> Optional[float]:
    """
    Convert to a finite float.

    Handles int/float/Int64, Decimal128, numeric strings and booleans.
    NaN and infinities are rejected by MySQL DOUBLE columns and become NULL.

    Example:
        >>> to_number("30")
        30.0
        >>> to_number("abc") is None
        True
    """
    if value is None or value is MISSING:
        return None
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, Int64, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(Decimal(value.strip()))
        except (InvalidOperation, ValueError):
            return None
    else:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def to_date(value: Any) -> Optional[datetime]:
    """
    Convert to a naive UTC datetime.

    Numbers are milliseconds since the epoch (the BSON date unit); strings
    must be ISO-8601.
    """
    if value is None or value is MISSING or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, Timestamp):
        return value.as_datetime().replace(tzinfo=None)
    if isinstance(value, ObjectId):
        return value.generation_time.replace(tzinfo=None)
    try:
        if isinstance(value, (int, Int64, float)):
            parsed = datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
        elif isinstance(value, str):
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_string(
    value: Any,
    length: Optional[int] = None,
    exclusions: Optional[Pattern] = None,
    inclusions: Optional[Pattern] = None,
) -> Optional[str]:
    """
    Convert to a string that fits a VARCHAR column.

    - ObjectId -> hex string
    - datetime -> ISO string
    - dict / list -> relaxed Extended JSON
    - bool -> "true" / "false"

    Args:
        value: Source value
        length: Maximum length; longer strings are truncated
        exclusions: Pattern matching characters to strip
        inclusions: Pattern matching characters to strip (the complement of
                    the allowed set)

    Returns:
        String or None
    """
    if value is None or value is MISSING:
        return None
    if isinstance(value, str):
        text = value
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, ObjectId):
        text = str(value)
    elif isinstance(value, datetime):
        text = value.isoformat()
    elif isinstance(value, Decimal128):
        text = str(value.to_decimal())
    elif isinstance(value, float) and value.is_integer():
        text = str(int(value))
    elif isinstance(value, (dict, list, tuple)):
        text = json_util.dumps(value, json_options=json_util.RELAXED_JSON_OPTIONS)
    else:
        text = str(value)

    if exclusions is not None:
        text = exclusions.sub("", text)
    if inclusions is not None:
        text = inclusions.sub("", text)
    if length is not None and len(text) > length:
        text = text[:length]
    return text


def character_filter(char_class: str, negate: bool = False) -> Optional[Pattern]:
    """
    Compile a character-class body (e.g. ``"\\u0000-\\u007f"``) into a
    pattern. With ``negate`` the pattern matches everything outside it.
    """
    if not char_class:
        return None
    body = char_class.replace("]", r"\]")
    return re.compile(f"[{'^' if negate else ''}{body}]")
