"""
Normalization helpers applied to every memory on write.
"""

import re
from typing import Any, Iterable, List

MAX_CATEGORY_LENGTH = 30
DEFAULT_CATEGORY = 'other'
MIN_IMPORTANCE = 1
MAX_IMPORTANCE = 10
DEFAULT_IMPORTANCE = 5

_INVALID_CATEGORY_CHARS = re.compile(r'[^a-z0-9_]')
_REPEATED_UNDERSCORES = re.compile(r'_+')


def normalize_category(value: Any) -> str:
    """Normalize a free-form category string.

    Lower-cases, replaces characters outside ``[a-z0-9_]`` with ``_``,
    collapses repeated underscores, trims leading and trailing underscores
    and caps the length. An empty result becomes ``other``.

    Args:
        value: Raw category (any type, None allowed)

    Returns:
        Normalized category string
    """
    if value is None:
        return DEFAULT_CATEGORY
    text = str(value).strip().lower()
    text = _INVALID_CATEGORY_CHARS.sub('_', text)
    text = _REPEATED_UNDERSCORES.sub('_', text).strip('_')
    text = text[:MAX_CATEGORY_LENGTH].strip('_')
    return text or DEFAULT_CATEGORY


def clamp_importance(value: Any, default: int = DEFAULT_IMPORTANCE) -> int:
    """Clamp importance into 1-10; non-numeric input yields the default."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return int(min(MAX_IMPORTANCE, max(MIN_IMPORTANCE, round(number))))


def clamp_confidence(value: Any, default: float) -> float:
    """Clamp a confidence value into [0, 1]; non-numeric input yields the default."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:
        return default
    return float(min(1.0, max(0.0, value)))


def normalize_tags(value: Any, default: Iterable[str] = ()) -> List[str]:
    """Coerce tags given as a list or a CSV string into a de-duplicated list."""
    if isinstance(value, str):
        items = value.split(',')
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = []

    tags = []
    for item in items:
        if item is None:
            continue
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags or list(default)
