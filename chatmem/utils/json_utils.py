"""
JSON utilities for cleaning and repairing LLM responses.

LLM output is frequently wrapped in code fences or cut off mid-object when the
token budget runs out. ``repair_json`` tries a fixed list of named strategies,
cheapest first, and reports which one produced the result.
"""

import json
import re
from typing import Callable, List, Optional, Tuple

_MEMORIES_ARRAY = re.compile(r'"memories"\s*:\s*\[')
_DANGLING_TAGS = re.compile(r'"tags"\s*:\s*\[[^\]]*$')
_TRAILING_COMMA = re.compile(r',\s*([}\]])')
_REASONING_FIELD = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)')
_CONFIDENCE_FIELD = re.compile(r'"confidence"\s*:\s*(-?\d+(?:\.\d+)?)')

DEFAULT_TAGS_PATCH = '"tags": ["extracted"]'


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = (response or '').strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def _from_first_brace(text: str) -> Optional[str]:
    cleaned = clean_json_response(text)
    start = cleaned.find('{')
    if start < 0:
        return None
    return cleaned[start:]


def _loads_object(text: str) -> Optional[dict]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _scan_balanced(text: str, start: int) -> int:
    """Index of the bracket closing the one at ``start``, or -1 if never closed."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in '{[':
            depth += 1
        elif ch in '}]':
            depth -= 1
            if depth == 0:
                return i
    return -1


def _complete_elements(text: str, pos: int) -> List[str]:
    """Collect the complete ``{...}`` elements of an array starting at ``pos``."""
    elements = []
    while pos < len(text):
        ch = text[pos]
        if ch.isspace() or ch == ',':
            pos += 1
            continue
        if ch != '{':
            break
        end = _scan_balanced(text, pos)
        if end < 0:
            break
        element = text[pos:end + 1]
        if _loads_object(element) is not None:
            elements.append(element)
        pos = end + 1
    return elements


def parse_direct(text: str) -> Optional[dict]:
    """Strip code fences and parse; also accepts prose around one JSON object."""
    cleaned = clean_json_response(text)
    parsed = _loads_object(cleaned)
    if parsed is not None:
        return parsed

    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if 0 <= start < end:
        return _loads_object(cleaned[start:end + 1])
    return None


def trim_incomplete_elements(text: str) -> Optional[dict]:
    """Keep only the complete elements of a truncated ``memories`` array.

    ``{"reasoning":"x","memories":[{"content":"a"},{"content":"b`` becomes
    ``{"reasoning":"x","memories":[{"content":"a"}]}``.
    """
    body = _from_first_brace(text)
    if body is None:
        return None
    match = _MEMORIES_ARRAY.search(body)
    if match is None:
        return None

    prefix = body[:match.start()].rstrip()
    if not prefix.endswith(('{', ',')):
        return None
    elements = _complete_elements(body, match.end())
    return _loads_object(prefix + '"memories": [' + ', '.join(elements) + ']}')


def close_open_containers(text: str) -> Optional[dict]:
    """Close whatever the truncated response left open.

    A dangling ``"tags": [...`` is replaced by a default tag list, an open
    string is terminated, then open arrays and objects are closed in order.
    """
    body = _from_first_brace(text)
    if body is None:
        return None

    body = _DANGLING_TAGS.sub(DEFAULT_TAGS_PATCH, body.rstrip())

    stack = []
    in_string = False
    escaped = False
    for ch in body:
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == '{':
            stack.append('}')
        elif ch == '[':
            stack.append(']')
        elif ch in '}]':
            if not stack or stack[-1] != ch:
                return None
            stack.pop()

    if in_string:
        if escaped:
            body = body[:-1]
        body += '"'

    body = body.rstrip().rstrip(',').rstrip()
    if body.endswith(':'):
        body += ' null'

    body += ''.join(reversed(stack))
    body = _TRAILING_COMMA.sub(r'\1', body)
    return _loads_object(body)


def salvage_fields(text: str) -> Optional[dict]:
    """Recover ``reasoning`` and ``confidence`` by regex, with no memories."""
    cleaned = clean_json_response(text)
    reasoning = _REASONING_FIELD.search(cleaned)
    confidence = _CONFIDENCE_FIELD.search(cleaned)
    if reasoning is None and confidence is None:
        return None

    salvaged = {'memories': []}
    if reasoning is not None:
        try:
            salvaged['reasoning'] = json.loads(f'"{reasoning.group(1)}"')
        except json.JSONDecodeError:
            salvaged['reasoning'] = reasoning.group(1)
    if confidence is not None:
        salvaged['confidence'] = float(confidence.group(1))
    return salvaged


REPAIR_STRATEGIES: List[Tuple[str, Callable[[str], Optional[dict]]]] = [
    ('direct', parse_direct),
    ('trimmed', trim_incomplete_elements),
    ('closed', close_open_containers),
    ('salvaged', salvage_fields),
]


def repair_json(text: str) -> Tuple[Optional[dict], str]:
    """Run the repair strategies in order, stopping at the first success.

    Args:
        text: Raw LLM response

    Returns:
        Tuple of (parsed object or None, name of the strategy that succeeded or 'failed')
    """
    if not text or not text.strip():
        return None, 'failed'
    for name, strategy in REPAIR_STRATEGIES:
        parsed = strategy(text)
        if parsed is not None:
            return parsed, name
    return None, 'failed'
