"""
JSON utilities for cleaning LLM responses and serializing arbitrary payloads.
"""

import dataclasses
from datetime import date, datetime
from typing import Any, Optional, Set

CIRCULAR_MARKER = '[Circular]'
TOO_DEEP_MARKER = '[Too Deep]'


def clean_json_response(response: str) -> str:
    """Clean LLM response by removing code block markers.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    # Remove ```json and ``` markers
    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def safe_serialize(obj: Any, max_depth: int = 10) -> Any:
    """Convert an arbitrary nested payload into JSON-compatible values.

    Reference cycles are replaced by '[Circular]' and containers nested deeper than
    max_depth by '[Too Deep]'. Callables become None and unknown objects their str().
    Never raises.

    Args:
        obj: Payload to serialize
        max_depth: Maximum container nesting depth

    Returns:
        JSON-compatible structure
    """
    return _serialize(obj, 0, max_depth, set())


def _serialize(obj: Any, depth: int, max_depth: int, ancestors: Set[int]) -> Any:
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if callable(obj) and not dataclasses.is_dataclass(obj):
        return None
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()

    marker = id(obj)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        if marker in ancestors:
            return CIRCULAR_MARKER
        obj = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}

    if not isinstance(obj, (dict, list, tuple, set, frozenset)):
        return str(obj)

    if marker in ancestors:
        return CIRCULAR_MARKER
    if depth >= max_depth:
        return TOO_DEEP_MARKER

    ancestors.add(marker)
    try:
        if isinstance(obj, dict):
            return {str(key): _serialize(value, depth + 1, max_depth, ancestors) for key, value in obj.items()}
        return [_serialize(item, depth + 1, max_depth, ancestors) for item in obj]
    finally:
        ancestors.discard(marker)


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    """Truncate text to limit characters, passing None through."""
    if text is None:
        return None
    text = str(text)
    return text[:limit]
