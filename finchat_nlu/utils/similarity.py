"""
Similarity measures used for intent matching and pattern deduplication.
"""

from typing import Any, Dict, Optional, Sequence

from .text_extraction import tokenize


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between embeddings (0 when either vector is empty or zero)."""
    if not a or not b:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    na = sum(x * x for x in a) ** 0.5
    nb = sum(y * y for y in b) ** 0.5
    return dot / (na * nb) if na and nb else 0.0


def word_overlap(text1: str, text2: str) -> float:
    """Jaccard similarity of the two texts' word sets."""
    words1 = set(tokenize(text1))
    words2 = set(tokenize(text2))
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def entity_key_overlap(entities1: Optional[Dict[str, Any]], entities2: Optional[Dict[str, Any]]) -> float:
    """Jaccard similarity over the keys that carry a value in each entity map.

    Returns 0.5 when either side is missing, 1.0 when both are empty.
    """
    if entities1 is None or entities2 is None:
        return 0.5

    keys1 = {key for key, value in entities1.items() if _has_value(value)}
    keys2 = {key for key, value in entities2.items() if _has_value(value)}

    if not keys1 and not keys2:
        return 1.0
    if not keys1 or not keys2:
        return 0.0

    return len(keys1 & keys2) / len(keys1 | keys2)


def _has_value(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (list, dict, str)) and len(value) == 0:
        return False
    return True
