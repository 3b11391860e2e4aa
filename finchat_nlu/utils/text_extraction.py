"""
Text extraction helpers shared by the entity extractor, slot filling and the learning loop.
"""

import hashlib
import re
from typing import List, Optional

_DOLLAR_PATTERN = re.compile(r'\$\s*([\d,]+(?:\.\d{1,2})?)', re.IGNORECASE)
_K_PATTERN = re.compile(r'([\d.]+)\s*k\b', re.IGNORECASE)
_CURRENCY_PATTERN = re.compile(r'([\d,]+(?:\.\d{1,2})?)\s*(?:dollars?|usd|bucks?)', re.IGNORECASE)
_PLAIN_NUMBER_PATTERN = re.compile(r'\b([\d,]+(?:\.\d{1,2})?)\b')
_MONEY_TOKEN_PATTERN = re.compile(r'(?:\$\s*(\d+(?:\.\d+)?))|(?:\b(\d+(?:\.\d+)?)\s*(?:dollars?|usd|bucks?|cents?)\b)',
                                  re.IGNORECASE)


def _to_positive_number(raw: str, multiplier: float = 1.0) -> Optional[float]:
    try:
        amount = float(raw.replace(',', '')) * multiplier
    except ValueError:
        return None
    return amount if amount > 0 else None


def extract_amount(text: Optional[str], min_digits: int = 1, allow_k: bool = True) -> Optional[float]:
    """Extract a monetary amount from natural language.

    Formats are tried in order and the first match decides: "$5,000.00", "2.5k",
    "5000 dollars" (also usd/bucks), then a plain number of at least min_digits digits.

    Args:
        text: Text to extract the amount from
        min_digits: Minimum digit count for the plain-number form
        allow_k: Whether "k" thousand notation is accepted

    Returns:
        Positive amount, or None when nothing usable was found
    """
    if not text or not isinstance(text, str):
        return None

    lower_text = text.lower()

    match = _DOLLAR_PATTERN.search(lower_text)
    if match:
        amount = _to_positive_number(match.group(1))
        if amount is not None:
            return amount

    if allow_k:
        match = _K_PATTERN.search(lower_text)
        if match:
            amount = _to_positive_number(match.group(1), 1000.0)
            if amount is not None:
                return amount

    match = _CURRENCY_PATTERN.search(lower_text)
    if match:
        amount = _to_positive_number(match.group(1))
        if amount is not None:
            return amount

    if min_digits > 1:
        digit_pattern = re.compile(r'\b([\d,]{%d,})\b' % min_digits)
    else:
        digit_pattern = _PLAIN_NUMBER_PATTERN

    match = digit_pattern.search(lower_text)
    if match:
        return _to_positive_number(match.group(1))

    return None


def find_money_token(text: str) -> Optional[float]:
    """Loose money detection used when extract_amount finds nothing ("$0", "5 cents")."""
    match = _MONEY_TOKEN_PATTERN.search(text or '')
    if not match:
        return None
    raw = match.group(1) or match.group(2)
    value = float(raw)
    if re.search(r'cents?\b', match.group(0), re.IGNORECASE):
        value = value / 100
    return value


def normalize_query(query: str) -> str:
    """Lowercase and trim a query for hashing and comparison."""
    return (query or '').lower().strip()


def query_hash(query: str) -> str:
    """Stable sha256 hex digest of the normalized query text."""
    return hashlib.sha256(normalize_query(query).encode('utf-8')).hexdigest()


def tokenize(text: str) -> List[str]:
    """Split text on whitespace after normalization."""
    return [token for token in re.split(r'\s+', normalize_query(text)) if token]
