"""
Helper functions shared across the rating service.

This module contains small string and hashing utilities used by enum
parsing, copilot content correction, listing cache keys and listing filters.
"""

import hashlib
import json
import re
import unicodedata
from typing import Any

# Quote characters the upload client tends to leave around operator names.
_NAME_QUOTES_PATTERN = re.compile(r"[\"“”]")


def normalize_string(text: str) -> str:
    """
    Normalize a string for case-insensitive enum lookups.

    Applies NFC normalization, Unicode case folding, whitespace collapsing
    and trimming.

    Examples:
        >>> normalize_string("  Like ")
        'like'
        >>> normalize_string("DisLike")
        'dislike'
    """
    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text).casefold()
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def strip_name_quotes(name: str | None) -> str | None:
    """Remove straight and curly double quotes from an operator or action name."""
    if name is None:
        return None
    return _NAME_QUOTES_PATTERN.sub("", name)


def fingerprint_params(params: dict[str, Any]) -> str:
    """
    Stable hash of normalized query parameters.

    Keys are sorted before hashing so two equal parameter sets always map
    to the same cache key regardless of construction order.
    """
    payload = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:32]


# LIKE metacharacters, escaped with a backslash (queries use ESCAPE '\').
_LIKE_SPECIALS_PATTERN = re.compile(r"[\\%_]")


def contains_pattern(value: str) -> str:
    """
    LIKE/ILIKE pattern matching any string that contains `value` literally.

    Listing filters treat user input as text, never as a pattern, so `%`,
    `_` and `\\` in the input are escaped.
    """
    escaped = _LIKE_SPECIALS_PATTERN.sub(lambda match: "\\" + match.group(0), value)
    return f"%{escaped}%"
