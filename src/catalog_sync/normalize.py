"""Normalization functions for catalog ingestion.

Text helpers accept str | None and return str | None.  The ``coerce_*``
functions take a raw CSV string or JSON value that is already known to be
present and non-empty, and raise ValueError when the value is malformed;
callers decide whether that is fatal for the record.
"""

from __future__ import annotations

import hashlib
import json
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

SLUG_MAX_LENGTH = 100

_TRUE_WORDS = frozenset({"true", "1", "yes", "y"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n"})
_LIST_SEPARATORS = ("|", ";", ",")
_DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%b %d, %Y", "%B %d, %Y")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_header  (CSV header / alias matching key)
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Lowercase and drop whitespace and punctuation.

    'Published Date', 'published_date' and 'publishedDate' all map to
    'publisheddate'.
    """
    if value is None:
        return ""
    return re.sub(r"[\W_]+", "", value.strip().lower())


# ---------------------------------------------------------------------------
# Rule 4: slug_name
# ---------------------------------------------------------------------------

def slug_name(value: str | None) -> str | None:
    """Lowercase alnum with '-' separators, capped at SLUG_MAX_LENGTH.

    Accented characters are folded to their ASCII base first so that
    'Café Agent' and 'Cafe Agent' share a slug.
    """
    v = trim(value)
    if v is None:
        return None
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    v = v.lower()
    v = re.sub(r"[^a-z0-9]+", "-", v)
    v = v.strip("-")[:SLUG_MAX_LENGTH].strip("-")
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 5: stable_hash
# ---------------------------------------------------------------------------

def stable_hash(value: str, length: int = 8) -> str:
    """Return a short deterministic hex digest of value."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


# ---------------------------------------------------------------------------
# Emptiness
# ---------------------------------------------------------------------------

def is_empty(value: Any) -> bool:
    """True for None, blank strings, and empty lists/dicts."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


# ---------------------------------------------------------------------------
# Coercions
# ---------------------------------------------------------------------------

def coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, (list, tuple)):
        # a scalar attribute fed from a list takes its first usable item
        for item in value:
            if not is_empty(item) and not isinstance(item, (list, tuple, dict)):
                return coerce_string(item)
    raise ValueError(f"expected text, got {type(value).__name__}")


def coerce_url(value: Any) -> str:
    """Accept a plain string or an object carrying 'url' / 'href'."""
    if isinstance(value, dict):
        for key in ("url", "href"):
            if isinstance(value.get(key), str) and value[key].strip():
                return value[key].strip()
        raise ValueError("object has no url/href")
    return coerce_string(value)


def coerce_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an integer")
    if isinstance(value, int):
        return value
    text = coerce_string(value)
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"not an integer: {text!r}") from None
    if number != number.to_integral_value():
        raise ValueError(f"not an integer: {text!r}")
    return int(number)


def coerce_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, float):
        return Decimal(str(value))
    text = coerce_string(value)
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"not a number: {text!r}") from None
    if not number.is_finite():
        raise ValueError(f"not a number: {text!r}")
    return number


def coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = coerce_string(value).lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"not a boolean: {text!r}")


def coerce_date(value: Any) -> date:
    """Parse YYYY-MM-DD, MM/DD/YYYY, 'Jul 23, 2025' or an ISO timestamp."""
    text = coerce_string(value)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        raise ValueError(f"unrecognised date: {text!r}") from None


def split_list(text: str) -> list[str]:
    """Split on the first separator present, in order '|', ';', ','.

    Only that separator is applied; items are not re-split.
    """
    for sep in _LIST_SEPARATORS:
        if sep in text:
            parts = text.split(sep)
            break
    else:
        parts = [text]
    return [p.strip() for p in parts if p.strip()]


def coerce_list(value: Any) -> list[str]:
    if isinstance(value, dict):
        # keyed objects ({"tools": {}, "prompts": {}}) contribute their keys
        return [str(k).strip() for k in value if str(k).strip()]
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("name") or item.get("slug") or item.get("title")
            if item is None:
                continue
            text = str(item).strip()
            if text:
                items.append(text)
        return items
    return split_list(coerce_string(value))


def coerce_json(value: Any) -> Any:
    """Decode embedded JSON text; already-decoded values pass through."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc.msg}") from None


def to_blocks(text: str) -> list[dict[str, Any]]:
    """Split free text on blank lines into paragraph blocks."""
    paragraphs = [
        p.strip()
        for p in re.split(r"\n\s*\n", text.replace("\r\n", "\n"))
        if p.strip()
    ]
    return [
        {"type": "paragraph", "children": [{"type": "text", "text": p}]}
        for p in paragraphs
    ]


def coerce_blocks(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        return value
    blocks = to_blocks(coerce_string(value))
    if not blocks:
        raise ValueError("no text to convert into blocks")
    return blocks
