"""catalog_sync.canonical

Field normalization: SourceRecord + FieldMap → CanonicalRecord.

For every attribute the aliases are scanned in declared order and the first
value that is present and non-empty wins.  Three outcomes are kept apart:

  - no alias present in the source  → attribute absent ("do not touch")
  - alias present but blank         → None ("explicitly clear")
  - value present                   → coerced typed value

A malformed value for a strict attribute raises FieldCoercionError; for a
lenient attribute it clears the field and leaves a warning on the record.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.csv_decode import SourceRecord
from catalog_sync.field_map import FieldMap, FieldSpec
from catalog_sync.normalize import (
    coerce_blocks,
    coerce_boolean,
    coerce_date,
    coerce_decimal,
    coerce_integer,
    coerce_json,
    coerce_list,
    coerce_string,
    coerce_url,
    is_empty,
    normalize_header,
)

log = logging.getLogger(__name__)


class _Missing:
    """Marker for 'not present in the source at all'."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FieldCoercionError(ValueError):
    """A strict attribute held a value that could not be parsed."""

    def __init__(self, attribute: str, raw: Any, reason: str) -> None:
        super().__init__(f"Invalid {attribute}: {reason}")
        self.attribute = attribute
        self.raw = raw


# ---------------------------------------------------------------------------
# CanonicalRecord
# ---------------------------------------------------------------------------

@dataclass
class CanonicalRecord:
    """Normalized record.

    ``fields`` and ``relations`` only hold attributes present in the source;
    an absent key is the "do not touch" state.  ``create_defaults`` are
    applied only when no destination record exists yet.
    """

    row_number: int
    fields: dict[str, Any] = field(default_factory=dict)
    relations: dict[str, list[str]] = field(default_factory=dict)
    create_defaults: dict[str, Any] = field(default_factory=dict)
    identity_key: str | None = None
    secondary_key: str | None = None
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Alias lookup
# ---------------------------------------------------------------------------

def lookup(record: SourceRecord, alias: str) -> Any:
    """Return the raw value for alias, or MISSING.

    CSV records match on the normalized header; JSON records treat the alias
    as a dotted path ('repository.url', '_meta.links.source').
    """
    if record.kind == "csv":
        key = normalize_header(alias)
        return record.values[key] if key in record.values else MISSING

    current: Any = record.values
    for part in alias.split("."):
        if not isinstance(current, dict) and not hasattr(current, "keys"):
            return MISSING
        if part not in current:
            return MISSING
        current = current[part]
    return current


def has_any_alias(record: SourceRecord, aliases: tuple[str, ...]) -> bool:
    return any(lookup(record, a) is not MISSING for a in aliases)


def value_from_aliases(record: SourceRecord, aliases: tuple[str, ...]) -> Any:
    """First present, non-empty value; None if only blanks; MISSING if absent."""
    seen = False
    for alias in aliases:
        value = lookup(record, alias)
        if value is MISSING:
            continue
        seen = True
        if not is_empty(value):
            return value
    return None if seen else MISSING


def list_from_aliases(record: SourceRecord, aliases: tuple[str, ...], combine: bool) -> Any:
    """List-valued extraction; with combine, every present alias contributes."""
    if not combine:
        value = value_from_aliases(record, aliases)
        if value is MISSING or value is None:
            return value
        return coerce_list(value)

    seen = False
    items: list[str] = []
    for alias in aliases:
        value = lookup(record, alias)
        if value is MISSING:
            continue
        seen = True
        if is_empty(value):
            continue
        for item in coerce_list(value):
            if item not in items:
                items.append(item)
    if items:
        return items
    return [] if seen else MISSING


# ---------------------------------------------------------------------------
# Coercion table
# ---------------------------------------------------------------------------

def _coerce_enum(spec: FieldSpec, value: Any) -> str:
    text = coerce_string(value).lower()
    if text in spec.mapping:
        return spec.mapping[text]
    if "*" in spec.mapping:
        return spec.mapping["*"]
    raise ValueError(f"unexpected value {text!r}")


_COERCERS: dict[str, Callable[[Any], Any]] = {
    "string": coerce_string,
    "url": coerce_url,
    "integer": coerce_integer,
    "decimal": coerce_decimal,
    "boolean": coerce_boolean,
    "date": coerce_date,
    "list": coerce_list,
    "blocks": coerce_blocks,
    "json": coerce_json,
}


def _platform_links(record: SourceRecord, spec: FieldSpec) -> Any:
    """Merge a JSON link list with per-platform URL columns, de-duplicated."""
    allowed = set(spec.columns)
    present = has_any_alias(record, spec.aliases) or any(
        has_any_alias(record, aliases) for aliases in spec.columns.values()
    )
    if not present:
        return MISSING

    links: list[dict[str, str]] = []
    raw = value_from_aliases(record, spec.aliases)
    if raw not in (MISSING, None):
        parsed = coerce_json(raw)
        if isinstance(parsed, list):
            for item in parsed:
                if not isinstance(item, dict):
                    continue
                platform = str(item.get("platform") or "").strip().lower()
                url = str(item.get("url") or "").strip()
                if platform in allowed and url:
                    links.append({"platform": platform, "url": url})

    for platform, aliases in spec.columns.items():
        value = value_from_aliases(record, aliases)
        if value in (MISSING, None):
            continue
        links.append({"platform": platform, "url": coerce_string(value)})

    deduped: list[dict[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for link in links:
        key = (link["platform"], link["url"])
        if key in seen:
            continue
        seen.add(key)
        deduped.append(link)
    return deduped


class _LenientFailure(Exception):
    """Lenient attribute failed to coerce; the field is cleared."""


def coerce_field(record: SourceRecord, spec: FieldSpec) -> Any:
    """Extract and coerce one attribute; returns MISSING, None, or a value."""
    if spec.is_constant:
        return spec.constant

    try:
        if spec.type == "links":
            return _platform_links(record, spec)
        if spec.type == "list":
            return list_from_aliases(record, spec.aliases, spec.combine)

        raw = value_from_aliases(record, spec.aliases)
        if raw is MISSING or raw is None:
            return raw
        if spec.type == "enum":
            return _coerce_enum(spec, raw)
        return _COERCERS[spec.type](raw)
    except ValueError as exc:
        if spec.strict:
            raise FieldCoercionError(spec.name, value_from_aliases(record, spec.aliases), str(exc)) from exc
        raise _LenientFailure(str(exc)) from exc


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def normalize_record(
    record: SourceRecord,
    field_map: FieldMap,
    canonical: CanonicalRecord | None = None,
) -> CanonicalRecord:
    """Normalize one source record against a field map.

    Pass ``canonical`` to fill a record whose identity was already resolved;
    attributes it already holds are kept as they are.

    Raises:
        FieldCoercionError: on the first strict attribute that fails to parse.
    """
    if canonical is None:
        canonical = CanonicalRecord(row_number=record.row_number)

    for name, spec in field_map.fields.items():
        if name in canonical.fields:
            continue
        try:
            value = coerce_field(record, spec)
        except _LenientFailure as exc:
            canonical.warnings.append(f"{name}: {exc}; field cleared")
            log.debug("row %s: lenient coercion failed for %s: %s", record.row_number, name, exc)
            value = None

        if value is MISSING:
            if spec.has_default:
                canonical.create_defaults[name] = spec.default
            continue
        canonical.fields[name] = value

    for name, rel in field_map.relations.items():
        try:
            names = list_from_aliases(record, rel.aliases, rel.combine)
        except ValueError as exc:
            canonical.warnings.append(f"{name}: {exc}; relation left untouched")
            log.debug("row %s: relation %s not extracted: %s", record.row_number, name, exc)
            continue
        if names is MISSING:
            continue
        canonical.relations[name] = names or []

    return canonical
