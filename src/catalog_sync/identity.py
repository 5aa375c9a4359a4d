"""catalog_sync.identity

Identity resolution: derive a stable slug for every record and keep slugs
unique within one batch.

Candidates are tried in the field map's declared order.  Values holding a
path (repository or documentation URLs, 'owner/name' registry ids) contribute
only their last path segment.  When every candidate is empty or a generic
placeholder, maps that allow it fall back to a short hash of the raw record
plus its ordinal, prefixed so it is recognisable as synthetic.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from catalog_sync.canonical import MISSING, CanonicalRecord, lookup, value_from_aliases
from catalog_sync.csv_decode import SourceRecord
from catalog_sync.field_map import IdentitySpec
from catalog_sync.normalize import SLUG_MAX_LENGTH, coerce_string, slug_name, stable_hash

log = logging.getLogger(__name__)

_HASH_LENGTH = 8


class IdentityMissing(ValueError):
    """No usable identity could be derived for a record."""


# ---------------------------------------------------------------------------
# Slug building
# ---------------------------------------------------------------------------

def build_slug(value: Any) -> str | None:
    """Slug for a single candidate value, or None if it yields nothing."""
    if isinstance(value, dict):
        value = value.get("url") or value.get("href")
    if value is None or isinstance(value, (bool, list, tuple, dict)):
        return None
    text = str(value).strip()
    if "/" in text:
        segments = [s for s in text.rstrip("/").split("/") if s]
        text = segments[-1] if segments else text
    return slug_name(text)


def build_slug_from_candidates(
    values: list[Any],
    placeholders: frozenset[str] = frozenset(),
) -> str | None:
    for value in values:
        slug = build_slug(value)
        if slug and slug not in placeholders:
            return slug
    return None


def fallback_seed(record: SourceRecord, ordinal: int) -> str:
    body = json.dumps(record.as_dict(), sort_keys=True, default=str)
    return f"{body}:{ordinal}"


# ---------------------------------------------------------------------------
# Within-batch collision table
# ---------------------------------------------------------------------------

class IdentityRegistry:
    """Slugs already claimed in this batch.

    A slug claimed a second time gets ``-<hash of slug:ordinal>`` appended;
    the earlier claim is never reassigned.
    """

    def __init__(self) -> None:
        self._used: dict[str, int] = {}
        self._by_ordinal: dict[int, str] = {}

    def __contains__(self, slug: str) -> bool:
        return slug in self._used

    def __len__(self) -> int:
        return len(self._used)

    def last_claimed(self, ordinal: int) -> str | None:
        """Slug claimed for the record at ordinal, if it got that far."""
        return self._by_ordinal.get(ordinal)

    def claim(self, slug: str, ordinal: int) -> str:
        if slug not in self._used:
            self._used[slug] = ordinal
            self._by_ordinal[ordinal] = slug
            return slug

        base = slug[: SLUG_MAX_LENGTH - _HASH_LENGTH - 1].rstrip("-")
        candidate = f"{base}-{stable_hash(f'{slug}:{ordinal}', _HASH_LENGTH)}"
        salt = 0
        while candidate in self._used:
            salt += 1
            candidate = f"{base}-{stable_hash(f'{slug}:{ordinal}:{salt}', _HASH_LENGTH)}"
        log.info("slug %r already used in this batch; row %s becomes %r", slug, ordinal, candidate)
        self._used[candidate] = ordinal
        self._by_ordinal[ordinal] = candidate
        return candidate


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def resolve_identity(
    record: SourceRecord,
    canonical: CanonicalRecord,
    spec: IdentitySpec,
    registry: IdentityRegistry,
) -> str:
    """Set ``canonical.identity_key`` (and ``secondary_key``) and return the slug.

    Raises:
        IdentityMissing: no candidate produced a slug and the map has no hash
            fallback.
    """
    if spec.secondary is not None:
        raw = value_from_aliases(record, spec.secondary.aliases)
        if raw is not MISSING and raw is not None:
            try:
                canonical.secondary_key = coerce_string(raw)
            except ValueError:
                canonical.secondary_key = None
            if canonical.secondary_key:
                canonical.fields[spec.secondary.field] = canonical.secondary_key

    values = [lookup(record, alias) for alias in spec.candidates]
    slug = build_slug_from_candidates(
        [v for v in values if v is not MISSING], spec.placeholders
    )
    if slug is None:
        if not spec.hash_fallback:
            raise IdentityMissing(
                f"no identity: none of {', '.join(spec.candidates)} yields a slug"
            )
        slug = f"{spec.hash_prefix}-{stable_hash(fallback_seed(record, record.row_number), _HASH_LENGTH)}"
        log.debug("row %s: synthetic slug %s", record.row_number, slug)

    slug = registry.claim(slug, record.row_number)
    canonical.identity_key = slug
    canonical.fields[spec.field] = slug
    return slug
