"""catalog_sync.relations

Relation resolution: free-text names (tags, companies, linked entities) →
destination ids, with get-or-create semantics memoized for one batch.

The cache is keyed by (collection, slug) and is append-only: once a name has
resolved to an id, every later lookup in the same run returns that id.  In
dry-run mode creation is simulated with a placeholder id and nothing is
written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.field_map import RelationSpec
from catalog_sync.normalize import normalize_space, slug_name
from catalog_sync.store import ContentStore, StoreError

log = logging.getLogger(__name__)


class RelationCache:
    """(collection, slug) → id for one batch run."""

    def __init__(self) -> None:
        self._ids: dict[tuple[str, str], Any] = {}

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def get(self, collection: str, slug: str) -> Any:
        return self._ids.get((collection, slug))

    def put(self, collection: str, slug: str, record_id: Any) -> Any:
        """Store an id; an existing entry is never replaced."""
        key = (collection, slug)
        if key not in self._ids:
            self._ids[key] = record_id
        return self._ids[key]


@dataclass
class RelationOutcome:
    ids: list[Any] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class RelationResolver:
    def __init__(
        self,
        store: ContentStore,
        cache: RelationCache | None = None,
        create_missing: bool = True,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.cache = cache if cache is not None else RelationCache()
        self.create_missing = create_missing
        self.dry_run = dry_run

    def resolve(self, names: list[str], spec: RelationSpec) -> RelationOutcome:
        """Resolve names for one relation attribute of one record.

        Unresolvable names are omitted and reported as warnings.  A read
        failure (TransientIOError) propagates.
        """
        outcome = RelationOutcome()
        seen: set[str] = set()
        for raw_name in names:
            name = normalize_space(raw_name)
            slug = slug_name(name)
            if not slug or slug in seen:
                continue
            seen.add(slug)

            record_id = self._lookup(spec.collection, slug, name, spec, outcome)
            if record_id is not None and record_id not in outcome.ids:
                outcome.ids.append(record_id)
        return outcome

    def _lookup(
        self,
        collection: str,
        slug: str,
        name: str,
        spec: RelationSpec,
        outcome: RelationOutcome,
    ) -> Any:
        if (collection, slug) in self.cache:
            return self.cache.get(collection, slug)

        existing = self.store.find_by_field(collection, "slug", slug)
        if existing is not None:
            return self.cache.put(collection, slug, existing["id"])

        if not (spec.create and self.create_missing):
            outcome.warnings.append(f"{spec.name}: {name!r} not found in {collection}")
            log.warning("relation %s: %r not found in %s", spec.name, name, collection)
            return None

        if self.dry_run:
            outcome.created.append(slug)
            return self.cache.put(collection, slug, f"dry-run:{collection}:{slug}")

        try:
            record_id = self.store.create(collection, {"name": name, "slug": slug})
        except StoreError as exc:
            # Another writer may have created it since the lookup.
            existing = self.store.find_by_field(collection, "slug", slug)
            if existing is None:
                outcome.warnings.append(f"{spec.name}: could not create {name!r}: {exc}")
                log.warning("relation %s: could not create %r in %s: %s", spec.name, name, collection, exc)
                return None
            record_id = existing["id"]
        else:
            outcome.created.append(slug)
            log.info("created %s %s", collection, slug)
        return self.cache.put(collection, slug, record_id)
