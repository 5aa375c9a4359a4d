"""catalog_sync.dedupe

Duplicate cleanup over an existing collection, and collection wipe.

Grouping:
  - entries with a registryName are grouped by it, and only by it
  - all others are grouped by slug and, separately, by name
  (keys are trimmed and lower-cased)

Within every group of two or more, the newest entry is kept
(updatedAt, then createdAt, then publishedAt; ties broken by the highest
id).  The delete set is every non-newest member of every group minus every
kept entry, so an entry kept by one group is never deleted because it lost
in another.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from catalog_sync.store import ContentStore, StoreError

log = logging.getLogger(__name__)

TIMESTAMP_FIELDS = ("updatedAt", "createdAt", "publishedAt")


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def _key(value: Any) -> str:
    return str(value or "").strip().lower()


def entry_timestamp(entry: dict[str, Any]) -> float:
    """Epoch seconds of the first timestamp present, 0 when none parses."""
    for name in TIMESTAMP_FIELDS:
        value = entry.get(name)
        if not value:
            continue
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def _id_sort_key(entry: dict[str, Any]) -> Any:
    record_id = entry.get("id")
    return record_id if isinstance(record_id, (int, float)) else 0


def pick_newest(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(entries, key=lambda e: (entry_timestamp(e), _id_sort_key(e)), reverse=True)


def build_groups(entries: list[dict[str, Any]]) -> dict[str, dict[str, list[dict[str, Any]]]]:
    groups: dict[str, dict[str, list[dict[str, Any]]]] = {
        "registryName": defaultdict(list),
        "slug": defaultdict(list),
        "name": defaultdict(list),
    }
    for entry in entries:
        registry_name = _key(entry.get("registryName"))
        if registry_name:
            groups["registryName"][registry_name].append(entry)
            continue
        slug = _key(entry.get("slug"))
        if slug:
            groups["slug"][slug].append(entry)
        name = _key(entry.get("name"))
        if name:
            groups["name"][name].append(entry)
    return groups


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

@dataclass
class DedupePlan:
    total: int = 0
    duplicate_groups: int = 0
    keep_ids: set[Any] = field(default_factory=set)
    delete_ids: set[Any] = field(default_factory=set)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "duplicate_groups": self.duplicate_groups,
            "keep": len(self.keep_ids),
            "delete": sorted(self.delete_ids, key=str),
        }


def plan_dedupe(entries: list[dict[str, Any]]) -> DedupePlan:
    plan = DedupePlan(total=len(entries))
    duplicates: set[Any] = set()
    for by_key in build_groups(entries).values():
        for group in by_key.values():
            if len(group) < 2:
                continue
            plan.duplicate_groups += 1
            ordered = pick_newest(group)
            plan.keep_ids.add(ordered[0]["id"])
            duplicates.update(e["id"] for e in ordered[1:])
    plan.delete_ids = duplicates - plan.keep_ids
    return plan


# ---------------------------------------------------------------------------
# Apply
# ---------------------------------------------------------------------------

@dataclass
class DeleteResult:
    planned: int = 0
    deleted: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planned": self.planned,
            "deleted": self.deleted,
            "failed": self.failed,
            "errors": self.errors[:50],
        }


def _delete_ids(
    store: ContentStore,
    collection: str,
    ids: list[Any],
    dry_run: bool,
) -> DeleteResult:
    result = DeleteResult(planned=len(ids))
    if dry_run:
        return result
    for record_id in ids:
        try:
            store.delete(collection, record_id)
        except StoreError as exc:
            result.failed += 1
            result.errors.append(f"id={record_id}: {exc}")
            log.warning("failed to delete %s id=%s: %s", collection, record_id, exc)
            continue
        result.deleted += 1
        log.info("deleted %s id=%s", collection, record_id)
    return result


def apply_dedupe(
    store: ContentStore,
    collection: str,
    plan: DedupePlan,
    dry_run: bool = True,
) -> DeleteResult:
    return _delete_ids(store, collection, sorted(plan.delete_ids, key=str), dry_run)


def wipe_collection(store: ContentStore, collection: str, dry_run: bool = True) -> DeleteResult:
    """Delete every entry of collection (only count them in dry-run)."""
    entries = store.list_all(collection)
    log.info("wipe %s: %d entries%s", collection, len(entries), " (dry run)" if dry_run else "")
    return _delete_ids(store, collection, [e["id"] for e in entries], dry_run)


def build_dedupe_report(plan: DedupePlan, result: DeleteResult, dry_run: bool = True) -> str:
    lines = [
        "=" * 60,
        "Duplicate Cleanup Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  entries scanned:     {plan.total}",
        f"  duplicate groups:    {plan.duplicate_groups}",
        f"  entries kept:        {len(plan.keep_ids)}",
        f"  entries to delete:   {len(plan.delete_ids)}",
        f"  deleted:             {result.deleted}",
        f"  delete failures:     {result.failed}",
    ]
    for err in result.errors[:20]:
        lines.append(f"  {err}")
    lines.append("=" * 60)
    return "\n".join(lines)
