"""catalog_sync.batch

Batch coordinator: drives every source record through

    identity → normalize → existing lookup → relations → merge plan → write

strictly in order, one record at a time, and tallies the outcome.

Row-level failures (FieldCoercionError, write-side StoreError) are recorded
with the row number and the slug resolved for the row, and the batch moves
on; in strict mode the batch stops right after recording the first one.
Records without a usable identity are counted as skipped and recorded too.
Read-side failures that outlived their retries (TransientIOError) and decode
failures are not row errors: they propagate to the caller.

Row warnings are kept even when the row later fails, and are capped like
the error list.

In dry-run mode every read still happens, so created/updated/skipped counts
reflect what a live run would do, but nothing is written and relation
creation is simulated.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.canonical import (
    MISSING,
    CanonicalRecord,
    FieldCoercionError,
    normalize_record,
    value_from_aliases,
)
from catalog_sync.csv_decode import SourceRecord
from catalog_sync.field_map import FieldMap
from catalog_sync.identity import IdentityMissing, IdentityRegistry, resolve_identity
from catalog_sync.merge import MergePlan, MergePolicy, plan_merge
from catalog_sync.normalize import is_empty
from catalog_sync.relations import RelationCache, RelationResolver
from catalog_sync.shared import RejectWriter, utc_now
from catalog_sync.store import ContentStore, SchemaDriftError, StoreError, TransientIOError
from catalog_sync.writer import write_plan

log = logging.getLogger(__name__)

DEFAULT_MAX_ERRORS = 500
PUBLISHED_AT = "publishedAt"


# ---------------------------------------------------------------------------
# Options / result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BatchOptions:
    merge_policy: MergePolicy = MergePolicy.OVERWRITE
    dry_run: bool = False
    strict: bool = False
    create_missing_relations: bool = True
    publish: bool = False
    max_records: int | None = None
    max_errors: int = DEFAULT_MAX_ERRORS


@dataclass
class RowError:
    row_number: int
    identity_key: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "identity_key": self.identity_key,
            "message": self.message,
        }


@dataclass
class BatchResult:
    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    relations_created: int = 0
    aborted: bool = False
    errors: list[RowError] = field(default_factory=list)
    errors_truncated: int = 0
    warnings: list[str] = field(default_factory=list)
    warnings_truncated: int = 0
    max_errors: int = DEFAULT_MAX_ERRORS

    def record_error(self, row_number: int, identity_key: str | None, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(RowError(row_number, identity_key, message))
        else:
            self.errors_truncated += 1

    def record_warning(self, message: str) -> None:
        if len(self.warnings) < self.max_errors:
            self.warnings.append(message)
        else:
            self.warnings_truncated += 1

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.summary(),
            "relations_created": self.relations_created,
            "aborted": self.aborted,
            "errors": [e.to_dict() for e in self.errors],
            "errors_truncated": self.errors_truncated,
            "warnings": self.warnings[:50],
            "warnings_truncated": self.warnings_truncated + max(0, len(self.warnings) - 50),
        }


# ---------------------------------------------------------------------------
# Per-run context
# ---------------------------------------------------------------------------

class BatchContext:
    """State scoped to one batch invocation: collision table and relation cache."""

    def __init__(
        self,
        field_map: FieldMap,
        store: ContentStore,
        options: BatchOptions,
        clock: Callable[[], str] = utc_now,
    ) -> None:
        self.field_map = field_map
        self.store = store
        self.options = options
        self.clock = clock
        self.identities = IdentityRegistry()
        self.relation_cache = RelationCache()
        # cleared once the destination rejects lookups by the secondary key
        self.secondary_lookup = True
        self.resolver = RelationResolver(
            store,
            self.relation_cache,
            create_missing=options.create_missing_relations,
            dry_run=options.dry_run,
        )


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _check_required(record: SourceRecord, field_map: FieldMap) -> None:
    if not field_map.required_any:
        return
    value = value_from_aliases(record, field_map.required_any)
    if value is MISSING or is_empty(value):
        names = ", ".join(field_map.required_any)
        raise FieldCoercionError(field_map.required_any[0], None, f"one of {names} is required")


def _owned_by_other(existing: dict[str, Any], field_name: str, secondary_key: str | None) -> bool:
    """True when existing carries a different secondary key than the record."""
    other = existing.get(field_name)
    if not secondary_key or is_empty(other):
        return False
    return str(other).strip().lower() != secondary_key.strip().lower()


def _find_existing(
    ctx: BatchContext,
    canonical: CanonicalRecord,
    result: BatchResult,
) -> dict[str, Any] | None:
    """Look the record up by secondary key, then by slug.

    A slug match that belongs to a different secondary key is not this
    record: the slug is disambiguated and the lookup repeated, so the record
    is created instead of overwriting the other entry.
    """
    identity = ctx.field_map.identity
    secondary = identity.secondary
    collection = ctx.field_map.collection
    if secondary is not None and canonical.secondary_key and ctx.secondary_lookup:
        try:
            existing = ctx.store.find_by_field(collection, secondary.field, canonical.secondary_key)
        except SchemaDriftError as exc:
            ctx.secondary_lookup = False
            message = f"{collection}: lookup by {secondary.field} rejected ({exc}); matching on {identity.field} only"
            log.warning(message)
            result.record_warning(message)
        else:
            if existing is not None:
                return existing

    existing = ctx.store.find_by_field(collection, identity.field, canonical.identity_key)
    while (
        existing is not None
        and secondary is not None
        and _owned_by_other(existing, secondary.field, canonical.secondary_key)
    ):
        taken = canonical.identity_key
        slug = ctx.identities.claim(taken, canonical.row_number)
        log.info(
            "row %s: %s belongs to %s=%r; using %s",
            canonical.row_number, taken, secondary.field, existing.get(secondary.field), slug,
        )
        canonical.identity_key = slug
        canonical.fields[identity.field] = slug
        existing = ctx.store.find_by_field(collection, identity.field, slug)
    return existing


def _resolve_relations(
    ctx: BatchContext,
    canonical: CanonicalRecord,
    existing: dict[str, Any] | None,
    result: BatchResult,
) -> dict[str, list[Any]]:
    relation_ids: dict[str, list[Any]] = {}
    fill_only = ctx.options.merge_policy is MergePolicy.FILL_EMPTY_ONLY
    for name, names in canonical.relations.items():
        if existing is not None and fill_only and not is_empty(existing.get(name)):
            continue
        outcome = ctx.resolver.resolve(names, ctx.field_map.relations[name])
        relation_ids[name] = outcome.ids
        result.relations_created += len(outcome.created)
        for warning in outcome.warnings:
            canonical.warnings.append(warning)
    return relation_ids


def _apply_publication(
    ctx: BatchContext,
    plan: MergePlan,
    existing: dict[str, Any] | None,
) -> None:
    already_published = existing is not None and not is_empty(existing.get(PUBLISHED_AT))
    rule = ctx.field_map.publish_on_status
    if rule is not None and rule.field in plan.fields:
        status = plan.fields[rule.field]
        if status == rule.published and not already_published:
            plan.fields[PUBLISHED_AT] = ctx.clock()
        elif rule.draft is not None and status == rule.draft and (existing is None or already_published):
            plan.fields[PUBLISHED_AT] = None
        return
    if ctx.options.publish and not already_published:
        plan.fields[PUBLISHED_AT] = ctx.clock()


def process_record(ctx: BatchContext, record: SourceRecord, result: BatchResult) -> str:
    """Run one record through the pipeline; returns created/updated/skipped.

    Raises:
        FieldCoercionError, IdentityMissing: row-level input problems.
        StoreError: the write failed after its corrective retry.
        TransientIOError: a read failed after bounded retries.
    """
    field_map = ctx.field_map
    canonical = CanonicalRecord(row_number=record.row_number)
    try:
        resolve_identity(record, canonical, field_map.identity, ctx.identities)
    except IdentityMissing:
        # a missing required column is reported ahead of the missing identity
        _check_required(record, field_map)
        raise
    _check_required(record, field_map)

    try:
        normalize_record(record, field_map, canonical)
        existing = _find_existing(ctx, canonical, result)
        slug = canonical.identity_key
        relation_ids = _resolve_relations(ctx, canonical, existing, result)
        plan = plan_merge(
            canonical,
            existing,
            ctx.options.merge_policy,
            relation_ids,
            identity_field=field_map.identity.field,
        )
        _apply_publication(ctx, plan, existing)
    finally:
        for warning in canonical.warnings:
            result.record_warning(f"row {record.row_number} ({canonical.identity_key}): {warning}")

    if plan.action == "update" and plan.is_empty:
        log.info("row %s: %s unchanged (skipped)", record.row_number, slug)
        return "skipped"

    if ctx.options.dry_run:
        status = "created" if plan.action == "create" else "updated"
        log.info("row %s: would %s %s", record.row_number, plan.action, slug)
        return status

    try:
        outcome = write_plan(
            ctx.store,
            field_map.collection,
            plan,
            slug,
            identity_field=field_map.identity.field,
        )
    except TransientIOError as exc:
        raise StoreError(f"write failed: {exc}", status=exc.status) from exc
    for warning in outcome.warnings:
        result.record_warning(f"row {record.row_number} ({slug}): {warning}")
    log.info("row %s: %s %s", record.row_number, outcome.status, slug)
    return outcome.status


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def run_batch(
    records: Iterable[SourceRecord],
    field_map: FieldMap,
    store: ContentStore,
    options: BatchOptions | None = None,
    rejects: RejectWriter | None = None,
    clock: Callable[[], str] = utc_now,
) -> BatchResult:
    """Reconcile records into field_map.collection and return the tally.

    Raises:
        TransientIOError: a destination read failed after bounded retries.
    """
    options = options or BatchOptions()
    ctx = BatchContext(field_map, store, options, clock=clock)
    result = BatchResult(max_errors=options.max_errors)

    for record in records:
        if options.max_records is not None and result.total >= options.max_records:
            break
        result.total += 1
        try:
            status = process_record(ctx, record, result)
        except IdentityMissing as exc:
            result.skipped += 1
            result.record_error(record.row_number, None, str(exc))
            log.info("row %s: skipped, %s", record.row_number, exc)
            continue
        except TransientIOError:
            raise
        except (FieldCoercionError, StoreError) as exc:
            result.failed += 1
            key = ctx.identities.last_claimed(record.row_number)
            result.record_error(record.row_number, key, str(exc))
            log.warning("row %s (%s): %s", record.row_number, key, exc)
            if rejects is not None:
                rejects.write(record.as_dict(), str(exc))
            if options.strict:
                result.aborted = True
                log.error("strict mode: aborting batch at row %s", record.row_number)
                break
            continue

        if status == "created":
            result.created += 1
        elif status == "updated":
            result.updated += 1
        else:
            result.skipped += 1

    log.info("batch finished: %s", result.summary())
    return result


def build_batch_report(result: BatchResult, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Catalog Sync Batch Report",
        f"  dry_run: {dry_run}",
        "=" * 60,
        f"  records:             {result.total}",
        f"    → created:         {result.created}",
        f"    → updated:         {result.updated}",
        f"    → skipped:         {result.skipped}",
        f"    → failed:          {result.failed}",
        f"  relations created:   {result.relations_created}",
    ]
    if result.aborted:
        lines.append("  ABORTED (strict mode) after first failed row")
    if result.errors:
        lines.append(f"\nErrors ({len(result.errors) + result.errors_truncated}):")
        for e in result.errors[:20]:
            lines.append(f"  row {e.row_number} [{e.identity_key or '-'}]: {e.message}")
        if len(result.errors) + result.errors_truncated > 20:
            lines.append(f"  ... and {len(result.errors) + result.errors_truncated - 20} more")
    if result.warnings:
        warning_count = len(result.warnings) + result.warnings_truncated
        lines.append(f"\nWarnings ({warning_count}):")
        for w in result.warnings[:20]:
            lines.append(f"  {w}")
        if warning_count > 20:
            lines.append(f"  ... and {warning_count - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
