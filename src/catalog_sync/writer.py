"""catalog_sync.writer

Schema-drift-tolerant create-or-update.

Corrective retries, at most one per failure class:
  - SchemaDriftError naming one field present in the payload → drop that
    field, retry once; any other rejection propagates
  - ConflictError on create → re-query by identity, update that record
    (an update that then 404s means the record vanished: skipped)
  - NotFoundError on update → create instead
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.merge import MergePlan
from catalog_sync.store import ConflictError, ContentStore, NotFoundError, SchemaDriftError

log = logging.getLogger(__name__)


@dataclass
class WriteOutcome:
    status: str  # 'created' | 'updated' | 'skipped'
    record_id: Any = None
    dropped_fields: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _with_drift_retry(
    op: Callable[[dict[str, Any]], Any],
    payload: dict[str, Any],
    outcome: WriteOutcome,
    allow_empty: bool = False,
) -> tuple[bool, Any]:
    """Run op(payload); on a single-field rejection drop it and retry once.

    Returns (written, result).  written is False when dropping the field left
    nothing to write and allow_empty is False.
    """
    try:
        return True, op(payload)
    except SchemaDriftError as exc:
        if not exc.field or exc.field not in payload:
            raise
        stripped = {k: v for k, v in payload.items() if k != exc.field}
        outcome.dropped_fields.append(exc.field)
        outcome.warnings.append(f"destination rejected field {exc.field!r}; retried without it")
        log.warning("destination rejected field %r; retrying without it", exc.field)
        if not stripped and not allow_empty:
            return False, None
        return True, op(stripped)


def write_plan(
    store: ContentStore,
    collection: str,
    plan: MergePlan,
    identity_value: str,
    identity_field: str = "slug",
) -> WriteOutcome:
    """Apply a MergePlan; returns the final outcome or raises a StoreError."""
    outcome = WriteOutcome(status="skipped")

    if plan.action == "create":
        try:
            _, record_id = _with_drift_retry(
                lambda p: store.create(collection, p), plan.fields, outcome, allow_empty=True
            )
        except ConflictError:
            existing = store.find_by_field(collection, identity_field, identity_value)
            if existing is None:
                raise
            log.warning("%s %s already exists; updating id=%s instead", collection, identity_value, existing["id"])
            outcome.warnings.append(f"uniqueness conflict; updated existing id={existing['id']}")
            payload = {k: v for k, v in plan.fields.items() if k != identity_field}
            try:
                written, _ = _with_drift_retry(
                    lambda p: store.update(collection, existing["id"], p), payload, outcome
                )
            except NotFoundError:
                log.warning("%s %s disappeared during update; skipping", collection, identity_value)
                outcome.warnings.append("record vanished during update")
                return outcome
            outcome.record_id = existing["id"]
            outcome.status = "updated" if written else "skipped"
            return outcome
        outcome.record_id = record_id
        outcome.status = "created"
        return outcome

    try:
        written, _ = _with_drift_retry(
            lambda p: store.update(collection, plan.record_id, p), plan.fields, outcome
        )
    except NotFoundError:
        log.warning("%s id=%s not found on update; creating %s", collection, plan.record_id, identity_value)
        outcome.warnings.append(f"id={plan.record_id} not found on update; created instead")
        payload = dict(plan.fields)
        payload[identity_field] = identity_value
        _, record_id = _with_drift_retry(
            lambda p: store.create(collection, p), payload, outcome, allow_empty=True
        )
        outcome.record_id = record_id
        outcome.status = "created"
        return outcome

    outcome.record_id = plan.record_id
    outcome.status = "updated" if written else "skipped"
    return outcome
