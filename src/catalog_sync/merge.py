"""catalog_sync.merge

Merge planning: decide which attributes of a CanonicalRecord go into the
write for an existing (or missing) destination record.

  - no existing record: create-plan with every present attribute, the
    create-only defaults, and all resolved relations
  - OVERWRITE: every present attribute is written; None clears
  - FILL_EMPTY_ONLY: an attribute is written only where the destination
    value is empty; a relation only where the destination list is empty

The identity field is never rewritten on an existing record.  An update
plan with nothing left to write is a skip.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from catalog_sync.canonical import CanonicalRecord
from catalog_sync.normalize import is_empty


class MergePolicy(str, enum.Enum):
    OVERWRITE = "overwrite"
    FILL_EMPTY_ONLY = "fill-empty-only"


@dataclass
class MergePlan:
    action: str  # 'create' | 'update'
    fields: dict[str, Any] = field(default_factory=dict)
    replace_relations: bool = False
    record_id: Any = None

    @property
    def is_empty(self) -> bool:
        return not self.fields


def plan_merge(
    canonical: CanonicalRecord,
    existing: dict[str, Any] | None,
    policy: MergePolicy,
    relation_ids: dict[str, list[Any]] | None = None,
    identity_field: str = "slug",
) -> MergePlan:
    relation_ids = relation_ids or {}

    if existing is None:
        fields = dict(canonical.fields)
        for name, value in canonical.create_defaults.items():
            fields.setdefault(name, value)
        fields.update(relation_ids)
        return MergePlan(action="create", fields=fields, replace_relations=bool(relation_ids))

    plan = MergePlan(action="update", record_id=existing.get("id"))
    for name, value in canonical.fields.items():
        if name == identity_field:
            continue
        if policy is MergePolicy.OVERWRITE:
            plan.fields[name] = value
        elif value is not None and is_empty(existing.get(name)):
            plan.fields[name] = value

    for name, ids in relation_ids.items():
        if policy is MergePolicy.OVERWRITE:
            plan.fields[name] = ids
            plan.replace_relations = True
        elif ids and is_empty(existing.get(name)):
            plan.fields[name] = ids
            plan.replace_relations = True
    return plan
