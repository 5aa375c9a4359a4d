"""Unit test fixtures.

FakeStore is an in-memory ContentStore that records every call, so tests can
assert on exactly which writes happened.  No database or network access.
"""

from __future__ import annotations

import copy
import textwrap
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest

from catalog_sync.field_map import FieldMap, load_field_map
from catalog_sync.store import ConflictError, NotFoundError, SchemaDriftError, TransientIOError

# ---------------------------------------------------------------------------
# FakeStore
# ---------------------------------------------------------------------------

WRITE_OPS = ("create", "update", "delete")


class FakeStore:
    def __init__(self) -> None:
        self.data: dict[str, dict[int, dict[str, Any]]] = defaultdict(dict)
        self.calls: list[tuple[str, str, Any]] = []
        self._next_id = 1
        # Behaviour switches
        self.rejected_fields: set[str] = set()
        self.reject_unparseable: bool = False
        self.conflict_slugs: set[str] = set()
        self.vanished_ids: set[int] = set()
        self.fail_reads: bool = False
        self.rejected_filters: set[str] = set()

    # -- helpers -------------------------------------------------------------

    def seed(self, collection: str, **fields: Any) -> int:
        """Insert directly, without recording a call."""
        record_id = self._next_id
        self._next_id += 1
        self.data[collection][record_id] = dict(fields)
        return record_id

    def entries(self, collection: str) -> list[dict[str, Any]]:
        return [{"id": i, **copy.deepcopy(f)} for i, f in self.data[collection].items()]

    def get(self, collection: str, record_id: int) -> dict[str, Any]:
        return self.data[collection][record_id]

    @property
    def writes(self) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] in WRITE_OPS]

    def writes_of(self, op: str) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] == op]

    def _check_payload(self, fields: dict[str, Any]) -> None:
        if self.reject_unparseable:
            raise SchemaDriftError("400 ValidationError: 2 errors occurred", field=None, status=400)
        for name in fields:
            if name in self.rejected_fields:
                raise SchemaDriftError(f"Invalid key {name}", field=name, status=400)

    # -- ContentStore --------------------------------------------------------

    def find_by_field(self, collection: str, field: str, value: Any) -> dict[str, Any] | None:
        self.calls.append(("find", collection, (field, value)))
        if self.fail_reads:
            raise TransientIOError("GET failed after 3 attempts (HTTP 503)")
        if field in self.rejected_filters:
            raise SchemaDriftError(f"Invalid key {field}", field=field, status=400)
        for record_id, fields in self.data[collection].items():
            if fields.get(field) == value:
                return {"id": record_id, **copy.deepcopy(fields)}
        return None

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        self.calls.append(("list", collection, None))
        return self.entries(collection)

    def create(self, collection: str, fields: dict[str, Any]) -> int:
        self.calls.append(("create", collection, dict(fields)))
        self._check_payload(fields)
        slug = fields.get("slug")
        if slug in self.conflict_slugs or (
            slug is not None
            and any(f.get("slug") == slug for f in self.data[collection].values())
        ):
            raise ConflictError("This attribute must be unique", field="slug", status=400)
        record_id = self._next_id
        self._next_id += 1
        self.data[collection][record_id] = dict(fields)
        return record_id

    def update(self, collection: str, record_id: Any, fields: dict[str, Any]) -> None:
        self.calls.append(("update", collection, (record_id, dict(fields))))
        if record_id in self.vanished_ids or record_id not in self.data[collection]:
            raise NotFoundError(f"PUT {collection}/{record_id} failed: 404", status=404)
        self._check_payload(fields)
        self.data[collection][record_id].update(fields)

    def delete(self, collection: str, record_id: Any) -> None:
        self.calls.append(("delete", collection, record_id))
        if record_id not in self.data[collection]:
            raise NotFoundError(f"DELETE {collection}/{record_id} failed: 404", status=404)
        del self.data[collection][record_id]


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


# ---------------------------------------------------------------------------
# Field maps
# ---------------------------------------------------------------------------

ITEMS_MAP_YAML = """\
name: test-items
collection: items
source_kind: csv

identity:
  field: slug
  candidates: [slug, name]

fields:
  name:
    aliases: [name, title]
  description:
    aliases: [description, summary]
  rating:
    type: decimal
    aliases: [rating]
  launched:
    type: date
    aliases: [launched, date]
  status:
    type: enum
    aliases: [status]
    mapping: {live: live, beta: beta, "*": live}
    default: live

relations:
  tags:
    collection: tags
    aliases: [tags]
  owners:
    collection: people
    aliases: [owners]
    create: false
"""


def write_field_map(tmp_path: Path, text: str, name: str = "map.yml") -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


@pytest.fixture
def items_map(tmp_path) -> FieldMap:
    return load_field_map(write_field_map(tmp_path, ITEMS_MAP_YAML, "items.yml"))
