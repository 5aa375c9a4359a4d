"""catalog_sync.pg_store

PostgreSQL content-store adapter (psycopg 3).

Entries live in ``content_entry`` (see migrations/0001_content_store.sql):
the identity slug has its own column with UNIQUE(collection, slug), every
other attribute is stored in the ``data`` jsonb document.  Updates merge
into the document (``data || patch``), so attributes absent from the patch
are left untouched and attributes set to null are cleared.

Each statement runs under a savepoint so a rejected write leaves the
caller's transaction usable.  Reads that hit a connection-level failure
(OperationalError) are retried with the shared RetryPolicy backoff and end in
TransientIOError.  The caller owns commit/rollback.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg import errors, sql
from psycopg.types.json import Jsonb

from catalog_sync.store import (
    ConflictError,
    NotFoundError,
    RetryPolicy,
    SchemaDriftError,
    StoreError,
    TransientIOError,
    to_json,
)

log = logging.getLogger(__name__)

_RESERVED = frozenset({"id", "createdAt", "updatedAt"})


def _dumps(obj: Any) -> str:
    return to_json(obj)


def _row_to_entry(row: tuple) -> dict[str, Any]:
    record_id, slug, data, created_at, updated_at = row
    entry: dict[str, Any] = {"id": record_id}
    entry.update(data or {})
    if slug is not None:
        entry["slug"] = slug
    entry["createdAt"] = created_at.isoformat() if created_at else None
    entry["updatedAt"] = updated_at.isoformat() if updated_at else None
    return entry


class PgStore:
    """ContentStore backed by the content_entry table."""

    def __init__(self, conn: psycopg.Connection, retry: RetryPolicy | None = None) -> None:
        self.conn = conn
        self.retry = retry or RetryPolicy()
        self._allowed: dict[str, frozenset[str] | None] = {}

    @classmethod
    def connect(cls, dsn: str) -> PgStore:
        return cls(psycopg.connect(dsn, autocommit=False))

    # -- schema allow-list ---------------------------------------------------

    def allowed_fields(self, collection: str) -> frozenset[str] | None:
        """Declared attributes for collection, or None when unrestricted."""
        if collection not in self._allowed:
            rows = self._read(
                "SELECT field_name FROM content_collection_field WHERE collection = %s",
                (collection,),
                many=True,
            )
            self._allowed[collection] = frozenset(r[0] for r in rows) if rows else None
        return self._allowed[collection]

    def _check_fields(self, collection: str, fields: dict[str, Any]) -> None:
        allowed = self.allowed_fields(collection)
        if allowed is None:
            return
        unknown = sorted(k for k in fields if k not in allowed and k not in _RESERVED and k != "slug")
        if unknown:
            raise SchemaDriftError(
                f"unknown field(s) for {collection}: {', '.join(unknown)}",
                field=unknown[0] if len(unknown) == 1 else None,
                status=400,
            )

    def _run_write(self, query: Any, params: tuple) -> tuple | None:
        self.conn.execute("SAVEPOINT content_write")
        try:
            row = self.conn.execute(query, params).fetchone()
        except errors.UniqueViolation as exc:
            self.conn.execute("ROLLBACK TO SAVEPOINT content_write")
            raise ConflictError(f"duplicate key: {exc}", field="slug", status=409) from exc
        except psycopg.Error as exc:
            self.conn.execute("ROLLBACK TO SAVEPOINT content_write")
            raise StoreError(str(exc)) from exc
        self.conn.execute("RELEASE SAVEPOINT content_write")
        return row

    def _read(self, query: str, params: tuple, many: bool = False) -> Any:
        """Run a SELECT, retrying connection-level failures with backoff.

        Raises:
            TransientIOError: still failing after ``retry.max_attempts`` tries.
            StoreError: the database rejected the query itself.
        """
        last = ""
        for attempt in range(self.retry.max_attempts):
            if attempt > 0:
                self.retry.sleep()
            try:
                self.conn.execute("SAVEPOINT content_read")
                cur = self.conn.execute(query, params)
                result = cur.fetchall() if many else cur.fetchone()
                self.conn.execute("RELEASE SAVEPOINT content_read")
            except psycopg.OperationalError as exc:
                last = str(exc).strip()
                log.warning("read failed (attempt %d/%d): %s", attempt + 1, self.retry.max_attempts, last)
                self._rollback_read()
                self.retry.on_failure()
                continue
            except psycopg.Error as exc:
                self._rollback_read()
                raise StoreError(str(exc)) from exc
            self.retry.on_success()
            return result
        raise TransientIOError(f"read failed after {self.retry.max_attempts} attempts ({last})")

    def _rollback_read(self) -> None:
        if self.conn.closed:
            return
        try:
            self.conn.execute("ROLLBACK TO SAVEPOINT content_read")
        except psycopg.Error as exc:
            log.warning("could not roll back read savepoint: %s", exc)

    # -- reads ---------------------------------------------------------------

    def find_by_field(self, collection: str, field: str, value: Any) -> dict[str, Any] | None:
        select = "SELECT id, slug, data, created_at, updated_at FROM content_entry WHERE collection = %s"
        if field == "id":
            query, params = f"{select} AND id = %s", (collection, int(value))
        elif field == "slug":
            query, params = f"{select} AND slug = %s", (collection, str(value))
        else:
            query, params = f"{select} AND data ->> %s = %s", (collection, field, str(value))
        row = self._read(f"{query} ORDER BY id LIMIT 1", params)
        return _row_to_entry(row) if row else None

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        rows = self._read(
            """
            SELECT id, slug, data, created_at, updated_at
            FROM content_entry
            WHERE collection = %s
            ORDER BY id
            """,
            (collection,),
            many=True,
        )
        return [_row_to_entry(r) for r in rows]

    # -- writes --------------------------------------------------------------

    def create(self, collection: str, fields: dict[str, Any]) -> Any:
        self._check_fields(collection, fields)
        data = {k: v for k, v in fields.items() if k not in _RESERVED and k != "slug"}
        row = self._run_write(
            """
            INSERT INTO content_entry (collection, slug, data)
            VALUES (%s, %s, %s)
            RETURNING id
            """,
            (collection, fields.get("slug"), Jsonb(data, dumps=_dumps)),
        )
        return row[0]

    def update(self, collection: str, record_id: Any, fields: dict[str, Any]) -> None:
        self._check_fields(collection, fields)
        patch = {k: v for k, v in fields.items() if k not in _RESERVED and k != "slug"}
        query = sql.SQL(
            """
            UPDATE content_entry
            SET data = data || %s,
                slug = {slug},
                updated_at = now()
            WHERE collection = %s AND id = %s
            RETURNING id
            """
        ).format(slug=sql.SQL("%s") if "slug" in fields else sql.SQL("slug"))
        params: tuple = (Jsonb(patch, dumps=_dumps),)
        if "slug" in fields:
            params += (fields["slug"],)
        params += (collection, int(record_id))
        row = self._run_write(query, params)
        if row is None:
            raise NotFoundError(f"{collection}/{record_id} not found", status=404)

    def delete(self, collection: str, record_id: Any) -> None:
        row = self._run_write(
            "DELETE FROM content_entry WHERE collection = %s AND id = %s RETURNING id",
            (collection, int(record_id)),
        )
        if row is None:
            raise NotFoundError(f"{collection}/{record_id} not found", status=404)
