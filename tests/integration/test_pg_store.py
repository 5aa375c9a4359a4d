"""Integration tests for PgStore and full batch runs against PostgreSQL."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest
from click.testing import CliRunner

from catalog_sync.batch import BatchOptions, run_batch
from catalog_sync.csv_decode import decode_csv
from catalog_sync.field_map import resolve_field_map
from catalog_sync.import_catalog import main
from catalog_sync.merge import MergePolicy
from catalog_sync.store import ConflictError, NotFoundError, SchemaDriftError


def count_entries(conn, collection: str) -> int:
    return conn.execute(
        "SELECT count(*) FROM content_entry WHERE collection = %s", (collection,)
    ).fetchone()[0]


def allow_fields(conn, collection: str, *names: str) -> None:
    for name in names:
        conn.execute(
            "INSERT INTO content_collection_field (collection, field_name) VALUES (%s, %s)",
            (collection, name),
        )


# ---------------------------------------------------------------------------
# PgStore contract
# ---------------------------------------------------------------------------

class TestPgStore:
    def test_create_and_find(self, pg_store):
        record_id = pg_store.create("tags", {"name": "Search", "slug": "search"})
        found = pg_store.find_by_field("tags", "slug", "search")
        assert found["id"] == record_id
        assert found["name"] == "Search"
        assert found["createdAt"] is not None
        assert pg_store.find_by_field("tags", "id", record_id)["slug"] == "search"
        assert pg_store.find_by_field("tags", "name", "Search")["id"] == record_id

    def test_find_scoped_to_collection(self, pg_store):
        pg_store.create("tags", {"slug": "acme"})
        assert pg_store.find_by_field("companies", "slug", "acme") is None

    def test_typed_values_stored_as_json(self, pg_store):
        record_id = pg_store.create(
            "skills", {"slug": "s", "rating": Decimal("4.5"), "lastUpdated": date(2025, 7, 1), "tags": [1, 2]}
        )
        entry = pg_store.find_by_field("skills", "id", record_id)
        assert entry["rating"] == 4.5
        assert entry["lastUpdated"] == "2025-07-01"
        assert entry["tags"] == [1, 2]

    def test_update_merges(self, pg_store):
        record_id = pg_store.create("agents", {"slug": "a", "name": "A", "description": "old", "industry": "media"})
        pg_store.update("agents", record_id, {"description": None, "name": "A2"})
        entry = pg_store.find_by_field("agents", "id", record_id)
        assert entry["description"] is None
        assert entry["name"] == "A2"
        assert entry["industry"] == "media"
        assert entry["slug"] == "a"

    def test_update_slug_when_given(self, pg_store):
        record_id = pg_store.create("agents", {"slug": "a"})
        pg_store.update("agents", record_id, {"slug": "b"})
        assert pg_store.find_by_field("agents", "id", record_id)["slug"] == "b"

    def test_update_missing_is_not_found(self, pg_store):
        with pytest.raises(NotFoundError):
            pg_store.update("agents", 9999, {"name": "x"})

    def test_delete(self, pg_store, db_conn):
        conn, _ = db_conn
        record_id = pg_store.create("tags", {"slug": "gone"})
        pg_store.delete("tags", record_id)
        assert count_entries(conn, "tags") == 0
        with pytest.raises(NotFoundError):
            pg_store.delete("tags", record_id)

    def test_duplicate_slug_is_conflict_and_transaction_survives(self, pg_store):
        pg_store.create("tags", {"slug": "dup"})
        with pytest.raises(ConflictError):
            pg_store.create("tags", {"slug": "dup"})
        pg_store.create("tags", {"slug": "after"})
        assert [e["slug"] for e in pg_store.list_all("tags")] == ["dup", "after"]

    def test_allow_list_names_single_field(self, pg_store, db_conn):
        conn, _ = db_conn
        allow_fields(conn, "agents", "name")
        with pytest.raises(SchemaDriftError) as exc_info:
            pg_store.create("agents", {"slug": "a", "name": "A", "industry": "x"})
        assert exc_info.value.field == "industry"

    def test_allow_list_several_fields_unparseable(self, pg_store, db_conn):
        conn, _ = db_conn
        allow_fields(conn, "agents", "name")
        with pytest.raises(SchemaDriftError) as exc_info:
            pg_store.create("agents", {"slug": "a", "industry": "x", "category": "y"})
        assert exc_info.value.field is None


# ---------------------------------------------------------------------------
# Batch runs
# ---------------------------------------------------------------------------

SERVERS_CSV = "name,slug,tags,companies\nAlpha,,search|web,Acme\nBeta,alpha,search,\n"


class TestBatchAgainstPostgres:
    def test_idempotent_rerun(self, pg_store, db_conn):
        conn, _ = db_conn
        fm = resolve_field_map("mcp-servers")
        first = run_batch(decode_csv(SERVERS_CSV).records, fm, pg_store)
        assert (first.created, first.failed) == (2, 0)
        second = run_batch(decode_csv(SERVERS_CSV).records, fm, pg_store)
        assert second.created == 0
        assert count_entries(conn, "mcp-servers") == 2
        assert count_entries(conn, "tags") == 2
        assert count_entries(conn, "companies") == 1

    def test_fill_empty_only_keeps_existing(self, pg_store):
        fm = resolve_field_map("mcp-servers")
        record_id = pg_store.create("mcp-servers", {"slug": "alpha", "description": "curated"})
        options = BatchOptions(merge_policy=MergePolicy.FILL_EMPTY_ONLY)
        run_batch(decode_csv("name,description\nAlpha,scraped\n").records, fm, pg_store, options)
        entry = pg_store.find_by_field("mcp-servers", "id", record_id)
        assert entry["description"] == "curated"
        assert entry["name"] == "Alpha"

    def test_schema_drift_dropped(self, pg_store, db_conn):
        conn, _ = db_conn
        allow_fields(conn, "mcp-servers", "name", "status", "visibility", "source", "verified")
        fm = resolve_field_map("mcp-servers")
        result = run_batch(decode_csv("name,industry\nAlpha,media\n").records, fm, pg_store)
        assert result.created == 1
        entry = pg_store.find_by_field("mcp-servers", "slug", "alpha")
        assert "industry" not in entry
        assert entry["status"] == "live"


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestCliAgainstPostgres:
    def _invoke(self, url, csv_file, tmp_path, *extra):
        return CliRunner().invoke(main, [
            "--csv-path", str(csv_file),
            "--destination-url", url,
            "--rejects-path", str(tmp_path / "rejects.csv"),
            "--report-dir", str(tmp_path / "reports"),
            "--run-id", "pg-run",
            *extra,
        ])

    def test_dry_run_leaves_no_rows(self, db_conn, tmp_path):
        conn, url = db_conn
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text(SERVERS_CSV)
        result = self._invoke(url, csv_file, tmp_path, "--dry-run")
        assert result.exit_code == 0, result.output
        assert count_entries(conn, "mcp-servers") == 0
        assert count_entries(conn, "tags") == 0

    def test_live_run_commits(self, db_conn, tmp_path):
        conn, url = db_conn
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text(SERVERS_CSV)
        result = self._invoke(url, csv_file, tmp_path)
        assert result.exit_code == 0, result.output
        assert count_entries(conn, "mcp-servers") == 2
