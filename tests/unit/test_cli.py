"""CLI tests for catalog_sync.import_catalog, with the destination swapped for FakeStore."""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import psycopg
import pytest
from click.testing import CliRunner

from catalog_sync.csv_decode import SourceRecord
from catalog_sync.import_catalog import build_store, main
from catalog_sync.pg_store import PgStore
from catalog_sync.registry import RegistryFetchStats
from catalog_sync.store import RetryPolicy
from catalog_sync.strapi_store import StrapiStore

DEST = "postgresql://catalog@localhost/catalog"


@pytest.fixture
def cli_store(fake_store, monkeypatch):
    monkeypatch.delenv("CATALOG_DESTINATION_URL", raising=False)
    monkeypatch.delenv("CATALOG_STORE_TOKEN", raising=False)
    monkeypatch.setattr(
        "catalog_sync.import_catalog.build_store", lambda url, token=None: fake_store
    )
    return fake_store


def invoke(tmp_path, *args):
    runner = CliRunner()
    return runner.invoke(main, [
        *args,
        "--run-id", "run-1",
        "--report-dir", str(tmp_path / "reports"),
        "--rejects-path", str(tmp_path / "rejects.csv"),
    ])


def report(tmp_path) -> dict:
    return json.loads((tmp_path / "reports" / "run-1.json").read_text())


# ---------------------------------------------------------------------------
# build_store
# ---------------------------------------------------------------------------

class TestBuildStore:
    def test_http_is_strapi(self):
        store = build_store("https://cms.example.dev", "tok")
        assert isinstance(store, StrapiStore)
        assert store.session.headers["Authorization"] == "Bearer tok"

    def test_postgres_is_pg(self, monkeypatch):
        monkeypatch.setattr(PgStore, "connect", classmethod(lambda cls, dsn: ("pg", dsn)))
        assert build_store("postgres://u@h/db") == ("pg", "postgres://u@h/db")

    def test_unknown_scheme(self):
        with pytest.raises(ValueError, match="unsupported destination"):
            build_store("ftp://files.example.dev")


# ---------------------------------------------------------------------------
# Argument validation
# ---------------------------------------------------------------------------

class TestArguments:
    def test_destination_required(self, cli_store, tmp_path):
        result = invoke(tmp_path, "--csv-path", "x.csv")
        assert result.exit_code == 1
        assert "--destination-url" in result.output

    def test_csv_path_required(self, cli_store, tmp_path):
        result = invoke(tmp_path, "--destination-url", DEST)
        assert result.exit_code == 1
        assert "--csv-path" in result.output

    def test_registry_url_required(self, cli_store, tmp_path):
        result = invoke(tmp_path, "--mode", "registry", "--destination-url", DEST)
        assert result.exit_code == 1
        assert "--registry-url" in result.output

    def test_unknown_field_map(self, cli_store, tmp_path):
        result = invoke(tmp_path, "--csv-path", "x.csv", "--destination-url", DEST, "--field-map", "nope")
        assert result.exit_code == 1
        assert "field map" in result.output

    def test_token_required_for_live_http(self, monkeypatch, tmp_path):
        monkeypatch.delenv("CATALOG_STORE_TOKEN", raising=False)
        result = invoke(tmp_path, "--csv-path", "x.csv", "--destination-url", "https://cms.example.dev")
        assert result.exit_code == 1
        assert "CATALOG_STORE_TOKEN" in result.output

    def test_destination_from_env(self, cli_store, tmp_path, monkeypatch):
        csv_file = tmp_path / "in.csv"
        csv_file.write_text("name\nAlpha\n")
        monkeypatch.setenv("CATALOG_DESTINATION_URL", DEST)
        result = invoke(tmp_path, "--csv-path", str(csv_file))
        assert result.exit_code == 0, result.output


# ---------------------------------------------------------------------------
# CSV mode
# ---------------------------------------------------------------------------

class TestCsvMode:
    def test_creates_and_reports(self, cli_store, tmp_path):
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name,tags\nAlpha,search|web\nBeta,search\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST)
        assert result.exit_code == 0, result.output
        assert "[run-1] Starting csv run (dry_run=False)" in result.output
        assert len(cli_store.entries("mcp-servers")) == 2
        saved = report(tmp_path)
        assert saved["field_map"] == "mcp-servers"
        assert saved["csv_path"] == str(csv_file)
        assert saved["result"]["created"] == 2
        assert saved["result"]["relations_created"] == 2

    def test_dry_run_writes_nothing(self, cli_store, tmp_path):
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name\nAlpha\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST, "--dry-run")
        assert result.exit_code == 0, result.output
        assert cli_store.writes == []
        assert report(tmp_path)["dry_run"] is True

    def test_failed_row_exits_non_zero(self, cli_store, tmp_path):
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name,slug\nAlpha,\n,orphan\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST)
        assert result.exit_code == 1
        assert "1 rows failed" in result.output
        assert (tmp_path / "rejects.csv").exists()
        assert len(cli_store.entries("mcp-servers")) == 1

    def test_strict_abort(self, cli_store, tmp_path):
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name,slug\n,orphan\nAlpha,\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST, "--strict")
        assert result.exit_code == 1
        assert "batch aborted" in result.output
        assert cli_store.entries("mcp-servers") == []

    def test_merge_policy_option(self, cli_store, tmp_path):
        record_id = cli_store.seed("mcp-servers", slug="alpha", description="kept")
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name,description\nAlpha,replacement\n")
        result = invoke(
            tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST,
            "--merge-policy", "fill-empty-only",
        )
        assert result.exit_code == 0, result.output
        assert cli_store.get("mcp-servers", record_id)["description"] == "kept"

    def test_read_failure_is_fatal(self, cli_store, tmp_path):
        cli_store.fail_reads = True
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name\nAlpha\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST)
        assert result.exit_code == 1
        assert "FATAL" in result.output

    def test_missing_name_column_is_fatal(self, cli_store, tmp_path):
        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("description,tags\nFast,search\nSlow,web\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST)
        assert result.exit_code == 1
        assert "FATAL: CSV must include one of these columns: name, title" in result.output
        assert cli_store.writes == []
        assert not (tmp_path / "reports" / "run-1.json").exists()

    def test_missing_csv_file_is_fatal(self, cli_store, tmp_path):
        result = invoke(tmp_path, "--csv-path", str(tmp_path / "absent.csv"), "--destination-url", DEST)
        assert result.exit_code == 1
        assert "FATAL" in result.output


# ---------------------------------------------------------------------------
# Registry mode
# ---------------------------------------------------------------------------

class TestRegistryMode:
    def _patch_fetch(self, monkeypatch, items):
        records = [SourceRecord(values=v, row_number=i, kind="json") for i, v in enumerate(items, 1)]
        stats = RegistryFetchStats(pages=1, items=len(records), stop_reason="no_cursor")
        monkeypatch.setattr(
            "catalog_sync.import_catalog.fetch_registry",
            lambda url, page_limit, max_records: (records, stats),
        )

    def test_registry_items_reconciled(self, cli_store, tmp_path, monkeypatch):
        self._patch_fetch(monkeypatch, [
            {"name": "io.github.acme/weather", "title": "Weather", "tags": ["forecast"], "_meta": {}},
        ])
        result = invoke(
            tmp_path, "--mode", "registry", "--registry-url", "https://registry.example.dev/v0/servers",
            "--destination-url", DEST,
        )
        assert result.exit_code == 0, result.output
        assert "registry: 1 items over 1 page(s) (stop: no_cursor)" in result.output
        (entry,) = cli_store.entries("mcp-servers")
        assert entry["slug"] == "weather"
        assert entry["registryName"] == "io.github.acme/weather"
        assert entry["source"] == "external"
        assert report(tmp_path)["registry_url"] == "https://registry.example.dev/v0/servers"

    def test_wipe_first(self, cli_store, tmp_path, monkeypatch):
        cli_store.seed("mcp-servers", slug="stale")
        self._patch_fetch(monkeypatch, [{"name": "fresh"}])
        result = invoke(
            tmp_path, "--mode", "registry", "--registry-url", "https://registry.example.dev",
            "--destination-url", DEST, "--wipe",
        )
        assert result.exit_code == 0, result.output
        assert "wipe mcp-servers: deleted 1 entries" in result.output
        assert [e["slug"] for e in cli_store.entries("mcp-servers")] == ["fresh"]


# ---------------------------------------------------------------------------
# Dedupe mode
# ---------------------------------------------------------------------------

class TestDedupeMode:
    def _seed(self, store):
        old = store.seed("mcp-servers", slug="alpha", updatedAt="2025-01-01T00:00:00Z")
        new = store.seed("mcp-servers", slug="alpha", updatedAt="2025-05-01T00:00:00Z")
        return old, new

    def test_defaults_to_dry_run(self, cli_store, tmp_path):
        self._seed(cli_store)
        result = invoke(tmp_path, "--mode", "dedupe", "--destination-url", DEST)
        assert result.exit_code == 0, result.output
        assert "dry_run=True" in result.output
        assert len(cli_store.entries("mcp-servers")) == 2
        assert report(tmp_path)["result"]["plan"]["duplicate_groups"] == 1

    def test_apply_deletes(self, cli_store, tmp_path):
        _, new = self._seed(cli_store)
        result = invoke(tmp_path, "--mode", "dedupe", "--destination-url", DEST, "--apply")
        assert result.exit_code == 0, result.output
        assert [e["id"] for e in cli_store.entries("mcp-servers")] == [new]
        assert report(tmp_path)["result"]["deletes"]["deleted"] == 1


# ---------------------------------------------------------------------------
# PostgreSQL destination
# ---------------------------------------------------------------------------

class TestPgDestination:
    def test_failing_reads_are_fatal_and_rolled_back(self, tmp_path, monkeypatch):
        conn = MagicMock()
        conn.closed = False

        def execute(query, params=None):
            if str(query).lstrip().startswith("SELECT"):
                raise psycopg.OperationalError("server closed the connection unexpectedly")
            return MagicMock()

        conn.execute.side_effect = execute
        store = PgStore(conn, retry=RetryPolicy(base_delay=0.0, jitter=0.0))
        monkeypatch.delenv("CATALOG_DESTINATION_URL", raising=False)
        monkeypatch.setattr("catalog_sync.import_catalog.build_store", lambda url, token=None: store)

        csv_file = tmp_path / "servers.csv"
        csv_file.write_text("name\nAlpha\n")
        result = invoke(tmp_path, "--csv-path", str(csv_file), "--destination-url", DEST)
        assert result.exit_code == 1
        assert "FATAL: read failed after 3 attempts" in result.output
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        conn.close.assert_called_once()
