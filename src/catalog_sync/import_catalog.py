"""catalog_sync.import_catalog

Unified CLI entrypoint for catalog synchronization.

Modes (--mode):
  csv       reconcile a CSV file into a collection (default)
  registry  page through an upstream JSON registry and reconcile its items
  dedupe    find duplicate entries in a collection and delete them (--apply)

The destination is chosen by URL scheme: postgresql:// → PgStore,
http(s):// → StrapiStore.  The API token is read from the env var named by
--token-env, never from the command line.

Usage (csv):
    python -m catalog_sync.import_catalog \\
        --mode csv \\
        --field-map mcp-servers \\
        --csv-path data/mcp-servers.csv \\
        --destination-url "$CATALOG_DESTINATION_URL" \\
        --merge-policy fill-empty-only

Usage (registry):
    python -m catalog_sync.import_catalog \\
        --mode registry \\
        --registry-url https://registry.modelcontextprotocol.io/v0/servers \\
        --destination-url http://localhost:1337 \\
        --dry-run

Usage (dedupe):
    python -m catalog_sync.import_catalog \\
        --mode dedupe --field-map mcp-servers \\
        --destination-url http://localhost:1337 --apply
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from pathlib import Path
from urllib.parse import urlparse

import click
import psycopg

from catalog_sync.batch import BatchOptions, BatchResult, build_batch_report, run_batch
from catalog_sync.csv_decode import DecodeError, decode_csv, require_columns
from catalog_sync.dedupe import apply_dedupe, build_dedupe_report, plan_dedupe, wipe_collection
from catalog_sync.field_map import FieldMap, FieldMapValidationError, resolve_field_map
from catalog_sync.merge import MergePolicy
from catalog_sync.pg_store import PgStore
from catalog_sync.registry import DEFAULT_PAGE_LIMIT, fetch_registry
from catalog_sync.shared import DEFAULT_REPORT_DIR, RejectWriter, utc_now, write_run_report
from catalog_sync.store import ContentStore, StoreError, TransientIOError
from catalog_sync.strapi_store import StrapiStore

DEFAULT_FIELD_MAPS = {
    "csv": "mcp-servers",
    "registry": "mcp-registry",
    "dedupe": "mcp-servers",
}


# ---------------------------------------------------------------------------
# Destination
# ---------------------------------------------------------------------------

def build_store(destination_url: str, token: str | None = None) -> ContentStore:
    """Pick the adapter for destination_url by scheme.

    Raises:
        ValueError: for an unsupported scheme.
    """
    scheme = urlparse(destination_url).scheme.lower()
    if scheme in ("postgresql", "postgres"):
        return PgStore.connect(destination_url)
    if scheme in ("http", "https"):
        return StrapiStore(destination_url, token=token)
    raise ValueError(
        f"unsupported destination {destination_url!r}: expected postgresql:// or http(s)://"
    )


def _finish_store(store: ContentStore, commit: bool) -> None:
    if isinstance(store, PgStore):
        if store.conn.closed:
            return
        if commit:
            store.conn.commit()
        else:
            store.conn.rollback()
        store.conn.close()


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_csv(
    csv_path: str,
    field_map: FieldMap,
    store: ContentStore,
    options: BatchOptions,
    rejects: RejectWriter,
) -> BatchResult:
    text = Path(csv_path).read_text(encoding="utf-8")
    table = decode_csv(text)
    require_columns(table, field_map.required_any)
    return run_batch(table.records, field_map, store, options, rejects=rejects)


def _run_registry(
    run_id: str,
    registry_url: str,
    page_limit: int,
    field_map: FieldMap,
    store: ContentStore,
    options: BatchOptions,
    rejects: RejectWriter,
    wipe: bool,
) -> BatchResult:
    if wipe:
        wiped = wipe_collection(store, field_map.collection, dry_run=options.dry_run)
        verb = "would delete" if options.dry_run else "deleted"
        count = wiped.planned if options.dry_run else wiped.deleted
        click.echo(f"[{run_id}] wipe {field_map.collection}: {verb} {count} entries")
        if wiped.failed:
            click.echo(f"[{run_id}] wipe: {wiped.failed} deletes failed", err=True)

    records, stats = fetch_registry(
        registry_url,
        page_limit=page_limit,
        max_records=options.max_records,
    )
    click.echo(
        f"[{run_id}] registry: {stats.items} items over {stats.pages} page(s) "
        f"(stop: {stats.stop_reason})"
    )
    return run_batch(records, field_map, store, options, rejects=rejects)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="csv",
    type=click.Choice(["csv", "registry", "dedupe"]),
    show_default=True,
    help="Sync mode",
)
@click.option("--field-map", default=None, help="Built-in field map name or path to a YAML field map")
@click.option("--csv-path", default=None, type=click.Path(), help="[csv] Input CSV")
@click.option("--registry-url", default=None, help="[registry] Registry list endpoint")
@click.option("--page-limit", default=DEFAULT_PAGE_LIMIT, type=int, show_default=True, help="[registry] Items requested per page")
@click.option("--max-records", default=None, type=int, help="[csv|registry] Stop after this many records")
@click.option("--destination-url", envvar="CATALOG_DESTINATION_URL", default=None, help="postgresql:// DSN or http(s):// content API base URL")
@click.option("--token-env", default="CATALOG_STORE_TOKEN", show_default=True, help="Env var name holding the content API token")
@click.option(
    "--merge-policy",
    default=MergePolicy.OVERWRITE.value,
    type=click.Choice([p.value for p in MergePolicy]),
    show_default=True,
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--strict", is_flag=True, default=False, help="Abort the batch on the first failed row")
@click.option(
    "--create-relations/--no-create-relations",
    default=True,
    show_default=True,
    help="Create missing tags/companies instead of skipping them",
)
@click.option("--publish", is_flag=True, default=False, help="Set publishedAt on written entries not yet published")
@click.option("--wipe", is_flag=True, default=False, help="[registry] Delete every entry of the target collection first")
@click.option("--apply", "apply_", is_flag=True, default=False, help="[dedupe] Actually delete duplicates")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/catalog_rejects.csv",
    show_default=True,
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--report-dir", default=str(DEFAULT_REPORT_DIR), show_default=True, type=click.Path())
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    field_map: str | None,
    csv_path: str | None,
    registry_url: str | None,
    page_limit: int,
    max_records: int | None,
    destination_url: str | None,
    token_env: str,
    merge_policy: str,
    dry_run: bool,
    strict: bool,
    create_relations: bool,
    publish: bool,
    wipe: bool,
    apply_: bool,
    rejects_path: str,
    run_id: str | None,
    report_dir: str,
    log_level: str,
) -> None:
    """Unified catalog sync CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utc_now()
    if mode == "dedupe":
        dry_run = dry_run or not apply_

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    if mode == "csv" and not csv_path:
        _fatal(run_id, "csv mode requires: --csv-path")
    if mode == "registry" and not registry_url:
        _fatal(run_id, "registry mode requires: --registry-url")
    if not destination_url:
        _fatal(run_id, "--destination-url (or CATALOG_DESTINATION_URL) is required")

    try:
        fmap = resolve_field_map(field_map or DEFAULT_FIELD_MAPS[mode])
    except FieldMapValidationError as exc:
        _fatal(run_id, f"field map: {exc}")

    # Read credentials from env, never from CLI args
    token = os.environ.get(token_env, "")
    is_http = urlparse(destination_url).scheme.lower() in ("http", "https")
    if is_http and not dry_run and not token:
        _fatal(run_id, f"env var {token_env} must be set for live writes")

    try:
        store = build_store(destination_url, token or None)
    except ValueError as exc:
        _fatal(run_id, str(exc))
    except psycopg.Error as exc:
        _fatal(run_id, f"cannot connect to destination: {exc}")

    source = {
        "field_map": fmap.name,
        "field_map_hash": fmap.yaml_hash,
        "collection": fmap.collection,
    }

    if mode == "dedupe":
        try:
            entries = store.list_all(fmap.collection)
            plan = plan_dedupe(entries)
            deleted = apply_dedupe(store, fmap.collection, plan, dry_run=dry_run)
        except (StoreError, psycopg.Error) as exc:
            _finish_store(store, commit=False)
            _fatal(run_id, str(exc))
        _finish_store(store, commit=not dry_run)
        click.echo(build_dedupe_report(plan, deleted, dry_run=dry_run))
        report_path = write_run_report(
            run_id, started_at, mode, dry_run, source,
            {"plan": plan.to_dict(), "deletes": deleted.to_dict()},
            report_dir=Path(report_dir),
        )
        click.echo(f"[{run_id}] Run report: {report_path}")
        if deleted.failed:
            sys.exit(1)
        return

    options = BatchOptions(
        merge_policy=MergePolicy(merge_policy),
        dry_run=dry_run,
        strict=strict,
        create_missing_relations=create_relations,
        publish=publish,
        max_records=max_records,
    )
    rejects = RejectWriter(Path(rejects_path))
    try:
        if mode == "csv":
            source["csv_path"] = csv_path
            result = _run_csv(csv_path, fmap, store, options, rejects)  # type: ignore[arg-type]
        else:
            source["registry_url"] = registry_url
            result = _run_registry(
                run_id, registry_url, page_limit, fmap, store, options, rejects, wipe,  # type: ignore[arg-type]
            )
    except (DecodeError, TransientIOError, StoreError, psycopg.Error, OSError) as exc:
        _finish_store(store, commit=False)
        rejects.close()
        _fatal(run_id, str(exc))
    rejects.close()
    _finish_store(store, commit=not dry_run)

    click.echo(build_batch_report(result, dry_run=dry_run))
    report_path = write_run_report(
        run_id, started_at, mode, dry_run, source, result.to_dict(),
        report_dir=Path(report_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if rejects.count:
        click.echo(f"[{run_id}] Rejected rows: {rejects.path}")

    if result.aborted:
        click.echo(f"[{run_id}] Strict mode: batch aborted at first failed row", err=True)
        sys.exit(1)
    if result.failed > 0:
        click.echo(f"[{run_id}] {result.failed} rows failed, exiting non-zero", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
