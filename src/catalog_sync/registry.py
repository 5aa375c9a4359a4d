"""catalog_sync.registry

JSON registry source: cursor-paged fetch and payload unwrapping.

Registries disagree on where the item list and the next-page cursor live,
so both are looked for across the conventional locations in a fixed order.
Items wrapped as ``{"server": {...}, "_meta": {...}}`` are unwrapped with
the wrapper metadata kept under ``_meta`` so field-map aliases can address
``_meta.*`` paths.

Paging stops when a page has no items, no cursor, repeats a cursor already
seen, or when max_records is reached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from catalog_sync.csv_decode import DecodeError, SourceRecord
from catalog_sync.store import RetryPolicy, get_with_retry

log = logging.getLogger(__name__)

ITEM_PATHS = (
    "servers",
    "data.servers",
    "data.items",
    "data.results",
    "data.entries",
    "data",
    "items",
    "results",
    "entries",
)

CURSOR_PATHS = (
    "nextCursor",
    "next_cursor",
    "cursor",
    "metadata.nextCursor",
    "metadata.next_cursor",
    "meta.nextCursor",
)

DEFAULT_PAGE_LIMIT = 100


@dataclass
class RegistryFetchStats:
    pages: int = 0
    items: int = 0
    stop_reason: str = ""
    cursors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pages": self.pages,
            "items": self.items,
            "stop_reason": self.stop_reason,
        }


# ---------------------------------------------------------------------------
# Payload lookup
# ---------------------------------------------------------------------------

def dig(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def extract_items(payload: Any) -> list[Any]:
    """First list found under the conventional item keys; [] if none."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for path in ITEM_PATHS:
        value = dig(payload, path)
        if isinstance(value, list):
            log.debug("items found under %r", path)
            return value
    return []


def next_cursor(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    for path in CURSOR_PATHS:
        value = dig(payload, path)
        if isinstance(value, (str, int)) and not isinstance(value, bool) and str(value).strip():
            return str(value)
    return None


def unwrap_registry_item(item: Any) -> dict[str, Any]:
    if not isinstance(item, dict):
        return {}
    base = item.get("server") if isinstance(item.get("server"), dict) else item
    meta = item.get("_meta") or base.get("_meta") or {}
    unwrapped = {k: v for k, v in base.items() if k != "_meta"}
    unwrapped["_meta"] = meta if isinstance(meta, dict) else {}
    return unwrapped


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------

def _get_page(
    session: requests.Session,
    url: str,
    params: dict[str, Any],
    policy: RetryPolicy,
) -> Any:
    resp = get_with_retry(session, url, policy, params=params)
    if resp.status_code >= 400:
        raise DecodeError(f"registry request failed: {resp.status_code} {resp.text[:200]}")
    try:
        return resp.json()
    except ValueError as exc:
        raise DecodeError(f"registry response is not JSON: {exc}") from exc


def fetch_registry(
    url: str,
    session: requests.Session | None = None,
    page_limit: int = DEFAULT_PAGE_LIMIT,
    max_records: int | None = None,
    policy: RetryPolicy | None = None,
) -> tuple[list[SourceRecord], RegistryFetchStats]:
    """Fetch every registry page and return unwrapped SourceRecords.

    ``row_number`` is the 1-based item ordinal across all pages.

    Raises:
        DecodeError: the registry answered with an error status or non-JSON.
        TransientIOError: a page could not be fetched within the retry bound.
    """
    session = session or requests.Session()
    policy = policy or RetryPolicy()
    stats = RegistryFetchStats()
    records: list[SourceRecord] = []
    cursor: str | None = None

    while True:
        params: dict[str, Any] = {"limit": page_limit}
        if cursor:
            params["cursor"] = cursor
        payload = _get_page(session, url, params, policy)
        if not isinstance(payload, (dict, list)):
            raise DecodeError(f"registry payload is {type(payload).__name__}, expected object or array")
        stats.pages += 1

        items = extract_items(payload)
        if not items:
            stats.stop_reason = "empty_page"
            break
        for item in items:
            records.append(
                SourceRecord(
                    values=unwrap_registry_item(item),
                    row_number=len(records) + 1,
                    kind="json",
                )
            )
            if max_records is not None and len(records) >= max_records:
                break
        stats.items = len(records)

        if max_records is not None and len(records) >= max_records:
            stats.stop_reason = "max_records"
            break
        cursor = next_cursor(payload)
        if not cursor:
            stats.stop_reason = "no_cursor"
            break
        if cursor in stats.cursors:
            log.warning("registry repeated cursor %r; stopping", cursor)
            stats.stop_reason = "repeated_cursor"
            break
        stats.cursors.append(cursor)
        log.debug("next cursor %r", cursor)

    stats.items = len(records)
    log.info("fetched %d registry items over %d page(s)", stats.items, stats.pages)
    return records, stats
