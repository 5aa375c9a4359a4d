"""catalog_sync.strapi_store

REST content-store adapter for a Strapi-style API.

Endpoints (per collection):
    GET    /api/<collection>?filters[<field>][$eq]=<value>&publicationState=preview&populate=*
    GET    /api/<collection>?pagination[page]=N&pagination[pageSize]=M
    POST   /api/<collection>          {"data": {...}}
    PUT    /api/<collection>/<id>     {"data": {...}}
    DELETE /api/<collection>/<id>

Reads go through get_with_retry (bounded retries with backoff, then
TransientIOError).  A find whose filter the API rejects with 400 raises
SchemaDriftError naming the filtered attribute.  Writes are sent once;
rejections are mapped onto the typed StoreError subclasses using
``error.details`` when the API provides it and the message text otherwise.
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from catalog_sync.store import (
    ConflictError,
    NotFoundError,
    RetryPolicy,
    SchemaDriftError,
    StoreError,
    TransientIOError,
    get_with_retry,
    looks_like_conflict,
    parse_invalid_field,
    to_json,
)

log = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------

def flatten_entry(entry: dict[str, Any]) -> dict[str, Any]:
    """``{id, attributes: {...}}`` → flat dict; relation wrappers → id lists."""
    attrs = entry.get("attributes")
    flat: dict[str, Any] = {"id": entry.get("id")}
    source = attrs if isinstance(attrs, dict) else {k: v for k, v in entry.items() if k != "id"}
    for key, value in source.items():
        if isinstance(value, dict) and "data" in value:
            data = value["data"]
            if isinstance(data, list):
                flat[key] = [item.get("id") for item in data if isinstance(item, dict)]
            elif isinstance(data, dict):
                flat[key] = data.get("id")
            else:
                flat[key] = data
        else:
            flat[key] = value
    return flat


def _error_body(resp: requests.Response) -> dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return body["error"]
    return {}


def _detail_fields(error: dict[str, Any]) -> list[str]:
    """Field names from ``error.details`` (``key``, ``path`` or ``errors[].path``)."""
    details = error.get("details") or {}
    names: list[str] = []
    if isinstance(details.get("key"), str):
        names.append(details["key"])
    candidates = [details] + [e for e in details.get("errors") or [] if isinstance(e, dict)]
    for item in candidates:
        path = item.get("path")
        if isinstance(path, list) and path:
            name = str(path[0])
            if name not in names:
                names.append(name)
    return names


def raise_for_write(resp: requests.Response, action: str) -> None:
    """Map a failed write response onto a typed StoreError."""
    if resp.status_code < 400:
        return
    error = _error_body(resp)
    message = str(error.get("message") or resp.text or "")[:500]
    summary = f"{action} failed: {resp.status_code} {message}"

    if resp.status_code == 404:
        raise NotFoundError(summary, status=404)
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientIOError(summary, status=resp.status_code)

    fields = _detail_fields(error)
    if resp.status_code == 409 or looks_like_conflict(message):
        raise ConflictError(summary, field=fields[0] if len(fields) == 1 else None, status=resp.status_code)
    if resp.status_code == 400:
        if len(fields) == 1:
            raise SchemaDriftError(summary, field=fields[0], status=400)
        if not fields:
            raise SchemaDriftError(summary, field=parse_invalid_field(message), status=400)
        raise SchemaDriftError(summary, field=None, status=400)
    raise StoreError(summary, status=resp.status_code)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------

class StrapiStore:
    """ContentStore over the Strapi REST API."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        session: requests.Session | None = None,
        retry: RetryPolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: int = 30,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.retry = retry or RetryPolicy()
        self.page_size = page_size
        self.timeout = timeout
        self.session.headers.update({"Content-Type": "application/json"})
        if token:
            self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _url(self, collection: str, record_id: Any = None) -> str:
        url = f"{self.base_url}/api/{collection}"
        return f"{url}/{record_id}" if record_id is not None else url

    def _get_json(self, url: str, params: dict[str, Any], filter_field: str | None = None) -> dict[str, Any]:
        resp = get_with_retry(self.session, url, self.retry, params=params, timeout=self.timeout)
        if resp.status_code == 400 and filter_field is not None:
            # the collection has no such attribute to filter on
            raise SchemaDriftError(
                f"GET {url} rejected filter on {filter_field}: 400 {resp.text[:200]}",
                field=filter_field,
                status=400,
            )
        if resp.status_code >= 400:
            raise StoreError(f"GET {url} failed: {resp.status_code} {resp.text[:200]}", status=resp.status_code)
        body = resp.json()
        return body if isinstance(body, dict) else {}

    def _send(self, method: str, url: str, payload: Any = None) -> requests.Response:
        try:
            return self.session.request(
                method,
                url,
                data=to_json({"data": payload}) if payload is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientIOError(f"{method} {url} failed: {exc}") from exc

    # -- reads ---------------------------------------------------------------

    def find_by_field(self, collection: str, field: str, value: Any) -> dict[str, Any] | None:
        params = {
            f"filters[{field}][$eq]": value,
            "publicationState": "preview",
            "populate": "*",
        }
        body = self._get_json(self._url(collection), params, filter_field=field)
        data = body.get("data") or []
        if not data:
            return None
        return flatten_entry(data[0])

    def list_all(self, collection: str) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page = 1
        while True:
            params = {
                "publicationState": "preview",
                "pagination[page]": page,
                "pagination[pageSize]": self.page_size,
            }
            body = self._get_json(self._url(collection), params)
            items.extend(flatten_entry(e) for e in body.get("data") or [])
            pagination = (body.get("meta") or {}).get("pagination") or {}
            page_count = pagination.get("pageCount")
            if not page_count or page >= page_count:
                break
            page += 1
        log.debug("listed %d entries from %s", len(items), collection)
        return items

    # -- writes --------------------------------------------------------------

    def create(self, collection: str, fields: dict[str, Any]) -> Any:
        url = self._url(collection)
        resp = self._send("POST", url, fields)
        raise_for_write(resp, f"POST {url}")
        data = (resp.json() or {}).get("data") or {}
        return data.get("id")

    def update(self, collection: str, record_id: Any, fields: dict[str, Any]) -> None:
        url = self._url(collection, record_id)
        resp = self._send("PUT", url, fields)
        raise_for_write(resp, f"PUT {url}")

    def delete(self, collection: str, record_id: Any) -> None:
        url = self._url(collection, record_id)
        resp = self._send("DELETE", url)
        raise_for_write(resp, f"DELETE {url}")
