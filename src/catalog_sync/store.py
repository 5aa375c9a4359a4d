"""catalog_sync.store

Destination contract shared by the content-store adapters.

Every adapter exposes the same five operations over named collections:

    find_by_field(collection, field, value) -> dict | None
    create(collection, fields) -> id
    update(collection, id, fields) -> None
    delete(collection, id) -> None
    list_all(collection) -> list[dict]

Records come back flat: ``{"id": ..., <attribute>: <value>, ...}`` with
relations as lists of ids.  Failures are raised as the typed StoreError
subclasses below.  Adapters that get structured error details from the
backend fill in ``field`` directly; ``parse_invalid_field`` and
``looks_like_conflict`` cover backends that only return a message.
"""

from __future__ import annotations

import json
import logging
import random
import re
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Protocol

import requests

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Base class for destination failures."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SchemaDriftError(StoreError):
    """The destination rejected the payload; ``field`` names the offending
    attribute when exactly one could be identified."""

    def __init__(self, message: str, field: str | None = None, status: int | None = None) -> None:
        super().__init__(message, status)
        self.field = field


class ConflictError(StoreError):
    """Uniqueness violation on create."""

    def __init__(self, message: str, field: str | None = None, status: int | None = None) -> None:
        super().__init__(message, status)
        self.field = field


class NotFoundError(StoreError):
    """Target record does not exist (or vanished mid-run)."""


class TransientIOError(StoreError):
    """Network/storage failure that survived the bounded read retries."""


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class ContentStore(Protocol):
    def find_by_field(self, collection: str, field: str, value: Any) -> dict[str, Any] | None: ...

    def create(self, collection: str, fields: dict[str, Any]) -> Any: ...

    def update(self, collection: str, record_id: Any, fields: dict[str, Any]) -> None: ...

    def delete(self, collection: str, record_id: Any) -> None: ...

    def list_all(self, collection: str) -> list[dict[str, Any]]: ...


# ---------------------------------------------------------------------------
# Message parsing fallback
# ---------------------------------------------------------------------------

_INVALID_FIELD_PATTERNS = (
    re.compile(r"invalid key[:\s]+[\"'`]?([A-Za-z_][\w.]*)", re.IGNORECASE),
    re.compile(r"unknown (?:field|attribute|column)[:\s]+[\"'`]?([A-Za-z_][\w.]*)", re.IGNORECASE),
    re.compile(r"[\"'`]([A-Za-z_][\w.]*)[\"'`] is not allowed", re.IGNORECASE),
    re.compile(r"column [\"'`]?([A-Za-z_]\w*)[\"'`]? (?:of relation \S+ )?does not exist", re.IGNORECASE),
)

_CONFLICT_WORDS = ("unique", "already exists", "duplicate key")


def parse_invalid_field(message: str) -> str | None:
    """Return the single field named in a rejection message, if there is one.

    Messages that name several distinct fields return None; the caller must
    not guess which one to drop.
    """
    names: list[str] = []
    for pattern in _INVALID_FIELD_PATTERNS:
        for match in pattern.finditer(message or ""):
            if match.group(1) not in names:
                names.append(match.group(1))
    return names[0] if len(names) == 1 else None


def looks_like_conflict(message: str) -> bool:
    text = (message or "").lower()
    return any(word in text for word in _CONFLICT_WORDS)


# ---------------------------------------------------------------------------
# JSON payloads
# ---------------------------------------------------------------------------

def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def to_json(payload: Any) -> str:
    """Serialize a write payload: Decimal → float, date/datetime → ISO text."""
    return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Read retry
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Exponential backoff for read retries (delay doubles per failure, capped)."""

    base_delay: float = 0.5
    jitter: float = 0.1
    max_attempts: int = 3
    max_multiplier: float = 32.0
    _backoff_mult: float = field(default=1.0, init=False, repr=False)

    def sleep(self) -> None:
        delay = self.base_delay * self._backoff_mult
        delay += random.uniform(-self.jitter, self.jitter)
        time.sleep(max(0.0, delay))

    def on_success(self) -> None:
        self._backoff_mult = 1.0

    def on_failure(self) -> None:
        self._backoff_mult = min(self._backoff_mult * 2.0, self.max_multiplier)


def get_with_retry(
    session: requests.Session,
    url: str,
    policy: RetryPolicy,
    params: dict[str, Any] | None = None,
    timeout: int = 30,
) -> requests.Response:
    """GET url, retrying transport errors, 429 and 5xx with backoff.

    Any other status is returned to the caller as-is.

    Raises:
        TransientIOError: after ``policy.max_attempts`` failed attempts.
    """
    last = ""
    for attempt in range(policy.max_attempts):
        if attempt > 0:
            policy.sleep()
        try:
            resp = session.get(url, params=params, timeout=timeout)
        except requests.RequestException as exc:
            last = f"network error: {exc}"
            log.warning("GET %s failed (attempt %d/%d): %s", url, attempt + 1, policy.max_attempts, exc)
            policy.on_failure()
            continue

        if resp.status_code == 429 or resp.status_code >= 500:
            last = f"HTTP {resp.status_code}"
            log.warning("GET %s returned %s (attempt %d/%d)", url, resp.status_code, attempt + 1, policy.max_attempts)
            policy.on_failure()
            continue

        policy.on_success()
        return resp

    raise TransientIOError(f"GET {url} failed after {policy.max_attempts} attempts ({last})")
