# snackzo/backend.py
"""
Query/subscribe interface over the hosted database.

Everything else in the package talks to storage through `Backend`:
- select / count / insert / update / upsert / delete on named tables
- rpc for database functions (e.g. calculate_delivery_estimate)
- subscribe for row change events (the realtime channel)

Two implementations are provided:
- InMemoryBackend: dict-of-lists tables with synchronous change events,
  used by the demo dataset, the CLI and the test suite
- RestBackend: the hosted PostgREST endpoint over `requests`, with a
  polling subscription standing in for the realtime websocket
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from . import config, utils

logger = logging.getLogger(__name__)

EVENT_INSERT = "INSERT"
EVENT_UPDATE = "UPDATE"
EVENT_DELETE = "DELETE"
EVENT_ANY = "*"


class BackendError(Exception):
    """Raised when the backend cannot complete a query, write or RPC."""


class NotFoundError(LookupError):
    """Raised when a referenced row (order, runner, profile) does not exist."""


# =============================================================================
# FILTERS AND EVENTS
# =============================================================================

@dataclass(frozen=True)
class Filter:
    """
    A single column predicate.

    Attributes:
        column: Column name
        op: One of eq, neq, in, lt, lte, gt, gte, is, not_is
        value: Comparison value (a sequence for 'in', ignored for is/not_is)
    """
    column: str
    op: str
    value: Any = None

    def matches(self, row: Dict[str, Any]) -> bool:
        actual = row.get(self.column)
        if self.op == "is":
            return actual is None
        if self.op == "not_is":
            return actual is not None
        if self.op == "eq":
            return actual == self.value
        if self.op == "neq":
            return actual != self.value
        if self.op == "in":
            return actual in self.value
        if actual is None:
            return False

        actual, expected = _comparable(actual, self.value)
        if self.op == "lt":
            return actual < expected
        if self.op == "lte":
            return actual <= expected
        if self.op == "gt":
            return actual > expected
        if self.op == "gte":
            return actual >= expected
        raise ValueError(f"Unknown filter operator: {self.op}")


def _comparable(actual: Any, expected: Any) -> Tuple[Any, Any]:
    """Timestamps may be stored as strings; compare them as datetimes."""
    if isinstance(expected, datetime) or isinstance(actual, datetime):
        return utils.parse_timestamp(actual), utils.parse_timestamp(expected)
    return actual, expected


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, "neq", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def lt(column: str, value: Any) -> Filter:
    return Filter(column, "lt", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def is_null(column: str) -> Filter:
    return Filter(column, "is")


def not_null(column: str) -> Filter:
    return Filter(column, "not_is")


@dataclass
class ChangeEvent:
    """A row change delivered to subscribers."""
    event: str
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by `Backend.subscribe`."""

    def __init__(
        self,
        table: str,
        callback: ChangeCallback,
        event: str = EVENT_ANY,
        filters: Optional[Sequence[Filter]] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ) -> None:
        self.table = table
        self.callback = callback
        self.event = event
        self.filters: List[Filter] = list(filters or [])
        self.active = True
        self._on_cancel = on_cancel

    def wants(self, change: ChangeEvent) -> bool:
        if not self.active or change.table != self.table:
            return False
        if self.event not in (EVENT_ANY, change.event):
            return False
        row = change.row
        return all(f.matches(row) for f in self.filters)

    def deliver(self, change: ChangeEvent) -> None:
        try:
            self.callback(change)
        except Exception:
            logger.exception(f"Subscriber on '{self.table}' failed handling {change.event}")

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_cancel is not None:
            self._on_cancel(self)

    def __repr__(self) -> str:
        return f"Subscription({self.table}, {self.event}, active={self.active})"


# =============================================================================
# INTERFACE
# =============================================================================

class Backend(ABC):
    """Generic query/subscribe interface over the hosted database."""

    @abstractmethod
    def select(
        self,
        table: str,
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def select_one(self, table: str, filters: Optional[Sequence[Filter]] = None) -> Optional[Dict[str, Any]]:
        """First row matching `filters`, or None."""
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    @abstractmethod
    def count(self, table: str, filters: Optional[Sequence[Filter]] = None) -> int:
        ...

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def upsert(self, table: str, row: Dict[str, Any], on_conflict: str = "id") -> Dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, table: str, filters: Sequence[Filter]) -> int:
        ...

    @abstractmethod
    def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        ...

    @abstractmethod
    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        event: str = EVENT_ANY,
        filters: Optional[Sequence[Filter]] = None,
    ) -> Subscription:
        ...


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================

class InMemoryBackend(Backend):
    """
    Process-local tables with synchronous change events.

    Rows are copied on the way in and out so callers can never mutate
    stored state. Change events are delivered after the write completes;
    a failing subscriber is logged and does not affect the write.
    """

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._rpcs: Dict[str, Callable[..., Any]] = {}
        self._subscriptions: List[Subscription] = []
        self._lock = threading.RLock()
        for name, rows in (tables or {}).items():
            self.load(name, rows)

    # --- setup -------------------------------------------------------------

    def load(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        """Bulk-load rows without emitting change events."""
        with self._lock:
            target = self._tables.setdefault(table, [])
            for row in rows:
                target.append(self._with_id(row))

    def register_rpc(self, name: str, fn: Callable[..., Any]) -> None:
        """Register a Python callable as a database function."""
        self._rpcs[name] = fn

    def tables(self) -> List[str]:
        return sorted(self._tables)

    @staticmethod
    def _with_id(row: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(row)
        if stored.get("id") in (None, ""):
            stored["id"] = str(uuid.uuid4())
        return stored

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(table, [])

    # --- queries -----------------------------------------------------------

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        with self._lock:
            rows = [dict(r) for r in self._rows(table) if all(f.matches(r) for f in filters or [])]

        if order_by:
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: _sort_key(r[order_by]), reverse=descending)
            rows = present + missing  # nulls last
        if limit is not None:
            rows = rows[:limit]
        return rows

    def count(self, table, filters=None):
        with self._lock:
            return sum(1 for r in self._rows(table) if all(f.matches(r) for f in filters or []))

    # --- writes ------------------------------------------------------------

    def insert(self, table, row):
        with self._lock:
            stored = self._with_id(row)
            self._rows(table).append(stored)
            new = dict(stored)
        self._emit(ChangeEvent(EVENT_INSERT, table, new=new))
        return dict(new)

    def update(self, table, values, filters):
        changes: List[ChangeEvent] = []
        with self._lock:
            for row in self._rows(table):
                if all(f.matches(row) for f in filters):
                    old = dict(row)
                    row.update(values)
                    changes.append(ChangeEvent(EVENT_UPDATE, table, new=dict(row), old=old))
        for change in changes:
            self._emit(change)
        return [dict(c.new) for c in changes]

    def upsert(self, table, row, on_conflict="id"):
        key = row.get(on_conflict)
        if key is not None:
            with self._lock:
                exists = any(r.get(on_conflict) == key for r in self._rows(table))
            if exists:
                return self.update(table, row, [eq(on_conflict, key)])[0]
        return self.insert(table, row)

    def delete(self, table, filters):
        removed: List[Dict[str, Any]] = []
        with self._lock:
            kept = []
            for row in self._rows(table):
                if all(f.matches(row) for f in filters):
                    removed.append(row)
                else:
                    kept.append(row)
            self._tables[table] = kept
        for row in removed:
            self._emit(ChangeEvent(EVENT_DELETE, table, old=dict(row)))
        return len(removed)

    def rpc(self, name, params=None):
        fn = self._rpcs.get(name)
        if fn is None:
            raise BackendError(f"Unknown RPC: {name}")
        try:
            return fn(**(params or {}))
        except BackendError:
            raise
        except Exception as e:
            raise BackendError(f"RPC {name} failed: {e}") from e

    # --- realtime ----------------------------------------------------------

    def subscribe(self, table, callback, event=EVENT_ANY, filters=None):
        sub = Subscription(table, callback, event, filters, on_cancel=self._drop_subscription)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def _drop_subscription(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def _emit(self, change: ChangeEvent) -> None:
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(change)]
        for sub in targets:
            sub.deliver(change)


def _sort_key(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return utils.parse_timestamp(value).timestamp()
        except ValueError:
            return value
    if isinstance(value, datetime):
        return utils.parse_timestamp(value).timestamp()
    return value


# =============================================================================
# REST (PostgREST) BACKEND
# =============================================================================

def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return utils.to_iso(value)
    return str(value)


def encode_filter(f: Filter) -> Tuple[str, str]:
    """Encode a filter as a PostgREST query parameter."""
    if f.op == "is":
        return f.column, "is.null"
    if f.op == "not_is":
        return f.column, "not.is.null"
    if f.op == "in":
        return f.column, "in.(" + ",".join(_encode_value(v) for v in f.value) + ")"
    return f.column, f"{f.op}.{_encode_value(f.value)}"


def parse_content_range(header: Optional[str]) -> int:
    """'0-9/42' or '*/42' -> 42."""
    if not header or "/" not in header:
        raise BackendError(f"Missing or invalid Content-Range: {header!r}")
    total = header.rsplit("/", 1)[1]
    if total == "*":
        raise BackendError("Backend did not return an exact count")
    return int(total)


class RestBackend(Backend):
    """
    PostgREST client for the hosted backend.

    Args:
        url: Project base URL (defaults to config.SUPABASE_URL)
        key: Service key (defaults to config.SUPABASE_SERVICE_ROLE_KEY)
        timeout: Per-request timeout in seconds
        poll_interval: Polling period for subscriptions
        session: Optional requests.Session (tests inject one)
    """

    def __init__(
        self,
        url: Optional[str] = None,
        key: Optional[str] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        url = url or config.SUPABASE_URL
        if not url:
            raise ValueError("RestBackend requires a backend URL (SUPABASE_URL)")
        key = key if key is not None else config.SUPABASE_SERVICE_ROLE_KEY
        self.rest_url = url.rstrip("/") + "/rest/v1"
        self.timeout = timeout if timeout is not None else config.BACKEND_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else config.REALTIME_POLL_INTERVAL_SECONDS
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        })
        self._subscriptions: List["PollingSubscription"] = []

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.rest_url}/{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            raise BackendError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _query(
        filters: Optional[Sequence[Filter]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, str]]:
        params = [encode_filter(f) for f in filters or []]
        if order_by:
            params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}.nullslast"))
        if limit is not None:
            params.append(("limit", str(limit)))
        return params

    @staticmethod
    def _json(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Backend returned invalid JSON: {e}") from e

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        params = [("select", "*")] + self._query(filters, order_by, descending, limit)
        return self._json(self._request("GET", table, params=params)) or []

    def count(self, table, filters=None):
        response = self._request(
            "HEAD", table,
            params=[("select", "*")] + self._query(filters),
            headers={"Prefer": "count=exact"},
        )
        return parse_content_range(response.headers.get("Content-Range"))

    def insert(self, table, row):
        response = self._request(
            "POST", table, json=row, headers={"Prefer": "return=representation"}
        )
        rows = self._json(response) or []
        return rows[0] if rows else dict(row)

    def update(self, table, values, filters):
        response = self._request(
            "PATCH", table,
            params=self._query(filters),
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return self._json(response) or []

    def upsert(self, table, row, on_conflict="id"):
        response = self._request(
            "POST", table,
            params=[("on_conflict", on_conflict)],
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        rows = self._json(response) or []
        return rows[0] if rows else dict(row)

    def delete(self, table, filters):
        response = self._request(
            "DELETE", table,
            params=self._query(filters),
            headers={"Prefer": "return=representation"},
        )
        return len(self._json(response) or [])

    def rpc(self, name, params=None):
        return self._json(self._request("POST", f"rpc/{name}", json=params or {}))

    def subscribe(self, table, callback, event=EVENT_ANY, filters=None):
        sub = PollingSubscription(self, table, callback, event, filters, on_cancel=self._drop_subscription)
        self._subscriptions.append(sub)
        sub.start()
        return sub

    def _drop_subscription(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def close(self) -> None:
        """Stop every polling subscription and close the HTTP session."""
        for sub in list(self._subscriptions):
            sub.unsubscribe()
        self.session.close()


class PollingSubscription(Subscription):
    """
    Realtime stand-in: re-selects the filtered table on an interval and
    emits INSERT / UPDATE / DELETE events by diffing rows on `id`.
    """

    def __init__(self, backend: RestBackend, table, callback, event=EVENT_ANY, filters=None, on_cancel=None):
        super().__init__(table, callback, event, filters, on_cancel)
        self.backend = backend
        self._stop = threading.Event()
        self._snapshot: Optional[Dict[Any, Dict[str, Any]]] = None
        self._thread = threading.Thread(
            target=self._run, name=f"poll-{table}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def unsubscribe(self) -> None:
        self._stop.set()
        super().unsubscribe()

    def poll_once(self) -> List[ChangeEvent]:
        """Fetch the table once and deliver the changes since the last poll."""
        rows = self.backend.select(self.table, self.filters)
        current = {row.get("id"): row for row in rows}
        changes: List[ChangeEvent] = []

        if self._snapshot is not None:
            for row_id, row in current.items():
                old = self._snapshot.get(row_id)
                if old is None:
                    changes.append(ChangeEvent(EVENT_INSERT, self.table, new=row))
                elif old != row:
                    changes.append(ChangeEvent(EVENT_UPDATE, self.table, new=row, old=old))
            for row_id, old in self._snapshot.items():
                if row_id not in current:
                    changes.append(ChangeEvent(EVENT_DELETE, self.table, old=old))

        self._snapshot = current
        for change in changes:
            if self.wants(change):
                self.deliver(change)
        return changes

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except BackendError as e:
                logger.warning(f"Polling '{self.table}' failed: {e}")
            self._stop.wait(self.backend.poll_interval)
