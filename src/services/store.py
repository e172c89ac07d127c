"""Relational store access for leads, conversations, bookings and friends.

The core only ever needs filtered selects, inserts and updates by table
name, so that is all the ``Store`` protocol offers.  Filter keys are column
names with an optional operator suffix::

    {"organization_id": org_id}            # equality
    {"scheduled_at__lte": now}             # ordering predicate
    {"sentiment__ne": None}                # IS NOT NULL

Two implementations:

* ``InMemoryStore`` — thread-safe dict-of-lists, used for local development
  and by the test-suite.
* ``SupabaseStore`` — Supabase PostgREST over ``httpx``.

Neither offers multi-table transactions; ``insert_many`` is a single request
so a batch either lands as a whole or not at all.
"""

from __future__ import annotations

import copy
import logging
import operator
import threading
import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic_core import to_jsonable_python

from src.errors import StoreError
from src.models import utc_now
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 15.0

_OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "lte": operator.le,
    "gt": operator.gt,
    "gte": operator.ge,
}

# PostgREST spelling of each operator suffix
_POSTGREST_OPERATORS = {
    "eq": "eq",
    "ne": "neq",
    "lt": "lt",
    "lte": "lte",
    "gt": "gt",
    "gte": "gte",
}

Row = dict[str, Any]


def split_filter_key(key: str) -> tuple[str, str]:
    """``"scheduled_at__lte"`` → ``("scheduled_at", "lte")``."""
    column, _, op = key.partition("__")
    op = op or "eq"
    if op not in _OPERATORS:
        raise ValueError(f"Unsupported filter operator {op!r} in {key!r}")
    return column, op


class Store(Protocol):
    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]: ...

    def select_one(self, table: str, *, filters: dict[str, Any]) -> Row | None: ...

    def insert(self, table: str, row: Row) -> Row: ...

    def insert_many(self, table: str, rows: list[Row]) -> list[Row]: ...

    def update(self, table: str, values: Row, *, filters: dict[str, Any]) -> list[Row]: ...


# ── In-memory implementation ─────────────────────────────────────────


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
    """Line up datetime/ISO-string pairs so they compare chronologically."""
    if isinstance(left, datetime) and isinstance(right, str):
        right = datetime.fromisoformat(right)
    elif isinstance(left, str) and isinstance(right, datetime):
        left = datetime.fromisoformat(left)
    return left, right


class InMemoryStore:
    """Dict-of-lists store with the same query surface as ``SupabaseStore``."""

    def __init__(self, seed: dict[str, list[Row]] | None = None) -> None:
        self._tables: dict[str, list[Row]] = {}
        self._lock = threading.Lock()
        for table, rows in (seed or {}).items():
            self.insert_many(table, rows)

    # ── Matching ─────────────────────────────────────────────────────

    @staticmethod
    def _matches(row: Row, filters: dict[str, Any]) -> bool:
        for key, expected in filters.items():
            column, op = split_filter_key(key)
            actual = row.get(column)
            expected = _plain(expected)
            if expected is None:
                # NULL semantics: only equality / inequality make sense
                if (op == "eq") != (actual is None):
                    return False
                continue
            if actual is None:
                return False
            left, right = _comparable(actual, expected)
            if not _OPERATORS[op](left, right):
                return False
        return True

    @staticmethod
    def _prepare(row: Row) -> Row:
        prepared = {k: _plain(v) for k, v in row.items()}
        prepared.setdefault("id", str(uuid.uuid4()))
        prepared.setdefault("created_at", utc_now())
        return prepared

    # ── Store API ────────────────────────────────────────────────────

    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        with self._lock:
            rows = [r for r in self._tables.get(table, []) if self._matches(r, filters or {})]
            if order_by:
                rows.sort(
                    key=lambda r: (r.get(order_by) is None, r.get(order_by)),
                    reverse=descending,
                )
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def select_one(self, table: str, *, filters: dict[str, Any]) -> Row | None:
        rows = self.select(table, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Row) -> Row:
        return self.insert_many(table, [row])[0]

    def insert_many(self, table: str, rows: list[Row]) -> list[Row]:
        prepared = [self._prepare(r) for r in rows]
        with self._lock:
            self._tables.setdefault(table, []).extend(prepared)
            return copy.deepcopy(prepared)

    def update(self, table: str, values: Row, *, filters: dict[str, Any]) -> list[Row]:
        changes = {k: _plain(v) for k, v in values.items()}
        updated: list[Row] = []
        with self._lock:
            for row in self._tables.get(table, []):
                if self._matches(row, filters):
                    row.update(changes)
                    updated.append(copy.deepcopy(row))
        return updated


# ── Supabase (PostgREST) implementation ──────────────────────────────


def _postgrest_value(value: Any) -> str:
    value = _plain(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def build_postgrest_params(
    filters: dict[str, Any] | None,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> dict[str, str]:
    """Translate store filters into PostgREST query parameters."""
    params: dict[str, str] = {}
    for key, value in (filters or {}).items():
        column, op = split_filter_key(key)
        if value is None:
            params[column] = "is.null" if op == "eq" else "not.is.null"
        else:
            params[column] = f"{_POSTGREST_OPERATORS[op]}.{_postgrest_value(value)}"
    if order_by:
        params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
    if limit is not None:
        params["limit"] = str(limit)
    return params


class SupabaseStore:
    """Thin wrapper around the Supabase REST (PostgREST) interface."""

    def __init__(self, url: str, service_key: str) -> None:
        self._client = httpx.Client(
            base_url=f"{url.rstrip('/')}/rest/v1",
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        returning: bool = False,
    ) -> list[Row]:
        headers = {"Prefer": "return=representation"} if returning else None
        operation = f"{method} {table}"
        t0 = time.perf_counter()
        try:
            response = self._client.request(
                method, f"/{table}", params=params, json=json_body, headers=headers,
            )
        except httpx.HTTPError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure("supabase", operation, type(exc).__name__, elapsed)
            raise StoreError(f"Supabase request failed: {exc}") from exc

        elapsed = (time.perf_counter() - t0) * 1000
        if response.status_code >= 400:
            metrics.record_failure("supabase", operation, str(response.status_code), elapsed)
            raise StoreError(
                f"Supabase error {response.status_code} on {operation}: {response.text}",
                status_code=response.status_code,
            )
        metrics.record_success("supabase", operation, latency_ms=elapsed)
        if not response.content:
            return []
        return response.json()

    def select(
        self,
        table: str,
        *,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        params = build_postgrest_params(filters, order_by, descending, limit)
        params["select"] = "*"
        return self._request("GET", table, params=params)

    def select_one(self, table: str, *, filters: dict[str, Any]) -> Row | None:
        rows = self.select(table, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Row) -> Row:
        return self.insert_many(table, [row])[0]

    def insert_many(self, table: str, rows: list[Row]) -> list[Row]:
        return self._request(
            "POST", table, json_body=to_jsonable_python(rows), returning=True,
        )

    def update(self, table: str, values: Row, *, filters: dict[str, Any]) -> list[Row]:
        if not filters:
            raise ValueError("Refusing to update every row of a table without filters")
        return self._request(
            "PATCH",
            table,
            params=build_postgrest_params(filters),
            json_body=to_jsonable_python(values),
            returning=True,
        )
