"""In-memory stand-in for the subset of the Supabase query builder the services use.

Each ``execute()`` runs under one lock, so a filtered update behaves like a
single conditional statement the way PostgREST does.
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from postgrest.exceptions import APIError

from monetization.database import parse_ts, to_iso, utcnow


TABLE_DEFAULTS: dict[str, dict[str, Any]] = {
    "users": {
        "role": "viewer",
        "wallet_balance": 0,
        "total_earnings": 0,
        "version": 0,
        "is_premium": False,
        "premium_expiry_date": None,
        "has_channel": False,
        "bank_account_number": None,
        "bank_account_holder_name": None,
        "bank_ifsc_code": None,
        "bank_name": None,
        "subscriber_count": 0,
        "total_watch_hours": 0,
        "total_video_views": 0,
        "meets_monetization_requirements": False,
        "monetization_enabled_at": None,
    },
    "videos": {"cpm": 100, "is_monetized": False},
    "video_uploads": {
        "views": 0,
        "likes": 0,
        "total_revenue": 0,
        "total_views": 0,
        "monetized_views": 0,
        "version": 0,
    },
    "view_sessions": {"version": 0},
    "transactions": {"status": "pending"},
}

# (columns, predicate selecting the rows the constraint applies to)
UNIQUE_CONSTRAINTS: dict[str, list[tuple[tuple[str, ...], Any]]] = {
    "users": [(("email",), lambda row: row.get("email") is not None)],
    "view_sessions": [(("video_id", "viewer_id"), lambda row: True)],
    "idempotency_keys": [(("user_id", "scope", "key"), lambda row: True)],
    "transactions": [
        (("provider_payment_id",), lambda row: row.get("provider_payment_id") is not None),
        (("ad_view_id",), lambda row: row.get("type") == "earning"),
    ],
}

NON_NEGATIVE_COLUMNS = {"users": ("wallet_balance", "total_earnings")}

# Database functions from schema.sql: (table, id parameter, column deltas).
RPC_FUNCTIONS: dict[str, tuple[str, str, Any]] = {
    "credit_wallet": (
        "users",
        "p_user_id",
        lambda params: {
            "wallet_balance": params["p_amount"],
            "total_earnings": params["p_amount"] if params["p_count_as_earnings"] else 0,
        },
    ),
    "add_watch_time": (
        "users",
        "p_user_id",
        lambda params: {"total_watch_hours": params["p_hours"], "total_video_views": 1},
    ),
    "record_upload_revenue": (
        "video_uploads",
        "p_upload_id",
        lambda params: {"total_revenue": params["p_revenue"], "total_views": 1, "monetized_views": 1},
    ),
    "record_upload_view": ("video_uploads", "p_upload_id", lambda params: {"views": 1}),
}


@dataclass
class FakeResponse:
    data: list[dict[str, Any]]
    count: int | None = None


def _add(current: Any, delta: Any) -> Any:
    if isinstance(delta, int) and isinstance(current or 0, int):
        return (current or 0) + delta
    return float(Decimal(str(current or 0)) + Decimal(str(delta)))


def _comparable(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return parse_ts(value)
        except ValueError:
            return value
    return value


def _matches(row: dict[str, Any], column: str, op: str, expected: Any) -> bool:
    actual = row.get(column)
    if op == "eq":
        return actual == expected
    if op == "neq":
        return actual != expected
    if op == "is":
        return actual is expected
    if op == "in":
        return actual in expected
    if actual is None or expected is None:
        return False
    left, right = _comparable(actual), _comparable(expected)
    if isinstance(left, datetime) != isinstance(right, datetime):
        left, right = actual, expected
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    raise ValueError(f"Unsupported filter {op}")


class FakeQuery:
    def __init__(self, client: "FakeSupabase", table: str):
        self._client = client
        self._table = table
        self._operation = "select"
        self._columns = "*"
        self._count: str | None = None
        self._payload: Any = None
        self._filters: list[tuple[str, str, Any]] = []
        self._orders: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._offset = 0

    def select(self, columns: str = "*", count: str | None = None) -> "FakeQuery":
        self._columns = columns
        self._count = count
        return self

    def insert(self, payload: Any) -> "FakeQuery":
        self._operation = "insert"
        self._payload = payload
        return self

    def update(self, changes: dict[str, Any]) -> "FakeQuery":
        self._operation = "update"
        self._payload = changes
        return self

    def delete(self) -> "FakeQuery":
        self._operation = "delete"
        return self

    def _filter(self, column: str, op: str, value: Any) -> "FakeQuery":
        self._filters.append((column, op, value))
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "eq", value)

    def neq(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "neq", value)

    def gt(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "gt", value)

    def gte(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "gte", value)

    def lt(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "lt", value)

    def lte(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "lte", value)

    def is_(self, column: str, value: Any) -> "FakeQuery":
        return self._filter(column, "is", value)

    def in_(self, column: str, values: Any) -> "FakeQuery":
        return self._filter(column, "in", list(values))

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._orders.append((column, desc))
        return self

    def limit(self, size: int) -> "FakeQuery":
        self._limit = size
        return self

    def range(self, start: int, end: int) -> "FakeQuery":
        self._offset = start
        self._limit = end - start + 1
        return self

    def execute(self) -> FakeResponse:
        with self._client.lock:
            self._client.maybe_fail(self._table, self._operation)
            rows = self._client.tables.setdefault(self._table, [])
            if self._operation == "insert":
                return self._insert(rows)
            matched = [row for row in rows if all(_matches(row, *f) for f in self._filters)]
            if self._operation == "update":
                return self._update(rows, matched)
            if self._operation == "delete":
                for row in matched:
                    rows.remove(row)
                return FakeResponse(copy.deepcopy(matched))
            return self._select(matched)

    def _select(self, matched: list[dict[str, Any]]) -> FakeResponse:
        for column, desc in reversed(self._orders):
            present = [row for row in matched if row.get(column) is not None]
            missing = [row for row in matched if row.get(column) is None]
            present.sort(key=lambda row: _comparable(row[column]), reverse=desc)
            matched = present + missing
        total = len(matched)
        matched = matched[self._offset:]
        if self._limit is not None:
            matched = matched[: self._limit]
        if self._columns.strip() != "*":
            wanted = [column.strip() for column in self._columns.split(",")]
            matched = [{column: row.get(column) for column in wanted} for row in matched]
        return FakeResponse(copy.deepcopy(matched), total if self._count else None)

    def _insert(self, rows: list[dict[str, Any]]) -> FakeResponse:
        payloads = self._payload if isinstance(self._payload, list) else [self._payload]
        created = []
        for payload in payloads:
            row = {
                "id": str(uuid.uuid4()),
                "created_at": to_iso(utcnow()),
                **copy.deepcopy(TABLE_DEFAULTS.get(self._table, {})),
                **copy.deepcopy(payload),
            }
            self._client.check_row(self._table, row, rows + created)
            created.append(row)
        rows.extend(created)
        return FakeResponse(copy.deepcopy(created))

    def _update(self, rows: list[dict[str, Any]], matched: list[dict[str, Any]]) -> FakeResponse:
        updated = []
        for row in matched:
            candidate = {**row, **copy.deepcopy(self._payload)}
            self._client.check_row(self._table, candidate, [other for other in rows if other is not row])
            updated.append((row, candidate))
        for row, candidate in updated:
            row.clear()
            row.update(candidate)
        return FakeResponse(copy.deepcopy([row for row, _ in updated]))


class FakeRpc:
    def __init__(self, client: "FakeSupabase", function: str, params: dict[str, Any]):
        self._client = client
        self._function = function
        self._params = params

    def execute(self) -> FakeResponse:
        table, id_param, deltas = RPC_FUNCTIONS[self._function]
        with self._client.lock:
            self._client.maybe_fail(table, "update")
            rows = self._client.tables.setdefault(table, [])
            matched = [row for row in rows if row.get("id") == self._params[id_param]]
            for row in matched:
                candidate = dict(row)
                for column, delta in deltas(self._params).items():
                    candidate[column] = _add(row.get(column), delta)
                candidate["version"] = int(row.get("version") or 0) + 1
                self._client.check_row(table, candidate, [other for other in rows if other is not row])
                row.update(candidate)
            return FakeResponse(copy.deepcopy(matched))


class FakeSupabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self._failures: dict[tuple[str, str], int] = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, function: str, params: dict[str, Any]) -> FakeRpc:
        return FakeRpc(self, function, params)

    def fail_next(self, table: str, operation: str, times: int = 1) -> None:
        self._failures[(table, operation)] = times

    def maybe_fail(self, table: str, operation: str) -> None:
        remaining = self._failures.get((table, operation), 0)
        if remaining:
            self._failures[(table, operation)] = remaining - 1
            raise RuntimeError(f"Injected {operation} failure on {table}")

    def check_row(self, table: str, row: dict[str, Any], others: list[dict[str, Any]]) -> None:
        for columns, applies in UNIQUE_CONSTRAINTS.get(table, []):
            if not applies(row):
                continue
            key = tuple(row.get(column) for column in columns)
            for other in others:
                if applies(other) and tuple(other.get(column) for column in columns) == key:
                    raise APIError(
                        {
                            "code": "23505",
                            "message": f"duplicate key value violates unique constraint on {table}{columns}",
                            "hint": None,
                            "details": None,
                        }
                    )
        for column in NON_NEGATIVE_COLUMNS.get(table, ()):
            if float(row.get(column) or 0) < 0:
                raise APIError(
                    {
                        "code": "23514",
                        "message": f"{table}.{column} violates check constraint",
                        "hint": None,
                        "details": None,
                    }
                )

    def rows(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        with self.lock:
            return [
                copy.deepcopy(row)
                for row in self.tables.get(table, [])
                if all(row.get(column) == value for column, value in filters.items())
            ]

    def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        found = self.rows(table, id=row_id)
        return found[0] if found else None

    def add(self, table: str, **values: Any) -> dict[str, Any]:
        return self.table(table).insert(values).execute().data[0]
