from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable

from supabase import Client, create_client

from .config import settings


@lru_cache
def _build_client() -> Client:
    if not settings.supabase_url or not settings.supabase_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_KEY must be configured.")
    return create_client(settings.supabase_url, settings.supabase_key)


def get_db() -> Client:
    return _build_client()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def fetch_one(table: str, row_id: str, columns: str = "*") -> dict | None:
    result = get_db().table(table).select(columns).eq("id", row_id).limit(1).execute()
    if not result.data:
        return None
    return result.data[0]


PAGE_SIZE = 1000


def fetch_all(build_query: Callable[[], Any], page_size: int | None = None) -> list[dict]:
    """Read every row of a query, one ``range`` page at a time.

    PostgREST truncates a single response at the project's max-rows, so
    ``build_query`` must return a fresh, ordered builder for each page.
    """
    size = page_size or PAGE_SIZE
    rows: list[dict] = []
    offset = 0
    while True:
        page = build_query().range(offset, offset + size - 1).execute().data or []
        rows.extend(page)
        if len(page) < size:
            return rows
        offset += size
