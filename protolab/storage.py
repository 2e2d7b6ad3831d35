from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError as PostgrestAPIError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

TABLES = (
    "users",
    "refresh_tokens",
    "orders",
    "appointments",
    "design_requests",
    "settings",
    "credits",
    "credits_transactions",
    "materials",
    "printers",
    "maintenance_logs",
    "conversations",
    "conversation_messages",
)

UNIQUE_VIOLATION_CODE = "23505"


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


class StoreError(RuntimeError):
    pass


class UniqueViolation(StoreError):
    """A row with the same values in the unique columns already exists."""


class Store:
    """Minimal row store used by the API handlers.

    ``filters`` are equality matches; a ``None`` value matches NULL / missing.
    """

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        raise NotImplementedError

    def insert(self, table: str, row: Row) -> Row:
        raise NotImplementedError

    def update_where(self, table: str, filters: Dict[str, Any], changes: Row) -> List[Row]:
        raise NotImplementedError

    def delete_where(self, table: str, filters: Dict[str, Any]) -> int:
        raise NotImplementedError

    def upsert(self, table: str, row: Row, on_conflict: str = "id") -> Row:
        raise NotImplementedError

    def insert_unique(self, table: str, row: Row, unique_keys: Tuple[str, ...]) -> Row:
        """Insert unless a row already matches ``row`` on every key in ``unique_keys``."""
        raise NotImplementedError

    # Derived helpers

    def get(self, table: str, row_id: Any) -> Optional[Row]:
        return self.find_one(table, {"id": row_id})

    def find_one(self, table: str, filters: Dict[str, Any]) -> Optional[Row]:
        rows = self.select(table, filters, limit=1)
        return rows[0] if rows else None

    def update(self, table: str, row_id: Any, changes: Row) -> Optional[Row]:
        rows = self.update_where(table, {"id": row_id}, changes)
        return rows[0] if rows else None

    def delete(self, table: str, row_id: Any) -> bool:
        return self.delete_where(table, {"id": row_id}) > 0


# -------------------------
# Local JSON files (development, tests)
# -------------------------
def _matches(row: Row, filters: Optional[Dict[str, Any]]) -> bool:
    for k, v in (filters or {}).items():
        if v is None:
            if row.get(k) is not None:
                return False
        elif row.get(k) != v:
            return False
    return True


def _sort_key(value: Any):
    # None sorts first, then numbers, then everything else as text
    if value is None:
        return (0, 0, "")
    if isinstance(value, bool):
        return (1, int(value), "")
    if isinstance(value, (int, float)):
        return (1, value, "")
    return (2, 0, str(value))


class JsonStore(Store):
    """One ``<table>.json`` file per table, written atomically."""

    def __init__(self, data_dir: str) -> None:
        self.data_dir = data_dir
        self._lock = threading.RLock()
        os.makedirs(self.data_dir, exist_ok=True)

    def _path(self, table: str) -> str:
        if table not in TABLES:
            raise StoreError(f"Unknown table: {table}")
        return os.path.join(self.data_dir, f"{table}.json")

    def _load(self, table: str) -> List[Row]:
        path = self._path(table)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        return data if isinstance(data, list) else []

    def _save(self, table: str, rows: List[Row]) -> None:
        path = self._path(table)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(rows, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, path)

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        with self._lock:
            rows = [dict(r) for r in self._load(table) if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: _sort_key(r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[: max(0, int(limit))]
        return rows

    def insert(self, table, row):
        record = dict(row)
        stamp = now_iso()
        record.setdefault("id", new_id())
        record.setdefault("created_at", stamp)
        record.setdefault("updated_at", stamp)
        with self._lock:
            rows = self._load(table)
            if any(r.get("id") == record["id"] for r in rows):
                raise StoreError(f"Duplicate id in {table}: {record['id']}")
            rows.append(record)
            self._save(table, rows)
        return dict(record)

    def update_where(self, table, filters, changes):
        updated: List[Row] = []
        with self._lock:
            rows = self._load(table)
            for r in rows:
                if not _matches(r, filters):
                    continue
                r.update(changes)
                r["updated_at"] = now_iso()
                updated.append(dict(r))
            if updated:
                self._save(table, rows)
        return updated

    def delete_where(self, table, filters):
        with self._lock:
            rows = self._load(table)
            kept = [r for r in rows if not _matches(r, filters)]
            removed = len(rows) - len(kept)
            if removed:
                self._save(table, kept)
        return removed

    def upsert(self, table, row, on_conflict="id"):
        with self._lock:
            key = row.get(on_conflict)
            existing = self.find_one(table, {on_conflict: key}) if key is not None else None
            if existing:
                changes = {k: v for k, v in row.items() if k != "id"}
                return self.update_where(table, {on_conflict: key}, changes)[0]
            return self.insert(table, row)

    def insert_unique(self, table, row, unique_keys):
        filters = {k: row.get(k) for k in unique_keys}
        with self._lock:
            if self.find_one(table, filters):
                raise UniqueViolation(f"Duplicate {table} row for {filters}")
            return self.insert(table, row)


# -------------------------
# Supabase (production)
# -------------------------
class SupabaseStore(Store):
    def __init__(self, url: str, key: str, client: Any = None) -> None:
        if client is None:
            from supabase import create_client

            client = create_client(url, key)
        self.client = client

    def _filtered(self, query, filters: Optional[Dict[str, Any]]):
        for k, v in (filters or {}).items():
            query = query.is_(k, "null") if v is None else query.eq(k, v)
        return query

    def select(self, table, filters=None, order_by=None, descending=False, limit=None):
        query = self._filtered(self.client.table(table).select("*"), filters)
        if order_by:
            query = query.order(order_by, desc=descending)
        if limit is not None:
            query = query.limit(int(limit))
        return list(query.execute().data or [])

    def insert(self, table, row):
        record = dict(row)
        stamp = now_iso()
        record.setdefault("created_at", stamp)
        record.setdefault("updated_at", stamp)
        data = self.client.table(table).insert(record).execute().data or []
        if not data:
            raise StoreError(f"Insert into {table} returned no row")
        return data[0]

    def update_where(self, table, filters, changes):
        record = dict(changes)
        record["updated_at"] = now_iso()
        query = self._filtered(self.client.table(table).update(record), filters)
        return list(query.execute().data or [])

    def delete_where(self, table, filters):
        query = self._filtered(self.client.table(table).delete(), filters)
        return len(query.execute().data or [])

    def upsert(self, table, row, on_conflict="id"):
        record = dict(row)
        record["updated_at"] = now_iso()
        data = self.client.table(table).upsert(record, on_conflict=on_conflict).execute().data or []
        if not data:
            raise StoreError(f"Upsert into {table} returned no row")
        return data[0]

    def insert_unique(self, table, row, unique_keys):
        # enforced by a unique index on unique_keys in the database
        try:
            return self.insert(table, row)
        except PostgrestAPIError as e:
            if e.code == UNIQUE_VIOLATION_CODE:
                raise UniqueViolation(f"Duplicate {table} row: {e.message}")
            raise


def create_store(config: Dict[str, Any]) -> Store:
    backend = str(config.get("DATA_BACKEND") or "json").lower()
    if backend == "supabase":
        url = config.get("SUPABASE_URL") or ""
        key = config.get("SUPABASE_SERVICE_ROLE_KEY") or ""
        if not url or not key:
            raise StoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for the supabase backend")
        logger.info("Using Supabase store at %s", url)
        return SupabaseStore(url, key)
    logger.info("Using JSON store in %s", config.get("DATA_DIR"))
    return JsonStore(str(config.get("DATA_DIR")))
