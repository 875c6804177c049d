"""Row-level access to the relational store.

The settlement core only needs keyed CRUD with equality/range filters and a
way to make several writes land together. ``RowStore`` captures that surface;
``JsonRowStore`` implements it on a single JSON document so the service can
run (and be tested) without a database server.

``JsonRowStore`` reads its file once at start-up and owns it from then on: it
is shared safely between threads of one process, but two processes pointed at
the same file (e.g. ``--once`` beside a running service) overwrite each other.
Multi-process deployments need a database-backed ``RowStore``.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

from .errors import StoreError

logger = logging.getLogger(__name__)

Row = Dict[str, Any]

DEFAULT_UNIQUE_KEYS: Dict[str, Sequence[Tuple[str, ...]]] = {
    "wallets": (("user_id",), ("public_address",)),
    "orders": (("id",), ("transaction_hash",)),
    "bookings": (("id",),),
    "order_items": (("id",),),
    "vendors": (("id",),),
    "sync_status": (("contract_address",),),
    "sync_leases": (("contract_address",),),
    "rate_limits": (("key",),),
    "sessions": (("token_hash",),),
}


class RowStore(Protocol):
    def select(
        self,
        table: str,
        *,
        eq: Optional[Mapping[str, Any]] = None,
        gte: Optional[Mapping[str, Any]] = None,
        lte: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    def select_one(self, table: str, *, eq: Mapping[str, Any]) -> Optional[Row]: ...

    def insert(self, table: str, row: Mapping[str, Any]) -> Row: ...

    def update(self, table: str, values: Mapping[str, Any], *, eq: Mapping[str, Any]) -> List[Row]: ...

    def upsert(self, table: str, row: Mapping[str, Any], *, on_conflict: str) -> Row: ...

    def atomic(self) -> Any: ...


def _matches(
    row: Row,
    eq: Optional[Mapping[str, Any]],
    gte: Optional[Mapping[str, Any]],
    lte: Optional[Mapping[str, Any]],
) -> bool:
    for column, expected in (eq or {}).items():
        if row.get(column) != expected:
            return False
    for column, bound in (gte or {}).items():
        value = row.get(column)
        if value is None or value < bound:
            return False
    for column, bound in (lte or {}).items():
        value = row.get(column)
        if value is None or value > bound:
            return False
    return True


def _sort_key(column: str):
    def key(row: Row) -> Tuple[bool, Any]:
        value = row.get(column)
        return (value is None, value)

    return key


class JsonRowStore:
    """JSON-document store with per-table unique constraints."""

    def __init__(
        self,
        path: Path,
        unique_keys: Optional[Mapping[str, Sequence[Tuple[str, ...]]]] = None,
    ) -> None:
        self.path = path
        self.unique_keys: Dict[str, Sequence[Tuple[str, ...]]] = dict(
            DEFAULT_UNIQUE_KEYS if unique_keys is None else unique_keys
        )
        self._lock = threading.RLock()
        self._tables: Dict[str, List[Row]] = {}
        self._depth = 0
        self._dirty = False
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._tables = {}
            return
        with self.path.open("r", encoding="utf-8") as handle:
            try:
                data = json.load(handle)
            except json.JSONDecodeError as exc:
                raise StoreError(f"Store file {self.path} is not valid JSON") from exc
        if not isinstance(data, dict):
            raise StoreError(f"Store file {self.path} must contain an object")
        self._tables = {
            str(name): [dict(row) for row in rows if isinstance(row, dict)]
            for name, rows in data.items()
            if isinstance(rows, list)
        }

    def _persist(self) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._tables, handle, indent=2, sort_keys=True)
        tmp_path.replace(self.path)

    def _commit(self) -> None:
        if self._depth:
            self._dirty = True
            return
        self._persist()

    @contextmanager
    def atomic(self) -> Iterator["JsonRowStore"]:
        """Group writes; an exception rolls every table back to the snapshot."""
        with self._lock:
            snapshot = copy.deepcopy(self._tables)
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                self._tables = snapshot
                if self._depth == 0:
                    self._dirty = False
                raise
            self._depth -= 1
            if self._depth == 0 and self._dirty:
                self._dirty = False
                self._persist()

    # ------------------------------------------------------------------
    # Constraint checks
    # ------------------------------------------------------------------
    def _check_unique(self, table: str, candidate: Row, ignore: Optional[Row] = None) -> None:
        rows = self._tables.get(table, [])
        for columns in self.unique_keys.get(table, ()):
            values = tuple(candidate.get(column) for column in columns)
            if any(value is None for value in values):
                continue
            for existing in rows:
                if existing is ignore:
                    continue
                if tuple(existing.get(column) for column in columns) == values:
                    raise StoreError(
                        f"Duplicate value for {table}.{'/'.join(columns)}",
                        status_code=409,
                    )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def select(
        self,
        table: str,
        *,
        eq: Optional[Mapping[str, Any]] = None,
        gte: Optional[Mapping[str, Any]] = None,
        lte: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        with self._lock:
            try:
                rows = [dict(row) for row in self._tables.get(table, []) if _matches(row, eq, gte, lte)]
            except TypeError as exc:
                raise StoreError(f"Incomparable range filter on {table}") from exc
        if order_by:
            descending = order_by.startswith("-")
            rows.sort(key=_sort_key(order_by.lstrip("-")), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def select_one(self, table: str, *, eq: Mapping[str, Any]) -> Optional[Row]:
        rows = self.select(table, eq=eq, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        record = dict(row)
        with self._lock:
            self._check_unique(table, record)
            self._tables.setdefault(table, []).append(record)
            self._commit()
            return dict(record)

    def update(self, table: str, values: Mapping[str, Any], *, eq: Mapping[str, Any]) -> List[Row]:
        if not eq:
            raise StoreError(f"Refusing unfiltered update on {table}")
        updated: List[Row] = []
        with self._lock:
            rows = self._tables.get(table, [])
            for index, existing in enumerate(rows):
                if not _matches(existing, eq, None, None):
                    continue
                candidate = {**existing, **values}
                self._check_unique(table, candidate, ignore=existing)
                rows[index] = candidate
                updated.append(dict(candidate))
            if updated:
                self._commit()
        return updated

    def upsert(self, table: str, row: Mapping[str, Any], *, on_conflict: str) -> Row:
        key = row.get(on_conflict)
        if key is None:
            raise StoreError(f"Upsert into {table} requires {on_conflict}")
        with self._lock:
            rows = self._tables.setdefault(table, [])
            for index, existing in enumerate(rows):
                if existing.get(on_conflict) == key:
                    candidate = {**existing, **row}
                    self._check_unique(table, candidate, ignore=existing)
                    rows[index] = candidate
                    self._commit()
                    return dict(candidate)
            record = dict(row)
            self._check_unique(table, record)
            rows.append(record)
            self._commit()
            return dict(record)
