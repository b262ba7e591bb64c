"""In-process table store used for local mode and tests."""

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from errors import PersistenceError
from storage.base import (
    ChangeCallback,
    ChangeEvent,
    Subscription,
    TableStore,
    row_matches,
)

logger = logging.getLogger(__name__)

# Columns the hosted schema declares NOT NULL without a default
REQUIRED_COLUMNS = {
    "transfers": ("file_name", "file_size", "file_type"),
    "transfer_sessions": ("session_code",),
    "notifications": ("title", "message"),
}
UNIQUE_COLUMNS = {
    "transfer_sessions": ("session_code",),
}
# Tables whose rows carry an updated_at column maintained by a trigger
UPDATED_AT_TABLES = {"transfers", "profiles"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class MemoryStore(TableStore):
    """Mimics the hosted table store: generated ids, timestamps and constraints."""

    def __init__(self) -> None:
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._subscribers: dict[int, tuple[str, ChangeCallback, dict | None, dict | None]] = {}
        self._next_sub_id = 0
        self._lock = asyncio.Lock()

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        async with self._lock:
            rows = self._tables.setdefault(table, [])
            for col in REQUIRED_COLUMNS.get(table, ()):
                if row.get(col) is None:
                    raise PersistenceError(
                        f'null value in column "{col}" of relation "{table}"'
                    )
            for col in UNIQUE_COLUMNS.get(table, ()):
                if any(r.get(col) == row.get(col) for r in rows):
                    raise PersistenceError(
                        f'duplicate key value violates unique constraint "{table}_{col}_key"'
                    )

            stored = dict(row)
            stored.setdefault("id", str(uuid.uuid4()))
            now = _now()
            stored.setdefault("created_at", now)
            if table in UPDATED_AT_TABLES:
                stored.setdefault("updated_at", now)
            rows.append(stored)
            result = copy.deepcopy(stored)

        await self._notify(table, [result])
        return copy.deepcopy(result)

    async def update(
        self, table: str, match: dict[str, Any], changes: dict[str, Any]
    ) -> list[dict[str, Any]]:
        async with self._lock:
            updated = []
            for row in self._tables.get(table, []):
                if not row_matches(row, match):
                    continue
                row.update(changes)
                if table in UPDATED_AT_TABLES:
                    row["updated_at"] = _now()
                updated.append(copy.deepcopy(row))

        if updated:
            await self._notify(table, updated)
        return copy.deepcopy(updated)

    async def select(
        self,
        table: str,
        *,
        match: dict[str, Any] | None = None,
        any_of: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        async with self._lock:
            # Insertion position breaks ties between equal timestamps
            found = [
                (pos, row)
                for pos, row in enumerate(self._tables.get(table, []))
                if row_matches(row, match, any_of)
            ]
        if order_by:
            found.sort(key=lambda p: (p[1].get(order_by) or "", p[0]), reverse=descending)
        rows = [copy.deepcopy(row) for _, row in found]
        if limit is not None:
            rows = rows[:limit]
        return rows

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        match: dict[str, Any] | None = None,
        any_of: dict[str, Any] | None = None,
    ) -> Subscription:
        sub_id = self._next_sub_id
        self._next_sub_id += 1
        self._subscribers[sub_id] = (table, callback, match, any_of)
        return Subscription(lambda: self._subscribers.pop(sub_id, None))

    async def _notify(self, table: str, rows: list[dict[str, Any]]) -> None:
        """Deliver changes to matching subscribers, in registration order."""
        for sub_table, callback, match, any_of in list(self._subscribers.values()):
            if sub_table != table:
                continue
            for row in rows:
                if not row_matches(row, match, any_of):
                    continue
                try:
                    await callback(ChangeEvent(table=table, row=copy.deepcopy(row)))
                except Exception as e:
                    logger.error(f"Change callback error on {table}: {e}")
