"""Keyed record store with atomic, compare-on-read updates.

Records are plain dicts grouped in named collections. ``where`` filters are
equality matches evaluated under the store lock, so ``update_many`` doubles
as a compare-and-set: a record only changes if it still matches.

When backed by a file, every operation holds an exclusive ``flock`` on a
sibling ``.lock`` file and re-reads the JSON document, so the HTTP server and
the STDIO MCP server can share one state file.
"""

import asyncio
import copy
import fcntl
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .simple_models import utcnow

COLLECTIONS = ("instances", "tasks")

Data = dict[str, list[dict[str, Any]]]


def _matches(record: dict[str, Any], where: dict[str, Any]) -> bool:
    return all(record.get(key) == value for key, value in where.items())


class RecordStore:
    """JSON-file backed record store (in-memory when ``path`` is None)."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self.lock_path = self.path.with_suffix(self.path.suffix + ".lock") if self.path else None
        self._lock = asyncio.Lock()
        self._data: Data | None = None

    def _read(self) -> Data:
        data: Data = {name: [] for name in COLLECTIONS}
        if self.path is None or not self.path.exists():
            return data
        raw = self.path.read_text(encoding="utf-8").strip()
        if raw:
            loaded = json.loads(raw)
            for name in COLLECTIONS:
                data[name] = list(loaded.get(name, []))
        return data

    def _write(self, data: Data) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(json.dumps(data, indent=2))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, self.path)

    def _locked_apply(self, operation: Callable[[Data], tuple[Any, bool]]) -> Any:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                data = self._read()
                result, changed = operation(data)
                if changed:
                    self._write(data)
                return result
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    async def _apply(self, operation: Callable[[Data], tuple[Any, bool]]) -> Any:
        """Run ``operation`` against the current data and persist it if it changed.

        ``operation`` returns ``(result, changed)``.
        """
        async with self._lock:
            if self.path is None:
                if self._data is None:
                    self._data = self._read()
                result, _ = operation(self._data)
                return result
            return await asyncio.to_thread(self._locked_apply, operation)

    def _collection(self, data: Data, collection: str) -> list[dict[str, Any]]:
        if collection not in data:
            raise KeyError(f"Unknown collection: {collection}")
        return data[collection]

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        def operation(data: Data):
            rows = self._collection(data, collection)
            if any(row.get("id") == record.get("id") for row in rows):
                raise ValueError(f"Duplicate id in {collection}: {record.get('id')}")
            rows.append(copy.deepcopy(record))
            return copy.deepcopy(record), True

        return await self._apply(operation)

    async def find_many(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Return matching records, optionally sorted.

        Sorting is stable, so records with equal sort keys keep insertion order.
        """

        def operation(data: Data):
            rows = [row for row in self._collection(data, collection) if _matches(row, where or {})]
            return copy.deepcopy(rows), False

        rows = await self._apply(operation)
        if order_by:
            rows = sorted(rows, key=lambda row: row.get(order_by) or "", reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def find_first(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
    ) -> dict[str, Any] | None:
        rows = await self.find_many(collection, where, order_by, descending, limit=1)
        return rows[0] if rows else None

    async def update_many(
        self, collection: str, where: dict[str, Any], changes: dict[str, Any]
    ) -> int:
        """Apply ``changes`` to every record matching ``where``.

        Returns:
            Number of records updated
        """

        def operation(data: Data):
            count = 0
            stamp = utcnow()
            for row in self._collection(data, collection):
                if _matches(row, where):
                    row.update(copy.deepcopy(changes))
                    row["updated_at"] = stamp
                    count += 1
            return count, count > 0

        return await self._apply(operation)

    async def delete_many(self, collection: str, where: dict[str, Any]) -> int:
        def operation(data: Data):
            rows = self._collection(data, collection)
            kept = [row for row in rows if not _matches(row, where)]
            count = len(rows) - len(kept)
            if count:
                data[collection] = kept
            return count, count > 0

        return await self._apply(operation)
