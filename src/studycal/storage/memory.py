"""Dict-backed store for tests and single-process deployments without a database."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Mapping
from typing import Any

from studycal.errors import StoreConflictError
from studycal.storage.base import CalendarStore


class InMemoryCalendarStore(CalendarStore):
    def __init__(self) -> None:
        self._rows: dict[tuple[str, str], tuple[dict[str, Any], int]] = {}
        self._lock = asyncio.Lock()

    async def _fetch(self, kind: str, key: str) -> tuple[dict[str, Any], int] | None:
        row = self._rows.get((kind, key))
        if row is None:
            return None
        value, version = row
        return copy.deepcopy(value), version

    async def _upsert(self, kind: str, key: str, value: dict[str, Any]) -> int:
        async with self._lock:
            current = self._rows.get((kind, key))
            version = 1 if current is None else current[1] + 1
            self._rows[(kind, key)] = (copy.deepcopy(value), version)
            return version

    async def _compare_and_set(
        self,
        kind: str,
        key: str,
        expected_version: int,
        value: dict[str, Any],
    ) -> int:
        async with self._lock:
            current = self._rows.get((kind, key))
            actual = None if current is None else current[1]
            if (actual or 0) != expected_version:
                raise StoreConflictError(
                    key=f"{kind}:{key}",
                    expected_version=expected_version,
                    actual_version=actual,
                )
            version = expected_version + 1
            self._rows[(kind, key)] = (copy.deepcopy(value), version)
            return version

    async def _remove(self, kind: str, key: str) -> None:
        async with self._lock:
            self._rows.pop((kind, key), None)

    async def _select(
        self, kind: str, filters: Mapping[str, str] | None = None
    ) -> list[tuple[dict[str, Any], int]]:
        wanted = dict(filters or {})
        return [
            (copy.deepcopy(value), version)
            for (row_kind, _key), (value, version) in list(self._rows.items())
            if row_kind == kind and all(value.get(k) == v for k, v in wanted.items())
        ]
