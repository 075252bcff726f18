"""PostgreSQL store: one JSONB table keyed by (kind, key) with a version column.

Compare-and-set is a conditional ``UPDATE ... WHERE version = $n``, so
concurrent writers across processes cannot silently overwrite each other.
Provider event ids are kept unique per (account, calendar) by a partial
unique index.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any

import asyncpg

from studycal.errors import StoreConflictError
from studycal.storage.base import FILTERABLE_FIELDS, KIND_EVENT, CalendarStore

logger = logging.getLogger(__name__)

TABLE_NAME = "studycal_records"

SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    kind TEXT NOT NULL,
    key TEXT NOT NULL,
    value JSONB NOT NULL,
    version BIGINT NOT NULL DEFAULT 1,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (kind, key)
);
CREATE INDEX IF NOT EXISTS ix_{TABLE_NAME}_account
    ON {TABLE_NAME} (kind, (value->>'account_id'));
CREATE UNIQUE INDEX IF NOT EXISTS ux_{TABLE_NAME}_provider_event
    ON {TABLE_NAME} ((value->>'account_id'), (value->>'calendar_id'),
                     (value->>'provider_event_id'))
    WHERE kind = '{KIND_EVENT}' AND value->>'provider_event_id' IS NOT NULL;
"""


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB value, handling potential double-encoding.

    asyncpg returns JSONB columns as strings when no codec is registered.
    """
    if not isinstance(val, str):
        return val
    val = json.loads(val)
    if isinstance(val, str):
        logger.warning("Double-encoded JSONB detected; applying second decode pass")
        try:
            val = json.loads(val)
        except (json.JSONDecodeError, ValueError):
            pass
    return val


class PostgresCalendarStore(CalendarStore):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(
        cls, dsn: str, *, min_size: int = 1, max_size: int = 5
    ) -> PostgresCalendarStore:
        pool = await asyncpg.create_pool(dsn, min_size=min_size, max_size=max_size)
        store = cls(pool)
        await store.ensure_schema()
        return store

    async def ensure_schema(self) -> None:
        await self._pool.execute(SCHEMA_SQL)

    async def close(self) -> None:
        await self._pool.close()

    async def _fetch(self, kind: str, key: str) -> tuple[dict[str, Any], int] | None:
        row = await self._pool.fetchrow(
            f"SELECT value, version FROM {TABLE_NAME} WHERE kind = $1 AND key = $2",
            kind,
            key,
        )
        if row is None:
            return None
        return decode_jsonb(row["value"]), row["version"]

    async def _upsert(self, kind: str, key: str, value: dict[str, Any]) -> int:
        try:
            version: int = await self._pool.fetchval(
                f"""
                INSERT INTO {TABLE_NAME} (kind, key, value, version, updated_at)
                VALUES ($1, $2, $3::jsonb, 1, now())
                ON CONFLICT (kind, key) DO UPDATE
                    SET value = EXCLUDED.value,
                        updated_at = now(),
                        version = {TABLE_NAME}.version + 1
                RETURNING version
                """,
                kind,
                key,
                json.dumps(value),
            )
        except asyncpg.UniqueViolationError as exc:
            raise StoreConflictError(
                key=f"{kind}:{key}",
                expected_version=None,
                actual_version=None,
                message=f"unique constraint violated writing {kind}:{key}",
            ) from exc
        return version

    async def _compare_and_set(
        self,
        kind: str,
        key: str,
        expected_version: int,
        value: dict[str, Any],
    ) -> int:
        json_value = json.dumps(value)
        try:
            if expected_version == 0:
                row = await self._pool.fetchrow(
                    f"""
                    INSERT INTO {TABLE_NAME} (kind, key, value, version, updated_at)
                    VALUES ($1, $2, $3::jsonb, 1, now())
                    ON CONFLICT (kind, key) DO NOTHING
                    RETURNING version
                    """,
                    kind,
                    key,
                    json_value,
                )
            else:
                row = await self._pool.fetchrow(
                    f"""
                    UPDATE {TABLE_NAME}
                    SET value = $4::jsonb,
                        updated_at = now(),
                        version = version + 1
                    WHERE kind = $1 AND key = $2 AND version = $3
                    RETURNING version
                    """,
                    kind,
                    key,
                    expected_version,
                    json_value,
                )
        except asyncpg.UniqueViolationError as exc:
            raise StoreConflictError(
                key=f"{kind}:{key}",
                expected_version=expected_version,
                actual_version=None,
                message=f"unique constraint violated writing {kind}:{key}",
            ) from exc
        if row is not None:
            return row["version"]

        actual = await self._pool.fetchval(
            f"SELECT version FROM {TABLE_NAME} WHERE kind = $1 AND key = $2",
            kind,
            key,
        )
        raise StoreConflictError(
            key=f"{kind}:{key}",
            expected_version=expected_version,
            actual_version=actual,
        )

    async def _remove(self, kind: str, key: str) -> None:
        await self._pool.execute(
            f"DELETE FROM {TABLE_NAME} WHERE kind = $1 AND key = $2",
            kind,
            key,
        )

    async def _select(
        self, kind: str, filters: Mapping[str, str] | None = None
    ) -> list[tuple[dict[str, Any], int]]:
        clauses = ["kind = $1"]
        args: list[Any] = [kind]
        for field_name, expected in sorted((filters or {}).items()):
            if field_name not in FILTERABLE_FIELDS:
                raise ValueError(f"unsupported filter field: {field_name!r}")
            args.append(expected)
            clauses.append(f"value->>'{field_name}' = ${len(args)}")
        rows = await self._pool.fetch(
            f"SELECT value, version FROM {TABLE_NAME} WHERE {' AND '.join(clauses)} ORDER BY key",
            *args,
        )
        return [(decode_jsonb(row["value"]), row["version"]) for row in rows]
