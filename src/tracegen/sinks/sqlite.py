"""SQLite-backed result sink (aiosqlite, WAL mode)."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import aiosqlite
import structlog

from tracegen.errors import TracegenError
from tracegen.models.config import SinkConfig
from tracegen.models.work import GenerationResult, GenerationStatus

_SCHEMA = """
CREATE TABLE IF NOT EXISTS results (
    id          TEXT PRIMARY KEY,
    status      TEXT NOT NULL,
    error_kind  TEXT,
    payload     TEXT NOT NULL,
    created_at  INTEGER NOT NULL,
    updated_at  INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_results_status ON results(status);
"""


class SinkNotInitializedError(TracegenError):
    """Raised when the sink is used before ``initialize()``."""


class SQLiteResultSink:
    """
    Stores one row per result id. Re-writing an id replaces its payload and
    keeps the original ``created_at``.

    Usage::

        sink = SQLiteResultSink(SinkConfig(db_path="./results.db"))
        await sink.initialize()
        try:
            await sink.append(result)
        finally:
            await sink.close()
    """

    def __init__(self, config: SinkConfig | None = None) -> None:
        self._config = config or SinkConfig()
        self._db_path = str(Path(self._config.db_path).expanduser())
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._logger = structlog.get_logger("tracegen.sinks.sqlite")

    async def initialize(self) -> None:
        """
        Open the database and apply the schema. Idempotent.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        if self._conn is not None:
            return
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(self._db_path, timeout=self._config.connection_timeout)
        try:
            conn.row_factory = aiosqlite.Row
            if self._config.wal_mode:
                await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.executescript(_SCHEMA)
            await conn.commit()
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        self._logger.info("sink_initialized", db_path=self._db_path)

    async def close(self) -> None:
        if self._conn is None:
            return
        await self._conn.close()
        self._conn = None

    async def __aenter__(self) -> SQLiteResultSink:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise SinkNotInitializedError("Sink is not initialized. Call initialize() first.")
        return self._conn

    # ── Writes ─────────────────────────────────────────────────────────────────

    async def append(self, result: GenerationResult) -> None:
        await self._upsert(result.id, result)

    async def update_by_id(self, result_id: str, result: GenerationResult) -> None:
        await self._upsert(result_id, result)

    async def _upsert(self, result_id: str, result: GenerationResult) -> None:
        conn = self._conn_or_raise()
        if result.id != result_id:
            result = result.model_copy(update={"id": result_id})
        now = int(time.time() * 1000)
        async with self._write_lock:
            await conn.execute(
                """
                INSERT INTO results (id, status, error_kind, payload, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    error_kind = excluded.error_kind,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (
                    result_id,
                    result.status.value,
                    result.error_kind.value if result.error_kind else None,
                    result.model_dump_json(),
                    result.created_at,
                    now,
                ),
            )
            await conn.commit()
        self._logger.debug("result_stored", item_id=result_id, status=result.status.value)

    # ── Reads ──────────────────────────────────────────────────────────────────

    async def get(self, result_id: str) -> GenerationResult | None:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT payload FROM results WHERE id = ?", (result_id,)) as cursor:
            row = await cursor.fetchone()
        return GenerationResult.model_validate_json(row["payload"]) if row else None

    async def all(self) -> list[GenerationResult]:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT payload FROM results ORDER BY created_at, id") as cursor:
            rows = await cursor.fetchall()
        return [GenerationResult.model_validate_json(r["payload"]) for r in rows]

    async def failed(self) -> list[GenerationResult]:
        """Results with status ``error`` or ``timeout``."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT payload FROM results WHERE status IN (?, ?) ORDER BY created_at, id",
            (GenerationStatus.ERROR.value, GenerationStatus.TIMEOUT.value),
        ) as cursor:
            rows = await cursor.fetchall()
        return [GenerationResult.model_validate_json(r["payload"]) for r in rows]

    async def count(self) -> int:
        conn = self._conn_or_raise()
        async with conn.execute("SELECT COUNT(*) FROM results") as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0
