"""Async SQLite access for import records and imported content.

Several containers of one run write concurrently through the same
connection; the UNIQUE idempotency keys in the schema are what make those
writes safe, not the ordering of statements.
"""

from typing import Any

import aiosqlite

from workbridge.db.schema import SCHEMA_SQL


class Database:
    """aiosqlite connection with WAL, enforced foreign keys and auto-schema."""

    def __init__(self, connection: aiosqlite.Connection) -> None:
        self._conn = connection

    @classmethod
    async def connect(
        cls, path: str = "workbridge.db", *, busy_timeout_ms: int = 5000
    ) -> "Database":
        conn = await aiosqlite.connect(path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        db = cls(conn)
        await db._ensure_schema()
        return db

    async def _ensure_schema(self) -> None:
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()

    async def execute(self, sql: str, params: tuple = ()) -> None:
        """Run one write statement and commit it."""
        await self._conn.execute(sql, params)
        await self._conn.commit()

    async def update(self, sql: str, params: tuple = ()) -> int:
        """Run a guarded UPDATE, commit, and return how many rows it touched.

        Status transitions use the count to tell whether their WHERE guard held.
        """
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor.rowcount

    async def fetchone(self, sql: str, params: tuple = ()) -> aiosqlite.Row | None:
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params)
        return list(await cursor.fetchall())

    async def fetchval(self, sql: str, params: tuple = ()) -> Any:
        """First column of the first row, or None when there is no row."""
        row = await self.fetchone(sql, params)
        return row[0] if row is not None else None

    async def close(self) -> None:
        await self._conn.close()
