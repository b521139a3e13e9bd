"""Accessor for the sparse property_state_overrides table."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

import aiosqlite

from listing_sync.db.row_mappers import row_to_override
from listing_sync.models import StateFlags, StateOverride


class OverrideRepository:
    """Reads and writes override rows keyed by (property_ref, sync_code)."""

    def __init__(
        self, get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]]
    ) -> None:
        self._get_connection = get_connection

    async def get(self, ref: int, sync_code: str) -> StateOverride | None:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM property_state_overrides WHERE property_ref = ? AND sync_code = ?",
            (ref, sync_code),
        )
        row = await cursor.fetchone()
        return row_to_override(row) if row is not None else None

    async def list_for_ref(self, ref: int) -> list[StateOverride]:
        """Overrides for a ref under any sync code (more than one only after drift)."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM property_state_overrides WHERE property_ref = ? ORDER BY sync_code",
            (ref,),
        )
        rows = await cursor.fetchall()
        return [row_to_override(row) for row in rows]

    async def list_all(self) -> list[StateOverride]:
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM property_state_overrides ORDER BY property_ref, sync_code"
        )
        rows = await cursor.fetchall()
        return [row_to_override(row) for row in rows]

    async def upsert(
        self,
        conn: aiosqlite.Connection,
        ref: int,
        sync_code: str,
        flags: StateFlags,
        *,
        modified_at: str,
    ) -> None:
        """Insert or replace the override row for (ref, sync_code)."""
        await conn.execute(
            """
            INSERT INTO property_state_overrides
                (property_ref, sync_code, active, featured, hot, modified_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(property_ref, sync_code) DO UPDATE SET
                active = excluded.active,
                featured = excluded.featured,
                hot = excluded.hot,
                modified_at = excluded.modified_at
            """,
            (ref, sync_code, flags.active, flags.featured, flags.hot, modified_at),
        )

    async def delete(self, conn: aiosqlite.Connection, ref: int, sync_code: str) -> int:
        """Delete the override for (ref, sync_code). Returns rows removed (0 is fine)."""
        cursor = await conn.execute(
            "DELETE FROM property_state_overrides WHERE property_ref = ? AND sync_code = ?",
            (ref, sync_code),
        )
        return cursor.rowcount

    async def delete_all_for_ref(self, conn: aiosqlite.Connection, ref: int) -> int:
        """Delete every override for a ref regardless of sync code."""
        cursor = await conn.execute(
            "DELETE FROM property_state_overrides WHERE property_ref = ?",
            (ref,),
        )
        return cursor.rowcount
