"""Append-only change history writer."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from typing import Any

import aiosqlite

from listing_sync.db.row_mappers import now_iso, row_to_history_entry
from listing_sync.logging import get_logger
from listing_sync.models import ChangeHistoryEntry, StateFlags, flag_to_text

logger = get_logger(__name__)


class ChangeHistoryWriter:
    """Writes and reads change_history rows.

    Writes always go through a connection that already holds an open
    transaction, so a failed insert rolls back with the change it describes.
    """

    def __init__(
        self, get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]]
    ) -> None:
        self._get_connection = get_connection

    async def record(
        self,
        conn: aiosqlite.Connection,
        property_id: int,
        field: str,
        old_value: str | None,
        new_value: str | None,
        *,
        changed_at: str | None = None,
    ) -> None:
        """Append one history entry."""
        await conn.execute(
            """
            INSERT INTO change_history (property_id, field, old_value, new_value, changed_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (property_id, field, old_value, new_value, changed_at or now_iso()),
        )

    async def record_flag_transitions(
        self,
        conn: aiosqlite.Connection,
        property_id: int,
        old: StateFlags,
        new: StateFlags,
        *,
        changed_at: str,
    ) -> int:
        """Append one entry per changed flag, in canonical order.

        Returns:
            Number of entries written.
        """
        count = 0
        for field, old_value, new_value in old.transitions_to(new):
            await self.record(
                conn,
                property_id,
                field,
                flag_to_text(old_value),
                flag_to_text(new_value),
                changed_at=changed_at,
            )
            count += 1
        return count

    async def list_for_property(self, property_id: int) -> list[ChangeHistoryEntry]:
        """All history entries for a property, oldest first."""
        conn = await self._get_connection()
        cursor = await conn.execute(
            "SELECT * FROM change_history WHERE property_id = ? ORDER BY id ASC",
            (property_id,),
        )
        rows = await cursor.fetchall()
        return [row_to_history_entry(row) for row in rows]
