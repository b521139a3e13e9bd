"""Tag repository: operator labels attached to listings."""

from __future__ import annotations

from collections.abc import Callable, Coroutine
from contextlib import AbstractAsyncContextManager
from typing import Any

import aiosqlite

from listing_sync.db.row_mappers import now_iso, row_to_property, row_to_tag
from listing_sync.errors import ConflictError, NotFoundError
from listing_sync.logging import get_logger
from listing_sync.models import DEFAULT_TAG_COLOR, Property, Tag

logger = get_logger(__name__)


class TagRepository:
    """Create tags and link them to properties.

    Tags can be referenced by integer id or by name everywhere.
    """

    def __init__(
        self,
        get_connection: Callable[[], Coroutine[Any, Any, aiosqlite.Connection]],
        transaction: Callable[[], AbstractAsyncContextManager[aiosqlite.Connection]],
        require_property: Callable[[int], Coroutine[Any, Any, Property]],
    ) -> None:
        self._get_connection = get_connection
        self._transaction = transaction
        self._require_property = require_property

    async def create_tag(
        self,
        name: str,
        *,
        color: str = DEFAULT_TAG_COLOR,
        description: str | None = None,
    ) -> Tag:
        """Create a new tag.

        Raises:
            ConflictError: A tag with this name already exists.
        """
        name = name.strip()
        if not name:
            raise ValueError("Tag name must not be empty")
        async with self._transaction() as conn:
            cursor = await conn.execute("SELECT 1 FROM tags WHERE name = ?", (name,))
            if await cursor.fetchone() is not None:
                raise ConflictError(f"A tag named {name!r} already exists")
            cursor = await conn.execute(
                "INSERT INTO tags (name, color, description, created_at) VALUES (?, ?, ?, ?)",
                (name, color, description, now_iso()),
            )
            tag_id = cursor.lastrowid
        logger.info("tag_created", tag_id=tag_id, name=name)
        return await self.get_tag(tag_id)  # type: ignore[arg-type]

    async def get_tag(self, tag: int | str) -> Tag:
        """Look up a tag by id or name.

        Raises:
            NotFoundError: No such tag.
        """
        conn = await self._get_connection()
        if isinstance(tag, int):
            cursor = await conn.execute("SELECT * FROM tags WHERE id = ?", (tag,))
        else:
            cursor = await conn.execute("SELECT * FROM tags WHERE name = ?", (tag,))
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"No tag {tag!r}")
        return row_to_tag(row)

    async def list_tags(self) -> list[Tag]:
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM tags ORDER BY name")
        rows = await cursor.fetchall()
        return [row_to_tag(row) for row in rows]

    async def add_tag(self, ref: int, tag: int | str) -> bool:
        """Attach a tag to a property.

        Returns:
            False if the property already had the tag.
        """
        prop = await self._require_property(ref)
        resolved = await self.get_tag(tag)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO property_tags (property_id, tag_id, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(property_id, tag_id) DO NOTHING
                """,
                (prop.id, resolved.id, now_iso()),
            )
            added = cursor.rowcount > 0
        logger.info("tag_added", ref=ref, tag=resolved.name, added=added)
        return added

    async def remove_tag(self, ref: int, tag: int | str) -> bool:
        """Detach a tag from a property.

        Returns:
            False if the property did not have the tag.
        """
        prop = await self._require_property(ref)
        resolved = await self.get_tag(tag)
        async with self._transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM property_tags WHERE property_id = ? AND tag_id = ?",
                (prop.id, resolved.id),
            )
            removed = cursor.rowcount > 0
        logger.info("tag_removed", ref=ref, tag=resolved.name, removed=removed)
        return removed

    async def list_property_tags(self, ref: int) -> list[Tag]:
        prop = await self._require_property(ref)
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT t.* FROM tags t
            JOIN property_tags pt ON pt.tag_id = t.id
            WHERE pt.property_id = ?
            ORDER BY t.name
            """,
            (prop.id,),
        )
        rows = await cursor.fetchall()
        return [row_to_tag(row) for row in rows]

    async def list_properties_with_tag(self, tag: int | str) -> list[Property]:
        resolved = await self.get_tag(tag)
        conn = await self._get_connection()
        cursor = await conn.execute(
            """
            SELECT p.* FROM properties p
            JOIN property_tags pt ON pt.property_id = p.id
            WHERE pt.tag_id = ?
            ORDER BY p.ref
            """,
            (resolved.id,),
        )
        rows = await cursor.fetchall()
        return [row_to_property(row) for row in rows]
