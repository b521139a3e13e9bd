"""SQLite storage for listings, state overrides and change history."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Self

import aiosqlite

from listing_sync.db.history import ChangeHistoryWriter
from listing_sync.db.overrides import OverrideRepository
from listing_sync.db.row_mappers import now_iso, row_to_property
from listing_sync.db.sync_runs import SyncRunRepository
from listing_sync.db.tags import TagRepository
from listing_sync.db.triggers import (
    drop_state_triggers,
    install_integrity_triggers,
    install_state_triggers,
)
from listing_sync.errors import (
    ConflictError,
    ListingSyncError,
    NotFoundError,
    PersistenceError,
)
from listing_sync.logging import get_logger
from listing_sync.models import (
    ChangeHistoryEntry,
    Listing,
    Property,
    StateFlags,
    StateOverride,
    override_key,
)

if TYPE_CHECKING:
    from listing_sync.config import Settings

logger = get_logger(__name__)


def translate_error(error: aiosqlite.Error) -> ListingSyncError:
    """Map a datastore error onto the package's error kinds."""
    message = str(error).lower()
    if isinstance(error, aiosqlite.OperationalError) and (
        "locked" in message or "busy" in message
    ):
        return ConflictError(f"Database is busy, retry later: {error}")
    return PersistenceError(str(error))


class PropertyStore:
    """SQLite-backed datastore handle.

    Owns a single connection, opened lazily and released by close() or by
    leaving an ``async with`` block. All writes that must be atomic go through
    transaction().
    """

    def __init__(
        self,
        db_path: str,
        *,
        busy_timeout_ms: int = 5000,
        state_triggers: bool = True,
    ) -> None:
        """Initialize storage with database path.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory.
            busy_timeout_ms: How long to wait for another writer's lock.
            state_triggers: Install the active-state mirror triggers on initialize().
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.state_triggers = state_triggers
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._ensure_directory()
        self.history = ChangeHistoryWriter(self._get_connection)
        self.overrides = OverrideRepository(self._get_connection)
        self.tags = TagRepository(self._get_connection, self.transaction, self.require_property)
        self.sync_runs = SyncRunRepository(self._get_connection, self.transaction)

    @classmethod
    def from_settings(cls, settings: Settings) -> PropertyStore:
        return cls(
            settings.database_path,
            busy_timeout_ms=settings.busy_timeout_ms,
            state_triggers=settings.install_state_triggers,
        )

    def _ensure_directory(self) -> None:
        """Ensure the directory for the database exists."""
        if self.db_path != ":memory:":
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            # Autocommit mode: transaction() issues BEGIN IMMEDIATE itself
            self._conn = await aiosqlite.connect(self.db_path, isolation_level=None)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Self:
        await self.initialize()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def initialize(self) -> None:
        """Initialize the database schema."""
        conn = await self._get_connection()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS properties (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ref INTEGER NOT NULL UNIQUE,
                sync_code TEXT,
                title TEXT,
                description TEXT,
                city TEXT,
                property_type TEXT,
                sale_price REAL,
                rent_price REAL,
                active BOOLEAN NOT NULL DEFAULT 1,
                featured BOOLEAN NOT NULL DEFAULT 0,
                hot BOOLEAN NOT NULL DEFAULT 0,
                data_hash TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                synced_at TEXT
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_properties_active
            ON properties(active)
        """)

        # Sparse: only properties whose flags deviate from (1, 0, 0)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS property_state_overrides (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                property_ref INTEGER NOT NULL,
                sync_code TEXT NOT NULL DEFAULT '',
                active BOOLEAN NOT NULL DEFAULT 1,
                featured BOOLEAN NOT NULL DEFAULT 0,
                hot BOOLEAN NOT NULL DEFAULT 0,
                modified_at TEXT NOT NULL,
                UNIQUE(property_ref, sync_code)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS change_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                property_id INTEGER NOT NULL,
                field TEXT NOT NULL,
                old_value TEXT,
                new_value TEXT,
                changed_at TEXT NOT NULL,
                FOREIGN KEY (property_id) REFERENCES properties(id)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_change_history_property
            ON change_history(property_id)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                color TEXT NOT NULL DEFAULT '#3498db',
                description TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        """)
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS property_tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                property_id INTEGER NOT NULL,
                tag_id INTEGER NOT NULL,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (property_id) REFERENCES properties(id),
                FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE,
                UNIQUE(property_id, tag_id)
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS sync_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                kind TEXT NOT NULL DEFAULT 'manual',
                status TEXT NOT NULL DEFAULT 'running',
                started_at TEXT NOT NULL,
                finished_at TEXT,
                listing_count INTEGER NOT NULL DEFAULT 0,
                new_count INTEGER NOT NULL DEFAULT 0,
                updated_count INTEGER NOT NULL DEFAULT 0,
                unchanged_count INTEGER NOT NULL DEFAULT 0,
                failed_count INTEGER NOT NULL DEFAULT 0,
                deactivated_count INTEGER NOT NULL DEFAULT 0,
                error TEXT
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_sync_runs_status
            ON sync_runs(status, started_at)
        """)

        # Holds a row only inside transaction(); never committed
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS state_write_guard (
                id INTEGER PRIMARY KEY CHECK (id = 1)
            )
        """)

        await install_integrity_triggers(conn)
        # Never drops existing triggers; that is drop_state_triggers()
        if self.state_triggers:
            await install_state_triggers(conn)

        logger.info(
            "database_initialized", db_path=self.db_path, state_triggers=self.state_triggers
        )

    async def install_state_triggers(self) -> None:
        """(Re)install the active-state mirror triggers on an existing database."""
        conn = await self._get_connection()
        await install_state_triggers(conn)
        self.state_triggers = True
        logger.info("state_triggers_installed", db_path=self.db_path)

    async def drop_state_triggers(self) -> None:
        """Remove the active-state mirror triggers for every client of this database."""
        conn = await self._get_connection()
        await drop_state_triggers(conn)
        self.state_triggers = False
        logger.warning("state_triggers_dropped", db_path=self.db_path)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block as one atomic write transaction.

        BEGIN IMMEDIATE takes the database write lock up front, so concurrent
        writers (other processes, or other coroutines sharing this store)
        serialize and every read inside the block sees a consistent state.
        Any exception rolls the whole block back; datastore errors surface as
        ConflictError (lock timeout) or PersistenceError.
        """
        conn = await self._get_connection()
        async with self._write_lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                raise translate_error(e) from e
            try:
                await conn.execute("INSERT INTO state_write_guard (id) VALUES (1)")
                yield conn
                await conn.execute("DELETE FROM state_write_guard")
                await conn.commit()
            except BaseException as e:
                try:
                    await conn.rollback()
                except aiosqlite.Error as rollback_error:
                    # Keep raising the error from the block
                    logger.error("transaction_rollback_failed", error=str(rollback_error))
                if isinstance(e, aiosqlite.Error):
                    raise translate_error(e) from e
                raise

    # ------------------------------------------------------------------
    # Property reads
    # ------------------------------------------------------------------

    async def get_property(self, ref: int) -> Property | None:
        """Get a property by its external reference.

        Args:
            ref: External reference number.

        Returns:
            Property if found, None otherwise.
        """
        conn = await self._get_connection()
        return await self.fetch_property(conn, ref)

    async def require_property(self, ref: int) -> Property:
        """Like get_property, but raises NotFoundError for unknown refs."""
        prop = await self.get_property(ref)
        if prop is None:
            raise NotFoundError(f"No property with ref {ref}")
        return prop

    async def fetch_property(self, conn: aiosqlite.Connection, ref: int) -> Property | None:
        """Load a property through a specific connection (e.g. inside a transaction)."""
        cursor = await conn.execute("SELECT * FROM properties WHERE ref = ?", (ref,))
        row = await cursor.fetchone()
        if row is None:
            return None
        return row_to_property(row)

    async def list_properties(self) -> list[Property]:
        """All properties ordered by ref."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT * FROM properties ORDER BY ref")
        rows = await cursor.fetchall()
        return [row_to_property(row) for row in rows]

    async def list_active_refs(self) -> list[int]:
        """Refs of every property currently marked active."""
        conn = await self._get_connection()
        cursor = await conn.execute("SELECT ref FROM properties WHERE active = 1 ORDER BY ref")
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def get_history(self, ref: int) -> list[ChangeHistoryEntry]:
        """Change history for a property, oldest first."""
        prop = await self.require_property(ref)
        return await self.history.list_for_property(prop.id)

    async def get_override(self, ref: int, sync_code: str | None = None) -> StateOverride | None:
        """The override row for (ref, sync_code); sync_code None means the empty key."""
        return await self.overrides.get(ref, override_key(sync_code))

    async def list_overrides(self) -> list[StateOverride]:
        return await self.overrides.list_all()

    # ------------------------------------------------------------------
    # Property writes (call inside transaction())
    # ------------------------------------------------------------------

    async def update_flags(
        self,
        conn: aiosqlite.Connection,
        prop: Property,
        new: StateFlags,
        *,
        updated_at: str,
    ) -> None:
        """Write a new flag tuple, provided the row still holds the tuple we read.

        Raises:
            ConflictError: The row changed since it was loaded.
        """
        current = prop.flags
        cursor = await conn.execute(
            """
            UPDATE properties
            SET active = ?, featured = ?, hot = ?, updated_at = ?
            WHERE id = ? AND active = ? AND featured = ? AND hot = ?
            """,
            (
                new.active,
                new.featured,
                new.hot,
                updated_at,
                prop.id,
                current.active,
                current.featured,
                current.hot,
            ),
        )
        if cursor.rowcount == 0:
            raise ConflictError(f"Property {prop.ref} was modified concurrently")

    async def insert_property(
        self,
        conn: aiosqlite.Connection,
        listing: Listing,
        flags: StateFlags,
        *,
        now: str,
    ) -> int:
        """Insert a new listing row.

        Returns:
            The internal id of the new property.
        """
        cursor = await conn.execute(
            """
            INSERT INTO properties (
                ref, sync_code, title, description, city, property_type,
                sale_price, rent_price, active, featured, hot, data_hash,
                created_at, updated_at, synced_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                listing.ref,
                listing.sync_code,
                listing.title,
                listing.description,
                listing.city,
                listing.property_type,
                listing.sale_price,
                listing.rent_price,
                flags.active,
                flags.featured,
                flags.hot,
                listing.data_hash,
                now,
                now,
                now,
            ),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    async def update_payload(
        self,
        conn: aiosqlite.Connection,
        property_id: int,
        listing: Listing,
        *,
        now: str,
    ) -> None:
        """Overwrite the feed-owned columns of an existing row. Flags are left alone."""
        await conn.execute(
            """
            UPDATE properties
            SET sync_code = ?, title = ?, description = ?, city = ?, property_type = ?,
                sale_price = ?, rent_price = ?, data_hash = ?, updated_at = ?, synced_at = ?
            WHERE id = ?
            """,
            (
                listing.sync_code,
                listing.title,
                listing.description,
                listing.city,
                listing.property_type,
                listing.sale_price,
                listing.rent_price,
                listing.data_hash,
                now,
                now,
                property_id,
            ),
        )

    async def touch_synced(self, conn: aiosqlite.Connection, property_id: int) -> None:
        """Record that the feed still lists this property unchanged."""
        await conn.execute(
            "UPDATE properties SET synced_at = ? WHERE id = ?",
            (now_iso(), property_id),
        )
