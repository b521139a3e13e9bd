"""Database triggers that keep overrides and history in step with direct writes.

The application path records its own transitions inside PropertyStore.transaction(),
which holds a row in state_write_guard for the duration of the transaction. The
active-state triggers only fire when that guard row is absent, i.e. when
properties.active was changed by something other than this package (a manual
UPDATE, a bulk fix script, another tool). They mirror the active column only;
featured and hot are tracked by the application path alone.
"""

from __future__ import annotations

from typing import Final

import aiosqlite

from listing_sync.logging import get_logger

logger = get_logger(__name__)

# ISO-8601 UTC, same shape as datetime.now(UTC).isoformat() (millisecond precision)
_SQL_NOW: Final = "strftime('%Y-%m-%dT%H:%M:%f', 'now') || '+00:00'"

STATE_TRIGGER_NAMES: Final = ("properties_active_on", "properties_active_off")

_ACTIVATE_TRIGGER: Final = f"""
    CREATE TRIGGER properties_active_on
    AFTER UPDATE OF active ON properties
    FOR EACH ROW
    WHEN OLD.active = 0 AND NEW.active <> 0
        AND NOT EXISTS (SELECT 1 FROM state_write_guard)
    BEGIN
        DELETE FROM property_state_overrides WHERE property_ref = NEW.ref;

        INSERT INTO change_history (property_id, field, old_value, new_value, changed_at)
        VALUES (NEW.id, 'active', '0', '1', {_SQL_NOW});
    END
"""

_DEACTIVATE_TRIGGER: Final = f"""
    CREATE TRIGGER properties_active_off
    AFTER UPDATE OF active ON properties
    FOR EACH ROW
    WHEN OLD.active <> 0 AND NEW.active = 0
        AND NOT EXISTS (SELECT 1 FROM state_write_guard)
    BEGIN
        INSERT INTO property_state_overrides
            (property_ref, sync_code, active, featured, hot, modified_at)
        VALUES (NEW.ref, COALESCE(NEW.sync_code, ''), 0, NEW.featured, NEW.hot, {_SQL_NOW})
        ON CONFLICT(property_ref, sync_code) DO UPDATE SET
            active = 0,
            featured = excluded.featured,
            hot = excluded.hot,
            modified_at = excluded.modified_at;

        INSERT INTO change_history (property_id, field, old_value, new_value, changed_at)
        VALUES (NEW.id, 'active', '1', '0', {_SQL_NOW});
    END
"""

# Schema guards, always installed
_INTEGRITY_TRIGGERS: Final = (
    """
    CREATE TRIGGER IF NOT EXISTS change_history_no_update
    BEFORE UPDATE ON change_history
    BEGIN
        SELECT RAISE(ABORT, 'change_history is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS change_history_no_delete
    BEFORE DELETE ON change_history
    BEGIN
        SELECT RAISE(ABORT, 'change_history is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS properties_ref_immutable
    BEFORE UPDATE OF ref ON properties
    FOR EACH ROW
    WHEN OLD.ref <> NEW.ref
    BEGIN
        SELECT RAISE(ABORT, 'properties.ref is immutable');
    END
    """,
)


async def install_integrity_triggers(conn: aiosqlite.Connection) -> None:
    """Create the append-only and immutable-ref guards."""
    for statement in _INTEGRITY_TRIGGERS:
        await conn.execute(statement)


async def install_state_triggers(conn: aiosqlite.Connection) -> None:
    """(Re)create the active-state mirror triggers.

    Existing definitions are dropped first so schema changes take effect on
    databases created by an older version.
    """
    await drop_state_triggers(conn)
    await conn.execute(_ACTIVATE_TRIGGER)
    await conn.execute(_DEACTIVATE_TRIGGER)
    logger.debug("state_triggers_installed", triggers=list(STATE_TRIGGER_NAMES))


async def drop_state_triggers(conn: aiosqlite.Connection) -> None:
    for name in STATE_TRIGGER_NAMES:
        await conn.execute(f"DROP TRIGGER IF EXISTS {name}")


async def installed_state_triggers(conn: aiosqlite.Connection) -> list[str]:
    """Names of the active-state triggers currently present in the schema."""
    placeholders = ", ".join("?" for _ in STATE_TRIGGER_NAMES)
    cursor = await conn.execute(
        f"SELECT name FROM sqlite_master WHERE type = 'trigger' AND name IN ({placeholders})"
        " ORDER BY name",
        STATE_TRIGGER_NAMES,
    )
    rows = await cursor.fetchall()
    return [row[0] for row in rows]
