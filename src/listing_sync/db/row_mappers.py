"""Shared row-mapping utilities for database modules."""

from __future__ import annotations

from datetime import UTC, datetime

import aiosqlite

from listing_sync.models import (
    ChangeHistoryEntry,
    Property,
    StateOverride,
    SyncRun,
    SyncRunStatus,
    Tag,
)


def now_iso() -> str:
    """Current UTC time in the ISO format every timestamp column uses."""
    return datetime.now(UTC).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp; naive values (SQLite CURRENT_TIMESTAMP) are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def row_to_property(row: aiosqlite.Row) -> Property:
    """Convert a properties row to a Property model."""
    return Property(
        id=row["id"],
        ref=row["ref"],
        sync_code=row["sync_code"],
        title=row["title"],
        description=row["description"],
        city=row["city"],
        property_type=row["property_type"],
        sale_price=row["sale_price"],
        rent_price=row["rent_price"],
        active=bool(row["active"]),
        featured=bool(row["featured"]),
        hot=bool(row["hot"]),
        data_hash=row["data_hash"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        synced_at=parse_timestamp(row["synced_at"]),
    )


def row_to_override(row: aiosqlite.Row) -> StateOverride:
    """Convert a property_state_overrides row to a StateOverride model."""
    return StateOverride(
        property_ref=row["property_ref"],
        sync_code=row["sync_code"],
        active=bool(row["active"]),
        featured=bool(row["featured"]),
        hot=bool(row["hot"]),
        modified_at=parse_timestamp(row["modified_at"]),
    )


def row_to_history_entry(row: aiosqlite.Row) -> ChangeHistoryEntry:
    """Convert a change_history row to a ChangeHistoryEntry model."""
    return ChangeHistoryEntry(
        id=row["id"],
        property_id=row["property_id"],
        field=row["field"],
        old_value=row["old_value"],
        new_value=row["new_value"],
        changed_at=parse_timestamp(row["changed_at"]),
    )


def row_to_tag(row: aiosqlite.Row) -> Tag:
    """Convert a tags row to a Tag model."""
    return Tag(
        id=row["id"],
        name=row["name"],
        color=row["color"],
        description=row["description"],
        created_at=parse_timestamp(row["created_at"]),
    )


def row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
    """Convert a sync_runs row to a SyncRun model."""
    started_at = parse_timestamp(row["started_at"])
    assert started_at is not None
    return SyncRun(
        id=row["id"],
        kind=row["kind"],
        status=SyncRunStatus(row["status"]),
        started_at=started_at,
        finished_at=parse_timestamp(row["finished_at"]),
        listing_count=row["listing_count"],
        new_count=row["new_count"],
        updated_count=row["updated_count"],
        unchanged_count=row["unchanged_count"],
        failed_count=row["failed_count"],
        deactivated_count=row["deactivated_count"],
        error=row["error"],
    )
