"""Property state reconciliation.

Keeps three views of a listing's state consistent:

- ``properties``: the authoritative active / featured / hot flags
- ``property_state_overrides``: a row per (ref, sync_code) whose flags differ
  from the default tuple (active, not featured, not hot), and no row otherwise
- ``change_history``: one append-only entry per flag transition

Every public operation runs its writes inside PropertyStore.transaction(), so
the flag update, the override write and the history entries either all land
or none do.
"""

from __future__ import annotations

from collections.abc import Iterable

import aiosqlite

from listing_sync.db.row_mappers import now_iso
from listing_sync.db.storage import PropertyStore
from listing_sync.errors import ListingSyncError, NotFoundError
from listing_sync.logging import get_logger
from listing_sync.models import (
    InvariantViolation,
    Property,
    ReconcileResult,
    StateChange,
    StateFlags,
    ViolationKind,
)

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


class PropertyStateReconciler:
    """Applies flag changes and keeps the override table and history in sync."""

    def __init__(self, store: PropertyStore, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.batch_size = batch_size

    async def set_property_state(
        self,
        ref: int,
        *,
        active: bool | None = None,
        featured: bool | None = None,
        hot: bool | None = None,
    ) -> StateChange:
        """Change any of a property's flags; omitted flags keep their value.

        Setting flags to their current values is a no-op and writes no history.

        Raises:
            NotFoundError: No property has this ref.
            ConflictError: The row changed underneath us.
            PersistenceError: The datastore failed; nothing was applied.
        """
        async with self.store.transaction() as conn:
            prop = await self._load(conn, ref)
            new = prop.flags.overlay(active=active, featured=featured, hot=hot)
            changed = await self.apply_flags(conn, prop, new)

        if changed:
            logger.info(
                "property_state_changed",
                ref=ref,
                active=new.active,
                featured=new.featured,
                hot=new.hot,
            )
        return StateChange.from_flags(new, changed=changed)

    async def activate_property(self, ref: int) -> bool:
        """Mark a property active and drop every override row it has.

        Unlike set_property_state, the override rows are removed even when a
        stale override still carries featured/hot, so the next sync cycle
        leaves the listing active.

        Returns:
            True if the property's flags changed.
        """
        async with self.store.transaction() as conn:
            prop = await self._load(conn, ref)
            new = prop.flags.overlay(active=True)
            changed = await self.apply_flags(conn, prop, new)
            removed = await self.store.overrides.delete_all_for_ref(conn, ref)

        logger.info("property_activated", ref=ref, changed=changed, overrides_removed=removed)
        return changed

    async def deactivate_property(self, ref: int) -> bool:
        """Mark a property inactive. Returns True if its flags changed."""
        result = await self.set_property_state(ref, active=False)
        return result.changed

    async def reconcile_against_external_snapshot(
        self, known_refs: Iterable[int]
    ) -> ReconcileResult:
        """Deactivate every active property the upstream feed no longer lists.

        Deactivations are committed in batches of ``batch_size``. A batch that
        fails is rolled back in full and its refs are reported in
        ``failed_refs``; batches already committed stay applied.
        """
        known = set(known_refs)
        if not known:
            logger.warning("reconcile_empty_snapshot", active_properties_affected="all")

        active_refs = await self.store.list_active_refs()
        missing = [ref for ref in active_refs if ref not in known]
        if not missing:
            logger.info("reconcile_nothing_to_deactivate", active=len(active_refs))
            return ReconcileResult()

        deactivated = 0
        failed: list[int] = []
        for start in range(0, len(missing), self.batch_size):
            batch = missing[start : start + self.batch_size]
            try:
                deactivated += await self._deactivate_batch(batch)
            except ListingSyncError as e:
                logger.error(
                    "reconcile_batch_failed",
                    first_ref=batch[0],
                    size=len(batch),
                    error=str(e),
                )
                failed.extend(batch)

        logger.info(
            "reconcile_complete",
            active=len(active_refs),
            known=len(known),
            deactivated=deactivated,
            failed=len(failed),
        )
        return ReconcileResult(deactivated_count=deactivated, failed_refs=tuple(failed))

    async def _deactivate_batch(self, refs: list[int]) -> int:
        count = 0
        async with self.store.transaction() as conn:
            for ref in refs:
                prop = await self.store.fetch_property(conn, ref)
                # Deleted or reactivated since the scan
                if prop is None or not prop.active:
                    continue
                if await self.apply_flags(conn, prop, prop.flags.overlay(active=False)):
                    count += 1
        return count

    async def apply_flags(
        self, conn: aiosqlite.Connection, prop: Property, new: StateFlags
    ) -> bool:
        """Write a new flag tuple for a loaded property inside an open transaction.

        Updates the row, appends one history entry per changed flag and then
        brings the override row for (ref, sync_code) back in line with the new
        tuple. Returns False without writing anything when nothing changed.
        """
        old = prop.flags
        if new == old:
            return False

        now = now_iso()
        await self.store.update_flags(conn, prop, new, updated_at=now)
        await self.store.history.record_flag_transitions(conn, prop.id, old, new, changed_at=now)
        await self._sync_override(conn, prop, new, now)
        return True

    async def _sync_override(
        self, conn: aiosqlite.Connection, prop: Property, flags: StateFlags, now: str
    ) -> None:
        # Keyed by the property's current sync_code; rows under an older code are left alone
        if flags.is_default:
            await self.store.overrides.delete(conn, prop.ref, prop.override_key)
        else:
            await self.store.overrides.upsert(
                conn, prop.ref, prop.override_key, flags, modified_at=now
            )

    async def _load(self, conn: aiosqlite.Connection, ref: int) -> Property:
        prop = await self.store.fetch_property(conn, ref)
        if prop is None:
            raise NotFoundError(f"No property with ref {ref}")
        return prop

    async def find_invariant_violations(self) -> list[InvariantViolation]:
        """Audit the override table against the properties table.

        Read-only. Orphaned overrides (keyed on a ref or sync code that no
        longer matches any property) are reported, never migrated.
        """
        properties = {p.ref: p for p in await self.store.list_properties()}
        overrides = {(o.property_ref, o.sync_code): o for o in await self.store.list_overrides()}

        violations: list[InvariantViolation] = []

        def flag(kind: ViolationKind, ref: int, sync_code: str) -> None:
            violations.append(InvariantViolation(kind=kind, property_ref=ref, sync_code=sync_code))

        for ref, prop in properties.items():
            override = overrides.get((ref, prop.override_key))
            if prop.flags.is_default:
                if override is not None:
                    flag(ViolationKind.STALE_OVERRIDE, ref, prop.override_key)
            elif override is None:
                flag(ViolationKind.MISSING_OVERRIDE, ref, prop.override_key)
            elif override.flags != prop.flags:
                flag(ViolationKind.MISMATCHED_OVERRIDE, ref, prop.override_key)

        for ref, sync_code in overrides:
            prop = properties.get(ref)
            if prop is None or prop.override_key != sync_code:
                flag(ViolationKind.ORPHANED_OVERRIDE, ref, sync_code)

        if violations:
            logger.warning("invariant_violations_found", count=len(violations))
        return violations
