"""Write path for the upstream listing feed.

The feed owns the listing payload (title, prices, ...). Operators own the
active / featured / hot flags: whatever the override table holds for a listing
is restored on every sync, including for listings that disappear upstream and
come back later.
"""

from __future__ import annotations

from collections.abc import Iterable

import aiosqlite
import structlog

from listing_sync.db.row_mappers import now_iso
from listing_sync.db.storage import PropertyStore
from listing_sync.errors import ListingSyncError
from listing_sync.logging import get_logger
from listing_sync.models import (
    DEFAULT_FLAGS,
    PAYLOAD_FIELDS,
    IngestOutcome,
    Listing,
    Property,
    SyncCycleResult,
    SyncRunStatus,
)
from listing_sync.reconciler import PropertyStateReconciler

logger = get_logger(__name__)


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class ListingIngestor:
    """Upserts feed listings and reconciles the stored set against each snapshot."""

    def __init__(
        self,
        store: PropertyStore,
        reconciler: PropertyStateReconciler,
        *,
        track_payload_changes: bool = True,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.track_payload_changes = track_payload_changes

    async def upsert_listing(self, listing: Listing) -> IngestOutcome:
        """Insert or update one listing in its own transaction."""
        async with self.store.transaction() as conn:
            existing = await self.store.fetch_property(conn, listing.ref)
            override = await self.store.get_override(listing.ref, listing.sync_code)
            now = now_iso()

            if existing is None:
                flags = override.flags if override is not None else DEFAULT_FLAGS
                await self.store.insert_property(conn, listing, flags, now=now)
                logger.debug(
                    "listing_created",
                    ref=listing.ref,
                    restored_state=override is not None,
                )
                return IngestOutcome.NEW

            if existing.data_hash == listing.data_hash:
                await self.store.touch_synced(conn, existing.id)
                outcome = IngestOutcome.UNCHANGED
            else:
                await self.store.update_payload(conn, existing.id, listing, now=now)
                if self.track_payload_changes:
                    await self._record_payload_changes(conn, existing, listing, now)
                outcome = IngestOutcome.UPDATED

            if override is not None and override.flags != existing.flags:
                refreshed = await self.store.fetch_property(conn, listing.ref)
                assert refreshed is not None
                await self.reconciler.apply_flags(conn, refreshed, override.flags)
                logger.info("listing_state_restored", ref=listing.ref)

        return outcome

    async def _record_payload_changes(
        self, conn: aiosqlite.Connection, existing: Property, listing: Listing, now: str
    ) -> None:
        for field in PAYLOAD_FIELDS:
            old_value = getattr(existing, field)
            new_value = getattr(listing, field)
            if old_value == new_value:
                continue
            await self.store.history.record(
                conn,
                existing.id,
                field,
                _as_text(old_value),
                _as_text(new_value),
                changed_at=now,
            )

    async def run_sync_cycle(
        self, listings: Iterable[Listing], *, kind: str = "manual"
    ) -> SyncCycleResult:
        """Upsert a full feed snapshot, then deactivate whatever it no longer lists.

        A listing that fails to upsert is counted and skipped; its ref still
        counts as present upstream, so it is not deactivated. The cycle is
        logged in sync_runs: the row is opened before the first listing and
        closed with the final counts, as failed if the cycle raised.
        """
        result = SyncCycleResult()
        run_id = await self.store.sync_runs.start(
            kind=kind, started_at=result.started_at.isoformat()
        )
        result.run_id = run_id
        status = SyncRunStatus.FAILED
        error: str | None = None
        try:
            with structlog.contextvars.bound_contextvars(sync_run_id=run_id):
                await self._sync(listings, result)
            status = SyncRunStatus.COMPLETED
            return result
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error("sync_cycle_failed", run_id=run_id, error=error)
            raise
        finally:
            await self.store.sync_runs.finish(run_id, result, status=status, error=error)

    async def _sync(self, listings: Iterable[Listing], result: SyncCycleResult) -> None:
        seen: set[int] = set()
        for listing in listings:
            seen.add(listing.ref)
            try:
                outcome = await self.upsert_listing(listing)
            except ListingSyncError as e:
                logger.error("listing_upsert_failed", ref=listing.ref, error=str(e))
                result.failed_refs.append(listing.ref)
                continue
            if outcome is IngestOutcome.NEW:
                result.new_count += 1
            elif outcome is IngestOutcome.UPDATED:
                result.updated_count += 1
            else:
                result.unchanged_count += 1
        result.listing_count = len(seen)

        result.reconcile = await self.reconciler.reconcile_against_external_snapshot(seen)
        logger.info(
            "sync_cycle_complete",
            listings=result.listing_count,
            new=result.new_count,
            updated=result.updated_count,
            unchanged=result.unchanged_count,
            failed=result.failed_count,
            deactivated=result.reconcile.deactivated_count,
        )
