"""Run one sync cycle from a JSON snapshot of the upstream feed.

Usage:
    uv run python scripts/sync_snapshot.py listings.json [--db-path PATH]

The file holds a JSON array of listings (``ref``, ``sync_code``, ``title``,
``sale_price``, ...). Listings are upserted and every active property missing
from the file is deactivated.
"""

import argparse
import asyncio
from pathlib import Path

from pydantic import TypeAdapter

from listing_sync.config import Settings
from listing_sync.db import PropertyStore
from listing_sync.ingest import ListingIngestor
from listing_sync.logging import configure_from_settings
from listing_sync.models import Listing
from listing_sync.reconciler import PropertyStateReconciler

_LISTINGS = TypeAdapter(list[Listing])


async def sync(snapshot: Path, settings: Settings) -> None:
    listings = _LISTINGS.validate_json(snapshot.read_bytes())
    print(f"Loaded {len(listings)} listings from {snapshot}.")

    async with PropertyStore.from_settings(settings) as store:
        reconciler = PropertyStateReconciler(store, batch_size=settings.reconcile_batch_size)
        ingestor = ListingIngestor(
            store, reconciler, track_payload_changes=settings.track_payload_changes
        )
        result = await ingestor.run_sync_cycle(listings, kind="snapshot")

    print(f"Sync run {result.run_id} finished.")
    print(f"  {result.new_count} new")
    print(f"  {result.updated_count} updated")
    print(f"  {result.unchanged_count} unchanged")
    print(f"  {result.reconcile.deactivated_count} deactivated")
    failed = [*result.failed_refs, *result.reconcile.failed_refs]
    if failed:
        print(f"\nFailed refs: {', '.join(str(ref) for ref in failed)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Sync listings from a JSON snapshot")
    parser.add_argument("snapshot", type=Path, help="JSON array of listings")
    parser.add_argument(
        "--db-path",
        default=None,
        help="Path to SQLite database (default: LISTING_SYNC_DATABASE_PATH)",
    )
    args = parser.parse_args()

    settings = Settings()
    if args.db_path:
        settings = settings.model_copy(update={"database_path": args.db_path})
    configure_from_settings(settings)
    asyncio.run(sync(args.snapshot, settings))


if __name__ == "__main__":
    main()
