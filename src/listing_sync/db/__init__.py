"""Database storage for listings, state overrides and change history."""

from listing_sync.db.storage import PropertyStore
from listing_sync.db.tags import TagRepository

__all__ = ["PropertyStore", "TagRepository"]
