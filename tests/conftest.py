"""Shared pytest fixtures."""

import gc
import os
import sys
import warnings
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from hypothesis import HealthCheck, settings

from listing_sync.config import Settings
from listing_sync.db import PropertyStore
from listing_sync.db.row_mappers import now_iso
from listing_sync.models import Listing, Property, StateFlags
from listing_sync.reconciler import PropertyStateReconciler

PropertyFactory = Callable[..., Awaitable[Property]]


def pytest_configure(config: pytest.Config) -> None:
    """Force line-buffered stdout when piped."""
    if hasattr(sys.stdout, "reconfigure") and not sys.stdout.isatty():
        sys.stdout.reconfigure(line_buffering=True)
    if hasattr(sys.stderr, "reconfigure") and not sys.stderr.isatty():
        sys.stderr.reconfigure(line_buffering=True)


# Hypothesis settings profiles for different environments
settings.register_profile("fast", max_examples=10, deadline=None)
settings.register_profile(
    "ci",
    max_examples=200,
    deadline=None,
    suppress_health_check=[HealthCheck.too_slow],
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "fast"))


@pytest.fixture(autouse=True)
def _isolate_settings_from_dotenv(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent the local .env file from leaking into test Settings instances."""
    monkeypatch.setattr(
        Settings,
        "model_config",
        {**Settings.model_config, "env_file": None},
    )


@pytest.fixture(autouse=True)
def _close_leaked_stores():
    """Stop the worker thread of any store a test forgot to close.

    An open aiosqlite connection keeps a non-daemon thread alive, which
    blocks interpreter exit.
    """
    yield

    gc.collect()
    leaked = [
        obj
        for obj in gc.get_objects()
        if isinstance(obj, PropertyStore) and obj._conn is not None
    ]
    for leaked_store in leaked:
        leaked_store._conn.stop()
        leaked_store._conn = None

    if leaked:
        warnings.warn(
            f"{len(leaked)} PropertyStore(s) left open; close them in fixture teardown",
            ResourceWarning,
            stacklevel=1,
        )


@pytest_asyncio.fixture
async def store() -> AsyncGenerator[PropertyStore, None]:
    """An initialized in-memory store with state triggers installed."""
    s = PropertyStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def reconciler(store: PropertyStore) -> PropertyStateReconciler:
    """Reconciler with a small batch size so batching is exercised."""
    return PropertyStateReconciler(store, batch_size=2)


@pytest.fixture
def make_property(store: PropertyStore) -> PropertyFactory:
    """Insert a property row directly, bypassing reconciliation.

    Non-default flags inserted this way have no override row; use the
    reconciler to reach a consistent non-default state.
    """

    async def _make(
        ref: int,
        *,
        sync_code: str | None = None,
        active: bool = True,
        featured: bool = False,
        hot: bool = False,
        title: str | None = None,
    ) -> Property:
        listing = Listing(ref=ref, sync_code=sync_code, title=title or f"Listing {ref}")
        flags = StateFlags(active=active, featured=featured, hot=hot)
        async with store.transaction() as conn:
            await store.insert_property(conn, listing, flags, now=now_iso())
        prop = await store.get_property(ref)
        assert prop is not None
        return prop

    return _make


@pytest.fixture
def count_rows(store: PropertyStore) -> Callable[[str], Awaitable[int]]:
    """Count the rows of a table in the test store."""

    async def _count(table: str) -> int:
        conn = await store._get_connection()
        cursor = await conn.execute(f"SELECT COUNT(*) FROM {table}")
        row = await cursor.fetchone()
        assert row is not None
        return int(row[0])

    return _count
