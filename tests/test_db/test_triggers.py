"""Tests for the database triggers that mirror direct writes to properties.active."""

from collections.abc import AsyncGenerator, Awaitable, Callable

import aiosqlite
import pytest
import pytest_asyncio

from listing_sync.db import PropertyStore
from listing_sync.db.row_mappers import now_iso
from listing_sync.db.triggers import STATE_TRIGGER_NAMES, installed_state_triggers
from listing_sync.models import Listing, StateFlags
from listing_sync.reconciler import PropertyStateReconciler

CountRows = Callable[[str], Awaitable[int]]


async def _direct_update(store: PropertyStore, sql: str, *params: object) -> None:
    """Write outside the application path, as a manual fix or external tool would."""
    conn = await store._get_connection()
    await conn.execute(sql, params)


class TestActiveStateTriggers:
    @pytest.mark.asyncio
    async def test_triggers_installed_by_default(self, store: PropertyStore) -> None:
        conn = await store._get_connection()
        assert await installed_state_triggers(conn) == sorted(STATE_TRIGGER_NAMES)

    @pytest.mark.asyncio
    async def test_direct_deactivation_creates_override_and_history(
        self, store: PropertyStore, make_property
    ) -> None:
        await make_property(244, sync_code="ORB-244")

        await _direct_update(store, "UPDATE properties SET active = 0 WHERE ref = ?", 244)

        override = await store.get_override(244, "ORB-244")
        assert override is not None
        assert override.active is False
        history = await store.get_history(244)
        assert [(h.field, h.old_value, h.new_value) for h in history] == [("active", "1", "0")]

    @pytest.mark.asyncio
    async def test_direct_deactivation_with_null_sync_code(
        self, store: PropertyStore, make_property
    ) -> None:
        await make_property(5)

        await _direct_update(store, "UPDATE properties SET active = 0 WHERE ref = ?", 5)

        override = await store.get_override(5)
        assert override is not None
        assert override.sync_code == ""

    @pytest.mark.asyncio
    async def test_direct_deactivation_carries_featured_and_hot(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(6)
        await reconciler.set_property_state(6, featured=True)

        await _direct_update(store, "UPDATE properties SET active = 0 WHERE ref = ?", 6)

        override = await store.get_override(6)
        assert override is not None
        assert (override.active, override.featured, override.hot) == (False, True, False)

    @pytest.mark.asyncio
    async def test_direct_activation_deletes_override_and_records_history(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(244)
        await reconciler.set_property_state(244, active=False)

        await _direct_update(store, "UPDATE properties SET active = 1 WHERE ref = ?", 244)

        assert await store.get_override(244) is None
        history = await store.get_history(244)
        assert [(h.old_value, h.new_value) for h in history] == [("1", "0"), ("0", "1")]

    @pytest.mark.asyncio
    async def test_bulk_direct_update(
        self, store: PropertyStore, make_property, count_rows: CountRows
    ) -> None:
        for ref in (1, 2, 3):
            await make_property(ref)

        await _direct_update(store, "UPDATE properties SET active = 0")

        assert await count_rows("property_state_overrides") == 3
        assert await count_rows("change_history") == 3

    @pytest.mark.asyncio
    async def test_self_transition_does_nothing(
        self, store: PropertyStore, make_property, count_rows: CountRows
    ) -> None:
        await make_property(7)

        await _direct_update(store, "UPDATE properties SET active = 1 WHERE ref = ?", 7)

        assert await count_rows("property_state_overrides") == 0
        assert await count_rows("change_history") == 0

    @pytest.mark.asyncio
    async def test_featured_only_write_not_mirrored(
        self, store: PropertyStore, make_property, count_rows: CountRows
    ) -> None:
        """The triggers react to active only."""
        await make_property(8)

        await _direct_update(store, "UPDATE properties SET featured = 1 WHERE ref = ?", 8)

        assert await count_rows("property_state_overrides") == 0
        assert await count_rows("change_history") == 0

    @pytest.mark.asyncio
    async def test_application_path_not_recorded_twice(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(9)

        await reconciler.set_property_state(9, active=False)
        await reconciler.activate_property(9)

        history = await store.get_history(9)
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_guard_row_never_committed(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(10)
        await reconciler.set_property_state(10, active=False)

        conn = await store._get_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM state_write_guard")
        row = await cursor.fetchone()
        assert row[0] == 0

    @pytest.mark.asyncio
    async def test_reinstall_is_idempotent(self, store: PropertyStore) -> None:
        await store.install_state_triggers()
        await store.install_state_triggers()

        conn = await store._get_connection()
        assert await installed_state_triggers(conn) == sorted(STATE_TRIGGER_NAMES)


class TestTriggersDisabled:
    @pytest_asyncio.fixture
    async def plain_store(self) -> AsyncGenerator[PropertyStore, None]:
        s = PropertyStore(":memory:", state_triggers=False)
        await s.initialize()
        yield s
        await s.close()

    @pytest.mark.asyncio
    async def test_no_state_triggers(self, plain_store: PropertyStore) -> None:
        conn = await plain_store._get_connection()
        assert await installed_state_triggers(conn) == []

    @pytest.mark.asyncio
    async def test_install_on_demand(self, plain_store: PropertyStore) -> None:
        await plain_store.install_state_triggers()

        conn = await plain_store._get_connection()
        assert await installed_state_triggers(conn) == sorted(STATE_TRIGGER_NAMES)
        assert plain_store.state_triggers is True

    @pytest.mark.asyncio
    async def test_drop_removes_triggers(self, store: PropertyStore, make_property) -> None:
        await make_property(1)

        await store.drop_state_triggers()
        await _direct_update(store, "UPDATE properties SET active = 0 WHERE ref = ?", 1)

        conn = await store._get_connection()
        assert await installed_state_triggers(conn) == []
        assert store.state_triggers is False
        assert await store.get_override(1) is None
        assert await store.get_history(1) == []


class TestSharedDatabase:
    @pytest.mark.asyncio
    async def test_store_without_triggers_keeps_existing_ones(self, tmp_path) -> None:
        db_path = str(tmp_path / "shared.db")
        async with PropertyStore(db_path) as writer:
            async with writer.transaction() as conn:
                await writer.insert_property(conn, Listing(ref=1), StateFlags(), now=now_iso())

            async with PropertyStore(db_path, state_triggers=False) as plain:
                conn = await plain._get_connection()
                assert await installed_state_triggers(conn) == sorted(STATE_TRIGGER_NAMES)

            await _direct_update(writer, "UPDATE properties SET active = 0 WHERE ref = ?", 1)

            override = await writer.get_override(1)
            assert override is not None
            assert override.active is False
            assert len(await writer.get_history(1)) == 1

    @pytest.mark.asyncio
    async def test_direct_write_from_other_client_is_mirrored(self, tmp_path) -> None:
        db_path = str(tmp_path / "shared.db")
        async with PropertyStore(db_path) as writer:
            async with writer.transaction() as conn:
                await writer.insert_property(conn, Listing(ref=2), StateFlags(), now=now_iso())

            async with PropertyStore(db_path, state_triggers=False) as plain:
                await _direct_update(plain, "UPDATE properties SET active = 0 WHERE ref = ?", 2)

            override = await writer.get_override(2)
            assert override is not None
            assert override.active is False



class TestIntegrityTriggers:
    @pytest.mark.asyncio
    async def test_history_rows_cannot_be_updated(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(1)
        await reconciler.set_property_state(1, active=False)

        with pytest.raises(aiosqlite.IntegrityError, match="append-only"):
            await _direct_update(store, "UPDATE change_history SET new_value = '1'")

    @pytest.mark.asyncio
    async def test_history_rows_cannot_be_deleted(
        self, store: PropertyStore, reconciler: PropertyStateReconciler, make_property
    ) -> None:
        await make_property(1)
        await reconciler.set_property_state(1, active=False)

        with pytest.raises(aiosqlite.IntegrityError, match="append-only"):
            await _direct_update(store, "DELETE FROM change_history")

    @pytest.mark.asyncio
    async def test_ref_is_immutable(self, store: PropertyStore, make_property) -> None:
        await make_property(1)

        with pytest.raises(aiosqlite.IntegrityError, match="immutable"):
            await _direct_update(store, "UPDATE properties SET ref = 2 WHERE ref = 1")
