"""Tests for tag management."""

import pytest

from listing_sync.db import PropertyStore
from listing_sync.errors import ConflictError, NotFoundError
from listing_sync.models import DEFAULT_TAG_COLOR


class TestCreateTag:
    @pytest.mark.asyncio
    async def test_create_with_defaults(self, store: PropertyStore) -> None:
        tag = await store.tags.create_tag("sea view")

        assert tag.id > 0
        assert tag.name == "sea view"
        assert tag.color == DEFAULT_TAG_COLOR
        assert tag.description is None
        assert tag.created_at is not None

    @pytest.mark.asyncio
    async def test_create_strips_name(self, store: PropertyStore) -> None:
        tag = await store.tags.create_tag("  pool  ", color="#ff0000", description="Has a pool")

        assert tag.name == "pool"
        assert tag.color == "#ff0000"
        assert tag.description == "Has a pool"

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, store: PropertyStore) -> None:
        await store.tags.create_tag("pool")

        with pytest.raises(ConflictError, match="pool"):
            await store.tags.create_tag("pool")

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self, store: PropertyStore) -> None:
        with pytest.raises(ValueError):
            await store.tags.create_tag("   ")

    @pytest.mark.asyncio
    async def test_list_tags_sorted_by_name(self, store: PropertyStore) -> None:
        await store.tags.create_tag("terrace")
        await store.tags.create_tag("garage")

        assert [t.name for t in await store.tags.list_tags()] == ["garage", "terrace"]


class TestGetTag:
    @pytest.mark.asyncio
    async def test_by_id_and_name(self, store: PropertyStore) -> None:
        created = await store.tags.create_tag("pool")

        assert await store.tags.get_tag(created.id) == created
        assert await store.tags.get_tag("pool") == created

    @pytest.mark.asyncio
    async def test_missing(self, store: PropertyStore) -> None:
        with pytest.raises(NotFoundError):
            await store.tags.get_tag("nope")
        with pytest.raises(NotFoundError):
            await store.tags.get_tag(99)


class TestPropertyTags:
    @pytest.mark.asyncio
    async def test_add_and_list(self, store: PropertyStore, make_property) -> None:
        await make_property(1)
        await store.tags.create_tag("pool")
        await store.tags.create_tag("garage")

        assert await store.tags.add_tag(1, "pool") is True
        assert await store.tags.add_tag(1, "garage") is True

        names = [t.name for t in await store.tags.list_property_tags(1)]
        assert names == ["garage", "pool"]

    @pytest.mark.asyncio
    async def test_add_twice_reports_existing(self, store: PropertyStore, make_property) -> None:
        await make_property(1)
        tag = await store.tags.create_tag("pool")

        assert await store.tags.add_tag(1, tag.id) is True
        assert await store.tags.add_tag(1, "pool") is False
        assert len(await store.tags.list_property_tags(1)) == 1

    @pytest.mark.asyncio
    async def test_remove(self, store: PropertyStore, make_property) -> None:
        await make_property(1)
        await store.tags.create_tag("pool")
        await store.tags.add_tag(1, "pool")

        assert await store.tags.remove_tag(1, "pool") is True
        assert await store.tags.remove_tag(1, "pool") is False
        assert await store.tags.list_property_tags(1) == []

    @pytest.mark.asyncio
    async def test_unknown_property(self, store: PropertyStore) -> None:
        await store.tags.create_tag("pool")

        with pytest.raises(NotFoundError):
            await store.tags.add_tag(404, "pool")

    @pytest.mark.asyncio
    async def test_unknown_tag(self, store: PropertyStore, make_property) -> None:
        await make_property(1)

        with pytest.raises(NotFoundError):
            await store.tags.add_tag(1, "pool")

    @pytest.mark.asyncio
    async def test_properties_with_tag(self, store: PropertyStore, make_property) -> None:
        for ref in (3, 1, 2):
            await make_property(ref)
        await store.tags.create_tag("pool")
        await store.tags.add_tag(3, "pool")
        await store.tags.add_tag(1, "pool")

        props = await store.tags.list_properties_with_tag("pool")
        assert [p.ref for p in props] == [1, 3]

    @pytest.mark.asyncio
    async def test_tagging_does_not_touch_state(
        self, store: PropertyStore, make_property, count_rows
    ) -> None:
        await make_property(1)
        await store.tags.create_tag("pool")
        await store.tags.add_tag(1, "pool")

        assert await count_rows("change_history") == 0
        assert await count_rows("property_state_overrides") == 0
