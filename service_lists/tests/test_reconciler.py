"""
Tests for the list service's catalog-change reconciler.
"""

from unittest.mock import AsyncMock

import pytest

from shared.document_store import JsonDocumentStore
from shared.errors import RevisionConflictError
from shared.metrics import MetricsCollector
from shared.test_helpers import fake_data_factory as factory
from service_lists.app.reconciler import ItemUpdateReconciler, apply_item_event, parse_item_event
from service_lists.app.summary import calculate_summary


@pytest.fixture
def store(tmp_path):
    return JsonDocumentStore(str(tmp_path), "lists")


@pytest.fixture
def reconciler(store):
    return ItemUpdateReconciler(store, metrics=MetricsCollector("list-service"))


async def seed(store, list_id, user_id, entries):
    record = factory.create_list(list_id, user_id, entries)
    record["summary"] = calculate_summary(entries)
    return await store.create(record)


class TestEventParsing:

    def test_valid_event(self):
        event = parse_item_event({"itemId": "X", "name": "New", "averagePrice": 9.99,
                                  "active": True, "updatedAt": "2024-01-01"})
        assert event["averagePrice"] == 9.99

    @pytest.mark.parametrize("payload", [
        None,
        [],
        {"name": "no id"},
        {"itemId": "", "name": "empty id"},
        {"itemId": "X"},
        {"itemId": "X", "name": "N", "averagePrice": "cheap"},
        {"itemId": "X", "name": "N", "averagePrice": True},
    ])
    def test_malformed_events(self, payload):
        assert parse_item_event(payload) is None

    def test_apply_without_price_keeps_cached_price(self):
        entries = [factory.create_entry("X", "Old", price=3.0)]
        patched = apply_item_event(entries, {"itemId": "X", "name": "New", "averagePrice": None})
        assert patched[0]["cachedName"] == "New"
        assert patched[0]["cachedPrice"] == 3.0
        assert entries[0]["cachedName"] == "Old"


class TestItemUpdateReconciler:

    def test_queue_name(self, reconciler):
        assert reconciler.name == "list_service_price_updates"

    @pytest.mark.asyncio
    async def test_repairs_every_referencing_list(self, store, reconciler):
        await seed(store, "l1", "u1", [
            factory.create_entry("X", "Old Name", price=5.0, quantity=2),
            factory.create_entry("Y", "Other", price=1.5, quantity=4),
        ])
        await seed(store, "l2", "u2", [factory.create_entry("X", "Old Name", price=5.0, quantity=3)])
        await seed(store, "l3", "u1", [factory.create_entry("Z", "Untouched", price=2.0)])

        result = await reconciler.on_message({"itemId": "X", "name": "New Name", "averagePrice": 9.99,
                                              "active": True, "updatedAt": "2024-01-02T00:00:00Z"})

        assert result.ok
        assert result.value == 2
        for list_id in ("l1", "l2"):
            record = await store.find_by_id(list_id)
            matching = [e for e in record["items"] if e["itemId"] == "X"]
            assert all(e["cachedName"] == "New Name" and e["cachedPrice"] == 9.99 for e in matching)
            expected = sum(e["cachedPrice"] * e["quantity"] for e in record["items"])
            assert record["summary"]["estimatedTotal"] == pytest.approx(expected)
            assert record["summary"]["totalItems"] == len(record["items"])

        untouched = await store.find_by_id("l3")
        assert untouched["_rev"] == 1
        assert untouched["items"][0]["cachedName"] == "Untouched"

    @pytest.mark.asyncio
    async def test_name_only_event(self, store, reconciler):
        await seed(store, "l1", "u1", [factory.create_entry("X", "Old", price=4.0, quantity=1)])

        await reconciler.on_message({"itemId": "X", "name": "Renamed"})

        record = await store.find_by_id("l1")
        assert record["items"][0]["cachedName"] == "Renamed"
        assert record["items"][0]["cachedPrice"] == 4.0

    @pytest.mark.asyncio
    async def test_malformed_event_is_acknowledged(self, store, reconciler):
        await seed(store, "l1", "u1", [factory.create_entry("X", "Old")])

        result = await reconciler.on_message({"unexpected": "shape"})

        assert result.ok
        assert (await store.find_by_id("l1"))["_rev"] == 1

    @pytest.mark.asyncio
    async def test_store_read_failure_requests_redelivery(self, store, reconciler):
        store.find = AsyncMock(side_effect=OSError("disk unavailable"))

        result = await reconciler.on_message({"itemId": "X", "name": "New"})

        assert not result.ok

    @pytest.mark.asyncio
    async def test_concurrent_edit_is_not_lost(self, store, reconciler):
        await seed(store, "l1", "u1", [factory.create_entry("X", "Old", price=1.0)])
        real_update = store.update
        raced = False

        async def racing_update(record_id, updates, expected_revision=None):
            nonlocal raced
            if not raced:
                raced = True
                # a user edit lands between the reconciler's read and write
                current = await store.find_by_id(record_id)
                entries = current["items"] + [factory.create_entry("N", "Added by user", price=2.0)]
                await real_update(record_id, {"items": entries, "summary": calculate_summary(entries)})
            return await real_update(record_id, updates, expected_revision=expected_revision)

        store.update = racing_update

        result = await reconciler.on_message({"itemId": "X", "name": "New", "averagePrice": 3.0})

        assert result.value == 1
        record = await store.find_by_id("l1")
        assert [e["itemId"] for e in record["items"]] == ["X", "N"]
        assert record["items"][0]["cachedName"] == "New"
        assert record["summary"]["estimatedTotal"] == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_per_list_failure_is_skipped(self, store, reconciler):
        await seed(store, "l1", "u1", [factory.create_entry("X", "Old")])
        await seed(store, "l2", "u2", [factory.create_entry("X", "Old")])
        real_update = store.update

        async def flaky_update(record_id, updates, expected_revision=None):
            if record_id == "l1":
                raise OSError("write failed")
            return await real_update(record_id, updates, expected_revision=expected_revision)

        store.update = flaky_update

        result = await reconciler.on_message({"itemId": "X", "name": "New"})

        assert result.ok
        assert result.value == 1
        assert (await store.find_by_id("l2"))["items"][0]["cachedName"] == "New"

    @pytest.mark.asyncio
    async def test_conflicts_exhaust_attempts(self, store):
        await seed(store, "l1", "u1", [factory.create_entry("X", "Old")])
        reconciler = ItemUpdateReconciler(store, max_attempts=2)
        store.update = AsyncMock(side_effect=RevisionConflictError("l1", 1, 2))

        result = await reconciler.on_message({"itemId": "X", "name": "New"})

        assert result.ok
        assert result.value == 0
        assert store.update.await_count == 2

    @pytest.mark.asyncio
    async def test_malformed_list_records_do_not_block_others(self, store, reconciler):
        await store.create({"id": "no-items", "userId": "u1", "items": None})
        await store.create({"id": "bad-entry", "userId": "u1", "items": ["X", None]})
        await seed(store, "good", "u2", [factory.create_entry("X", "Old", price=1.0, quantity=2)])

        result = await reconciler.on_message({"itemId": "X", "name": "New", "averagePrice": 2.0})

        assert result.ok
        assert result.value == 1
        good = await store.find_by_id("good")
        assert good["items"][0]["cachedName"] == "New"
        assert good["summary"]["estimatedTotal"] == pytest.approx(4.0)
        assert (await store.find_by_id("no-items"))["_rev"] == 1

    def test_apply_skips_non_dict_entries(self):
        entries = [None, factory.create_entry("X", "Old")]
        patched = apply_item_event(entries, {"itemId": "X", "name": "New", "averagePrice": None})
        assert patched[0] is None
        assert patched[1]["cachedName"] == "New"
