"""
Unit tests for the in-memory store.
"""

import pytest
from unittest.mock import patch

from service_entitlement_sync.app.sync.models import AssignmentSource, ItemKind, MutationOutcome


class TestInMemoryEntitlementStore:
    """Test cases for InMemoryEntitlementStore."""

    @pytest.mark.asyncio
    async def test_reads_do_not_snapshot(self, synced_store):
        with patch.object(synced_store, "_snapshot", wraps=synced_store._snapshot) as snapshot:
            await synced_store.find_assignments(ItemKind.PROGRAM, user_ids=["u1"])
            await synced_store.get_user("u1")
            await synced_store.existing_user_ids(["u1", "ghost"])
            await synced_store.existing_item_ids(ItemKind.COURSE, ["c1"])
            await synced_store.get_linked_item_ids(ItemKind.PROGRAM, "T1")
            await synced_store.link_exists(ItemKind.PROGRAM, "T1", "p1")
            await synced_store.list_member_ids("T1")
            await synced_store.user_type_exists("T1")
            await synced_store.get_stats()

        snapshot.assert_not_called()

    @pytest.mark.asyncio
    async def test_writes_snapshot_once_per_transaction(self, store):
        with patch.object(store, "_snapshot", wraps=store._snapshot) as snapshot:
            await store.set_assignment_state(ItemKind.PROGRAM, "u3", "p3", AssignmentSource.MANUAL, active=True)
            assert snapshot.call_count == 1

            async with store.transaction():
                await store.get_user("u3")
                await store.set_assignment_state(ItemKind.PROGRAM, "u3", "p1", AssignmentSource.MANUAL, active=True)
                await store.create_link(ItemKind.COURSE, "T2", "c2")
            assert snapshot.call_count == 2

    @pytest.mark.asyncio
    async def test_failed_transaction_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            async with store.transaction():
                outcome = await store.set_assignment_state(
                    ItemKind.COURSE, "u3", "c2", AssignmentSource.MANUAL, active=True
                )
                assert outcome == MutationOutcome.CREATED
                raise RuntimeError("abort")

        assert await store.find_assignments(ItemKind.COURSE, user_ids=["u3"]) == []

    @pytest.mark.asyncio
    async def test_reads_inside_transaction_see_pending_writes(self, store):
        async with store.transaction():
            await store.update_user("u3", {"user_type_id": "T2"})
            assert (await store.get_user("u3")).user_type_id == "T2"
            assert await store.list_member_ids("T2") == ["u3"]

    @pytest.mark.asyncio
    async def test_delete_user_type(self, store):
        store.add_user_type("T9", "missing")

        assert await store.delete_user_type("T9") is True
        assert await store.user_type_exists("T9") is False
        assert await store.delete_user_type("T9") is False
