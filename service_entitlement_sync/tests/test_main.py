"""
Unit tests for the Entitlement Sync HTTP service.
"""

import asyncio

import httpx
import pytest
import pytest_asyncio
from unittest.mock import MagicMock, patch
from fastapi.testclient import TestClient

from shared.errors import TransientStoreError
from service_entitlement_sync.app.cache.redis_cache import AssignmentViewCache
from service_entitlement_sync.app.main import EntitlementSyncService
from service_entitlement_sync.app.sync.models import (
    Assignment, AssignmentSource, ItemKind, Provenance
)


class TestEntitlementSyncService:
    """Test cases for EntitlementSyncService."""

    @pytest.fixture
    def cache(self):
        """Cache double that always misses."""
        cache = MagicMock(spec=AssignmentViewCache)
        cache.get_user_entitlements.return_value = None
        cache.get_generation.return_value = "0"
        cache.invalidate_users.return_value = 0
        cache.get_cache_stats.return_value = {"enabled": False}
        return cache

    @pytest.fixture
    def service(self, synced_store, cache):
        return EntitlementSyncService(store=synced_store, cache=cache)

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        return TestClient(service.app)

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "entitlements"
        assert data["store"] == "memory"

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"memory": "ok"}

    def test_metrics_endpoint(self, client):
        client.post("/assignments/bulk-assign", json={"userIds": ["u1"], "itemIds": ["p3"], "itemKind": "program"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "bulk_pairs_total" in response.text
        assert "http_requests_total" in response.text

    # Bulk assignments

    def test_bulk_assign(self, client, cache):
        response = client.post(
            "/assignments/bulk-assign",
            json={"userIds": ["u1", "u2"], "itemIds": ["p3"], "itemKind": "program", "assignedBy": "admin-1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 2
        assert data["skipped"] == 0
        assert data["failed"] == []
        cache.invalidate_users.assert_awaited_once_with({"u1", "u2"})

    def test_bulk_assign_reports_unknown_ids(self, client):
        response = client.post(
            "/assignments/bulk-assign",
            json={"userIds": ["u1", "ghost"], "itemIds": ["c2"], "itemKind": "course"}
        )

        data = response.json()
        assert data["count"] == 1
        assert data["failed"] == [
            {"userId": "ghost", "itemId": None, "code": "NOT_FOUND", "reason": "User not found: ghost"}
        ]

    def test_bulk_assign_requires_ids(self, client):
        response = client.post(
            "/assignments/bulk-assign",
            json={"userIds": [], "itemIds": ["p1"], "itemKind": "program"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_bulk_assign_requires_item_kind(self, client, cache):
        response = client.post("/assignments/bulk-assign", json={"userIds": ["u1"], "itemIds": ["c2"]})

        assert response.status_code == 422
        cache.invalidate_users.assert_not_awaited()

    def test_bulk_deassign_protects_inherited_grants(self, client):
        response = client.post(
            "/assignments/bulk-deassign",
            json={"userIds": ["u1"], "itemIds": ["p1"], "itemKind": "program"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["deactivated"] == 0
        assert data["skippedUserTypeAssignments"] == 1
        assert data["skippedPairs"] == [{"userId": "u1", "itemId": "p1"}]
        assert "User Type" in data["message"]

    def test_store_unavailable_returns_503(self, client, synced_store):
        with patch.object(synced_store, "existing_user_ids", side_effect=TransientStoreError("connection reset")):
            response = client.post(
                "/assignments/bulk-assign",
                json={"userIds": ["u1"], "itemIds": ["p3"], "itemKind": "program"}
            )

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"

    def test_assignment_matrix(self, client, synced_store):
        synced_store.add_assignment(Assignment("u1", "p1", ItemKind.PROGRAM, AssignmentSource.MANUAL))

        response = client.get("/assignments/matrix", params={"userIds": "u1,u2", "itemKind": "program"})

        assert response.status_code == 200
        assert response.json() == {
            "p1": {"u1": "dual", "u2": "usertype"},
            "p2": {"u1": "usertype", "u2": "usertype"},
        }

    def test_assignment_matrix_requires_users(self, client):
        assert client.get("/assignments/matrix", params={"userIds": " , "}).status_code == 400
        assert client.get("/assignments/matrix").status_code == 422

    # Users

    def test_bulk_edit_changes_type(self, client, cache):
        response = client.patch(
            "/users/bulk-edit",
            json={"userIds": ["u1"], "updates": {"userTypeId": "T2", "department": "Safety"}}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["programSync"] == {"synced": 1, "added": 1, "removed": 2, "preserved": 0}
        cache.invalidate_users.assert_awaited_once_with({"u1"})

    def test_bulk_edit_requires_updates(self, client):
        response = client.patch("/users/bulk-edit", json={"userIds": ["u1"], "updates": {}})

        assert response.status_code == 400

    def test_edit_user(self, client, synced_store):
        response = client.patch("/users/u3", json={"updates": {"userTypeId": "T1"}, "assignedBy": "admin-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "u3"
        assert data["userTypeId"] == "T1"
        assert data["programSync"] == {"synced": 1, "added": 3, "removed": 0, "preserved": 0}
        assert data["updatedAt"]
        assert synced_store.assignments[ItemKind.COURSE][("u3", "c1", AssignmentSource.USERTYPE)].assigned_by == "admin-1"

    def test_edit_user_not_found(self, client):
        response = client.patch("/users/ghost", json={"updates": {"department": "Safety"}})

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_bulk_delete(self, client, synced_store):
        response = client.request(
            "DELETE", "/users/bulk-delete", json={"userIds": ["u2"], "actingUserId": "admin-1"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["deletedAssignments"] == 3
        assert "u2" not in synced_store.users

    def test_bulk_delete_refuses_self(self, client):
        response = client.request("DELETE", "/users/bulk-delete", json={"userIds": ["u1"], "actingUserId": "u1"})

        assert response.status_code == 400
        assert response.json()["message"] == "You cannot delete your own account"

    def test_reconcile_user(self, client, synced_store):
        synced_store.add_assignment(Assignment("u1", "p3", ItemKind.PROGRAM, AssignmentSource.USERTYPE))

        response = client.post("/users/u1/reconcile")

        assert response.status_code == 200
        assert response.json() == {"added": 0, "removed": 1, "preserved": 0}

    def test_user_assignments(self, client):
        response = client.get("/users/u1/assignments")

        assert response.status_code == 200
        rows = response.json()
        assert [(r["itemKind"], r["itemId"], r["source"], r["isActive"]) for r in rows] == [
            ("course", "c1", "usertype", True),
            ("program", "p1", "usertype", True),
            ("program", "p2", "usertype", True),
        ]
        assert client.get("/users/ghost/assignments").status_code == 404

    def test_user_entitlements_computed_and_cached(self, client, cache):
        response = client.get("/users/u1/entitlements")

        assert response.status_code == 200
        assert response.json() == {
            "userId": "u1",
            "programs": {"p1": "usertype", "p2": "usertype"},
            "courses": {"c1": "usertype"},
        }
        user_id, view, generation = cache.set_user_entitlements.await_args.args
        assert (user_id, generation) == ("u1", "0")
        assert view[ItemKind.COURSE] == {"c1": Provenance.USERTYPE}

    def test_user_entitlements_served_from_cache(self, client, cache, synced_store):
        cache.get_user_entitlements.return_value = {
            ItemKind.PROGRAM: {"p9": Provenance.MANUAL},
            ItemKind.COURSE: {},
        }

        with patch.object(synced_store, "find_assignments") as find_assignments:
            response = client.get("/users/u1/entitlements")

        assert response.json()["programs"] == {"p9": "manual"}
        find_assignments.assert_not_called()

    def test_user_entitlements_not_found(self, client):
        assert client.get("/users/ghost/entitlements").status_code == 404

    # User type links

    def test_list_type_links(self, client):
        response = client.get("/user-types/T1/programs")

        assert response.status_code == 200
        assert response.json() == {"userTypeId": "T1", "itemKind": "program", "itemIds": ["p1", "p2"]}
        assert client.get("/user-types/T1/widgets").status_code == 400
        assert client.get("/user-types/ghost/programs").status_code == 404

    def test_add_type_link(self, client):
        response = client.post("/user-types/T1/programs", json={"itemId": "p3"})

        assert response.status_code == 201
        data = response.json()
        assert data["created"] is True
        assert data["syncedUsers"] == 2

        again = client.post("/user-types/T1/programs", json={"itemId": "p3"})
        assert again.status_code == 200
        assert again.json()["created"] is False
        assert again.json()["syncedUsers"] == 0

    def test_add_type_link_unknown_item(self, client):
        response = client.post("/user-types/T1/courses", json={"itemId": "nope"})

        assert response.status_code == 404

    def test_remove_type_link(self, client, cache, synced_store):
        response = client.delete("/user-types/T1/programs/p1")

        assert response.status_code == 200
        assert response.json() == {"success": True, "removed": 2}
        assert ("u1", "p1", AssignmentSource.USERTYPE) not in synced_store.assignments[ItemKind.PROGRAM]
        cache.invalidate_users.assert_awaited_once_with({"u1", "u2"})

        assert client.delete("/user-types/T1/programs/p1").status_code == 404

    def test_user_type_deletion_impact(self, client):
        response = client.get("/user-types/T1/deletion-impact")

        assert response.status_code == 200
        data = response.json()
        assert data["affectedUsers"] == 2
        assert data["linkedPrograms"] == ["p1", "p2"]
        assert data["linkedCourses"] == ["c1"]
        assert data["inheritedAssignmentsToDelete"] == 6
        assert data["usersLosingAllAccess"] == 2

    def test_delete_user_type(self, client, synced_store):
        response = client.delete("/user-types/T1")

        assert response.status_code == 200
        assert response.json() == {
            "userTypeId": "T1",
            "affectedUsers": 2,
            "deletedAssignments": 6,
            "deletedLinks": 3,
        }
        assert synced_store.users["u1"].user_type_id is None
        assert client.get("/user-types/T1/programs").status_code == 404

    def test_stats(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["store"]["users"] == 3
        assert data["store"]["program_assignments"] == 4
        assert data["cache"] == {"enabled": False}


class FakeRedis:
    """Dict-backed stand-in for the Redis commands the view cache issues."""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def eval(self, script, numkeys, generation_key, key, generation, ttl, payload):
        if self.data.get(generation_key, "0") != generation:
            return 0
        self.data[key] = payload
        return 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakePipeline:

    def __init__(self, redis):
        self.redis = redis
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def incr(self, key):
        self.commands.append(("incr", key))
        return self

    def expire(self, key, seconds):
        self.commands.append(("expire", key))
        return self

    def delete(self, *keys):
        self.commands.append(("delete", keys))
        return self

    async def execute(self):
        results = []
        for command, arg in self.commands:
            if command == "incr":
                value = int(self.redis.data.get(arg, "0")) + 1
                self.redis.data[arg] = str(value)
                results.append(value)
            elif command == "expire":
                results.append(True)
            else:
                results.append(sum(self.redis.data.pop(key, None) is not None for key in arg))
        self.commands = []
        return results


class TestUserEntitlementsCaching:
    """The entitlement view cache against concurrent writes."""

    @pytest.fixture
    def cache(self):
        cache = AssignmentViewCache("redis://localhost:6379/0")
        cache.redis = FakeRedis()
        return cache

    @pytest.fixture
    def service(self, synced_store, cache):
        synced_store.add_assignment(Assignment("u3", "p1", ItemKind.PROGRAM, AssignmentSource.MANUAL))
        return EntitlementSyncService(store=synced_store, cache=cache)

    @pytest_asyncio.fixture
    async def client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://entitlements") as client:
            yield client

    async def deassign_p1(self, client):
        return await client.post(
            "/assignments/bulk-deassign",
            json={"userIds": ["u3"], "itemIds": ["p1"], "itemKind": "program"}
        )

    @pytest.mark.asyncio
    async def test_write_drops_cached_view(self, client, cache):
        first = await client.get("/users/u3/entitlements")
        assert first.json()["programs"] == {"p1": "manual"}
        assert "entitlements:user:u3" in cache.redis.data

        await self.deassign_p1(client)

        assert (await client.get("/users/u3/entitlements")).json()["programs"] == {}

    @pytest.mark.asyncio
    async def test_view_computed_before_concurrent_deassign_is_not_cached(self, client, service, cache):
        computed = asyncio.Event()
        release = asyncio.Event()
        compute = service.provenance.user_entitlements

        async def paused_user_entitlements(user_id):
            view = await compute(user_id)
            computed.set()
            await release.wait()
            return view

        with patch.object(service.provenance, "user_entitlements", side_effect=paused_user_entitlements):
            read = asyncio.create_task(client.get("/users/u3/entitlements"))
            await computed.wait()
            deassign = await self.deassign_p1(client)
            release.set()
            in_flight = await read

        assert deassign.json()["deactivated"] == 1
        assert in_flight.json()["programs"] == {"p1": "manual"}
        assert "entitlements:user:u3" not in cache.redis.data

        after = await client.get("/users/u3/entitlements")
        assert after.json()["programs"] == {}
        cached = await client.get("/users/u3/entitlements")
        assert cached.json()["programs"] == {}
