"""
Shared fixtures for Entitlement Sync tests.

Seeded world:
- UserType T1 links programs p1, p2 and course c1.
- UserType T2 links programs p2, p3.
- u1 and u2 belong to T1; u3 has no type.
"""

import pytest

from shared.metrics import MetricsCollector
from shared.retry import RetryConfig
from service_entitlement_sync.app.persistence.memory import InMemoryEntitlementStore
from service_entitlement_sync.app.sync.bulk import BulkOperationCoordinator
from service_entitlement_sync.app.sync.engine import SyncEngine
from service_entitlement_sync.app.sync.models import Assignment, AssignmentSource, ItemKind


@pytest.fixture
def store():
    """In-memory store seeded with types, items, links and users."""
    store = InMemoryEntitlementStore()
    store.add_user_type("T1", "Operators")
    store.add_user_type("T2", "Supervisors")
    store.add_items(ItemKind.PROGRAM, "p1", "p2", "p3")
    store.add_items(ItemKind.COURSE, "c1", "c2")

    store.add_link(ItemKind.PROGRAM, "T1", "p1")
    store.add_link(ItemKind.PROGRAM, "T1", "p2")
    store.add_link(ItemKind.COURSE, "T1", "c1")
    store.add_link(ItemKind.PROGRAM, "T2", "p2")
    store.add_link(ItemKind.PROGRAM, "T2", "p3")

    store.add_user("u1", "T1", department="Operations")
    store.add_user("u2", "T1", department="Operations")
    store.add_user("u3", department="Finance")
    return store


@pytest.fixture
def synced_store(store):
    """Seeded store where T1 members already hold their inherited rows."""
    for user_id in ("u1", "u2"):
        store.add_assignment(Assignment(user_id, "p1", ItemKind.PROGRAM, AssignmentSource.USERTYPE))
        store.add_assignment(Assignment(user_id, "p2", ItemKind.PROGRAM, AssignmentSource.USERTYPE))
        store.add_assignment(Assignment(user_id, "c1", ItemKind.COURSE, AssignmentSource.USERTYPE))
    return store


@pytest.fixture
def retry_config():
    """Retry without waiting."""
    return RetryConfig(max_attempts=3, base_delay=0.0, jitter=False)


@pytest.fixture
def metrics():
    return MetricsCollector("entitlements")


@pytest.fixture
def engine(store, metrics, retry_config):
    return SyncEngine(store, metrics, retry_config)


@pytest.fixture
def coordinator(store, engine, metrics):
    return BulkOperationCoordinator(store, engine, metrics, max_bulk_pairs=100)
