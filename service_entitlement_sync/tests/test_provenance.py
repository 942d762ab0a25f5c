"""
Unit tests for provenance classification and views.
"""

import pytest

from service_entitlement_sync.app.sync.models import Assignment, AssignmentSource, ItemKind, Provenance
from service_entitlement_sync.app.sync.provenance import ProvenanceView, classify

MANUAL = AssignmentSource.MANUAL
USERTYPE = AssignmentSource.USERTYPE


def row(source, is_active=True, user_id="u1", item_id="p1"):
    return Assignment(user_id, item_id, ItemKind.PROGRAM, source, is_active=is_active)


@pytest.mark.parametrize("rows,expected", [
    ([], Provenance.NONE),
    ([row(MANUAL)], Provenance.MANUAL),
    ([row(USERTYPE)], Provenance.USERTYPE),
    ([row(MANUAL), row(USERTYPE)], Provenance.DUAL),
    ([row(MANUAL, is_active=False), row(USERTYPE)], Provenance.USERTYPE),
    ([row(MANUAL, is_active=False)], Provenance.NONE),
])
def test_classify(rows, expected):
    assert classify(rows) == expected


class TestProvenanceView:
    """Test cases for ProvenanceView."""

    @pytest.fixture
    def view(self, synced_store):
        synced_store.add_assignment(Assignment("u1", "p1", ItemKind.PROGRAM, MANUAL))
        synced_store.add_assignment(Assignment("u1", "p3", ItemKind.PROGRAM, MANUAL))
        synced_store.add_assignment(Assignment("u2", "c2", ItemKind.COURSE, MANUAL, is_active=False))
        return ProvenanceView(synced_store)

    @pytest.mark.asyncio
    async def test_classify_pair(self, view):
        assert await view.classify_pair("u1", ItemKind.PROGRAM, "p1") == Provenance.DUAL
        assert await view.classify_pair("u1", ItemKind.PROGRAM, "p2") == Provenance.USERTYPE
        assert await view.classify_pair("u1", ItemKind.PROGRAM, "p3") == Provenance.MANUAL
        assert await view.classify_pair("u3", ItemKind.PROGRAM, "p1") == Provenance.NONE

    @pytest.mark.asyncio
    async def test_has_access(self, view):
        assert await view.has_access("u1", ItemKind.PROGRAM, "p3") is True
        assert await view.has_access("u2", ItemKind.COURSE, "c2") is False

    @pytest.mark.asyncio
    async def test_user_entitlements(self, view):
        entitlements = await view.user_entitlements("u1")

        assert entitlements[ItemKind.PROGRAM] == {
            "p1": Provenance.DUAL,
            "p2": Provenance.USERTYPE,
            "p3": Provenance.MANUAL,
        }
        assert entitlements[ItemKind.COURSE] == {"c1": Provenance.USERTYPE}

    @pytest.mark.asyncio
    async def test_user_assignments_include_inactive_rows(self, view):
        rows = await view.user_assignments("u2")

        assert [(r.kind, r.item_id, r.is_active) for r in rows] == [
            (ItemKind.COURSE, "c1", True),
            (ItemKind.COURSE, "c2", False),
            (ItemKind.PROGRAM, "p1", True),
            (ItemKind.PROGRAM, "p2", True),
        ]

    @pytest.mark.asyncio
    async def test_assignment_matrix(self, view):
        matrix = await view.assignment_matrix(["u1", "u2", "u3"], ItemKind.PROGRAM)

        assert matrix == {
            "p1": {"u1": Provenance.DUAL, "u2": Provenance.USERTYPE},
            "p2": {"u1": Provenance.USERTYPE, "u2": Provenance.USERTYPE},
            "p3": {"u1": Provenance.MANUAL},
        }
        assert await view.assignment_matrix([], ItemKind.PROGRAM) == {}
