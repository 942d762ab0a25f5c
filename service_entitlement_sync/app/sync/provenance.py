"""
Read-only provenance projection over assignment rows.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

from shared.logging import get_logger
from ..persistence.base import AssignmentStore
from .models import Assignment, AssignmentSource, ItemKind, Provenance


def classify(rows: Iterable[Assignment]) -> Provenance:
    """Classify the rows of one (user, item) pair.

    Only active rows count. A manual and a usertype row together are ``dual``.
    """
    sources = {row.source for row in rows if row.is_active}

    if AssignmentSource.MANUAL in sources and AssignmentSource.USERTYPE in sources:
        return Provenance.DUAL
    if AssignmentSource.MANUAL in sources:
        return Provenance.MANUAL
    if AssignmentSource.USERTYPE in sources:
        return Provenance.USERTYPE
    return Provenance.NONE


def group_by_pair(rows: Iterable[Assignment]) -> Dict[Tuple[str, str], List[Assignment]]:
    """Bucket rows by (user_id, item_id)."""
    pairs: Dict[Tuple[str, str], List[Assignment]] = defaultdict(list)
    for row in rows:
        pairs[(row.user_id, row.item_id)].append(row)
    return pairs


class ProvenanceView:
    """Provenance lookups for admin screens and reports."""

    def __init__(self, store: AssignmentStore):
        self.store = store
        self.logger = get_logger("entitlements.sync.provenance")

    async def classify_pair(self, user_id: str, kind: ItemKind, item_id: str) -> Provenance:
        rows = await self.store.find_assignments(kind, user_ids=[user_id], item_ids=[item_id])
        return classify(rows)

    async def has_access(self, user_id: str, kind: ItemKind, item_id: str) -> bool:
        """A user is entitled when at least one active row exists."""
        return await self.classify_pair(user_id, kind, item_id) != Provenance.NONE

    async def user_assignments(self, user_id: str) -> List[Assignment]:
        """Every stored row for the user, both kinds, active or not."""
        rows: List[Assignment] = []
        for kind in ItemKind:
            rows.extend(await self.store.find_assignments(kind, user_ids=[user_id]))
        rows.sort(key=lambda row: (row.kind.value, row.item_id, row.source.value))
        return rows

    async def user_entitlements(self, user_id: str) -> Dict[ItemKind, Dict[str, Provenance]]:
        entitlements: Dict[ItemKind, Dict[str, Provenance]] = {}
        for kind in ItemKind:
            rows = await self.store.find_assignments(kind, user_ids=[user_id], active=True)
            entitlements[kind] = {
                item_id: classify(pair_rows)
                for (_, item_id), pair_rows in sorted(group_by_pair(rows).items())
            }
        return entitlements

    async def assignment_matrix(self, user_ids: Iterable[str], kind: ItemKind) -> Dict[str, Dict[str, Provenance]]:
        """Map ``item_id -> user_id -> provenance`` for every actively granted pair."""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}

        rows = await self.store.find_assignments(kind, user_ids=user_ids, active=True)
        matrix: Dict[str, Dict[str, Provenance]] = defaultdict(dict)
        for (user_id, item_id), pair_rows in sorted(group_by_pair(rows).items()):
            matrix[item_id][user_id] = classify(pair_rows)

        self.logger.debug("Built assignment matrix", kind=kind.value, users=len(user_ids), items=len(matrix))
        return dict(matrix)
