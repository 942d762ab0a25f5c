"""
In-process entitlement store used for local runs and tests.
"""

import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional, Set, Tuple
import asyncio

from shared.errors import NotFoundError
from shared.logging import get_logger
from ..sync.models import (
    Assignment, AssignmentSource, ItemKind, MutationOutcome, TypeLink, UserRecord, utcnow
)
from .base import EntitlementStore

AssignmentKey = Tuple[str, str, AssignmentSource]
LinkKey = Tuple[str, str]


def _as_set(values: Optional[Iterable[str]]) -> Optional[Set[str]]:
    return None if values is None else set(values)


class InMemoryEntitlementStore(EntitlementStore):
    """Dict-backed store with snapshot rollback transactions.

    Writes snapshot the tables on entering the outermost transaction; reads
    only take the lock.
    """

    name = "memory"

    def __init__(self):
        self.logger = get_logger("entitlements.persistence.memory")
        self.users: Dict[str, UserRecord] = {}
        self.user_types: Dict[str, Optional[str]] = {}
        self.items: Dict[ItemKind, Set[str]] = {kind: set() for kind in ItemKind}
        self.assignments: Dict[ItemKind, Dict[AssignmentKey, Assignment]] = {kind: {} for kind in ItemKind}
        self.links: Dict[ItemKind, Dict[LinkKey, TypeLink]] = {kind: {} for kind in ItemKind}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(f"memory_store_tx_{id(self)}", default=False)

    # Seeding helpers for the collaborator-owned tables

    def add_user_type(self, user_type_id: str, name: Optional[str] = None):
        self.user_types[user_type_id] = name

    def add_user(self, user_id: str, user_type_id: Optional[str] = None, **profile):
        self.users[user_id] = UserRecord(user_id=user_id, user_type_id=user_type_id, profile=dict(profile))

    def add_items(self, kind: ItemKind, *item_ids: str):
        self.items[kind].update(item_ids)

    def add_link(self, kind: ItemKind, user_type_id: str, item_id: str):
        """Insert a link row without fanning out."""
        self.links[kind][(user_type_id, item_id)] = TypeLink(user_type_id, item_id, kind)

    def add_assignment(self, assignment: Assignment):
        """Insert a raw assignment row."""
        self.assignments[assignment.kind][assignment.key] = assignment

    # Transactions

    @asynccontextmanager
    async def transaction(self):
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            token = self._in_transaction.set(True)
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._in_transaction.reset(token)

    @asynccontextmanager
    async def _read(self):
        """Serialize a read against writers without taking a snapshot."""
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            yield

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "users": self.users,
            "user_types": self.user_types,
            "items": self.items,
            "assignments": self.assignments,
            "links": self.links,
        })

    def _restore(self, snapshot: Dict[str, Any]):
        self.users = snapshot["users"]
        self.user_types = snapshot["user_types"]
        self.items = snapshot["items"]
        self.assignments = snapshot["assignments"]
        self.links = snapshot["links"]
        self.logger.debug("Rolled back in-memory transaction")

    # AssignmentStore

    async def find_assignments(self, kind, *, user_ids=None, item_ids=None, source=None, active=None):
        users, items = _as_set(user_ids), _as_set(item_ids)
        async with self._read():
            return [
                copy.copy(row) for row in self.assignments[kind].values()
                if (users is None or row.user_id in users)
                and (items is None or row.item_id in items)
                and (source is None or row.source == source)
                and (active is None or row.is_active == active)
            ]

    async def set_assignment_state(self, kind, user_id, item_id, source, *, active, assigned_by=None):
        async with self.transaction():
            rows = self.assignments[kind]
            row = rows.get((user_id, item_id, source))

            if row is None:
                if not active:
                    return MutationOutcome.UNCHANGED
                rows[(user_id, item_id, source)] = Assignment(
                    user_id=user_id, item_id=item_id, kind=kind, source=source, assigned_by=assigned_by
                )
                return MutationOutcome.CREATED

            if row.is_active == active:
                return MutationOutcome.UNCHANGED

            row.is_active = active
            if active:
                row.assigned_at = utcnow()
                row.assigned_by = assigned_by
                return MutationOutcome.REACTIVATED
            return MutationOutcome.DEACTIVATED

    async def ensure_user_assignments(self, kind, user_id, item_ids, source, assigned_by=None):
        changed = []
        async with self.transaction():
            for item_id in dict.fromkeys(item_ids):
                outcome = await self.set_assignment_state(
                    kind, user_id, item_id, source, active=True, assigned_by=assigned_by
                )
                if outcome != MutationOutcome.UNCHANGED:
                    changed.append(item_id)
        return changed

    async def delete_assignments(self, kind, *, source, user_ids=None, item_ids=None):
        users, items = _as_set(user_ids), _as_set(item_ids)
        async with self.transaction():
            rows = self.assignments[kind]
            doomed = [
                key for key, row in rows.items()
                if row.source == source
                and (users is None or row.user_id in users)
                and (items is None or row.item_id in items)
            ]
            for key in doomed:
                del rows[key]
            return len(doomed)

    async def ensure_member_assignments(self, kind, user_type_id, item_id, assigned_by=None):
        changed = []
        async with self.transaction():
            for user_id in await self.list_member_ids(user_type_id):
                outcome = await self.set_assignment_state(
                    kind, user_id, item_id, AssignmentSource.USERTYPE, active=True, assigned_by=assigned_by
                )
                if outcome != MutationOutcome.UNCHANGED:
                    changed.append(user_id)
        return changed

    async def delete_member_assignments(self, kind, user_type_id, item_ids):
        items = set(item_ids)
        async with self.transaction():
            members = set(await self.list_member_ids(user_type_id))
            rows = self.assignments[kind]
            doomed = [
                key for key, row in rows.items()
                if row.source == AssignmentSource.USERTYPE
                and row.user_id in members
                and row.item_id in items
            ]
            for key in doomed:
                del rows[key]
            return [user_id for user_id, _, _ in doomed]

    async def delete_all_user_assignments(self, user_ids):
        users = set(user_ids)
        deleted = 0
        async with self.transaction():
            for kind in ItemKind:
                rows = self.assignments[kind]
                doomed = [key for key, row in rows.items() if row.user_id in users]
                for key in doomed:
                    del rows[key]
                deleted += len(doomed)
        return deleted

    # TypeLinkStore

    async def get_linked_item_ids(self, kind, user_type_id):
        async with self._read():
            return sorted(item_id for type_id, item_id in self.links[kind] if type_id == user_type_id)

    async def link_exists(self, kind, user_type_id, item_id):
        async with self._read():
            return (user_type_id, item_id) in self.links[kind]

    async def create_link(self, kind, user_type_id, item_id):
        async with self.transaction():
            if (user_type_id, item_id) in self.links[kind]:
                return False
            self.add_link(kind, user_type_id, item_id)
            return True

    async def delete_link(self, kind, user_type_id, item_id):
        async with self.transaction():
            return self.links[kind].pop((user_type_id, item_id), None) is not None

    async def delete_links_for_type(self, user_type_id):
        deleted = 0
        async with self.transaction():
            for kind in ItemKind:
                doomed = [key for key in self.links[kind] if key[0] == user_type_id]
                for key in doomed:
                    del self.links[kind][key]
                deleted += len(doomed)
        return deleted

    # UserDirectory

    async def get_user(self, user_id):
        async with self._read():
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    async def existing_user_ids(self, user_ids):
        async with self._read():
            return {user_id for user_id in user_ids if user_id in self.users}

    async def list_member_ids(self, user_type_id):
        async with self._read():
            return sorted(u.user_id for u in self.users.values() if u.user_type_id == user_type_id)

    async def update_user(self, user_id, updates):
        async with self.transaction():
            user = self.users.get(user_id)
            if user is None:
                raise NotFoundError("User", user_id)
            fields = dict(updates)
            if "user_type_id" in fields:
                user.user_type_id = fields.pop("user_type_id")
            user.profile.update(fields)
            user.updated_at = utcnow()
            return copy.deepcopy(user)

    async def delete_users(self, user_ids):
        async with self.transaction():
            doomed = [user_id for user_id in dict.fromkeys(user_ids) if user_id in self.users]
            for user_id in doomed:
                del self.users[user_id]
            return len(doomed)

    async def user_type_exists(self, user_type_id):
        async with self._read():
            return user_type_id in self.user_types

    async def detach_members(self, user_type_id):
        async with self.transaction():
            detached = []
            for user in self.users.values():
                if user.user_type_id == user_type_id:
                    user.user_type_id = None
                    user.updated_at = utcnow()
                    detached.append(user.user_id)
            return sorted(detached)

    async def delete_user_type(self, user_type_id):
        async with self.transaction():
            if user_type_id not in self.user_types:
                return False
            del self.user_types[user_type_id]
            return True

    async def existing_item_ids(self, kind, item_ids):
        async with self._read():
            return {item_id for item_id in item_ids if item_id in self.items[kind]}

    async def get_stats(self):
        async with self._read():
            return {
                "backend": self.name,
                "users": len(self.users),
                "user_types": len(self.user_types),
                **{
                    f"{kind.value}_assignments": len(self.assignments[kind]) for kind in ItemKind
                },
                **{
                    f"{kind.value}_links": len(self.links[kind]) for kind in ItemKind
                },
            }
