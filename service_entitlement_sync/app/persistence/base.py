"""
Storage contracts for entitlement synchronization.

The stores hold no business rules. Every write is expressed as "set to target
state" (upsert, delete-if-match) so that a trigger interrupted part way can be
re-run and two writers touching the same row converge.
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncContextManager, Dict, Iterable, List, Optional, Set

from ..sync.models import (
    Assignment, AssignmentSource, ItemKind, MutationOutcome, UserRecord
)


class AssignmentStore(ABC):
    """Per-user grants tagged with provenance and an active flag."""

    @abstractmethod
    async def find_assignments(
        self,
        kind: ItemKind,
        *,
        user_ids: Optional[Iterable[str]] = None,
        item_ids: Optional[Iterable[str]] = None,
        source: Optional[AssignmentSource] = None,
        active: Optional[bool] = None,
    ) -> List[Assignment]:
        """Return rows matching every given filter."""

    @abstractmethod
    async def set_assignment_state(
        self,
        kind: ItemKind,
        user_id: str,
        item_id: str,
        source: AssignmentSource,
        *,
        active: bool,
        assigned_by: Optional[str] = None,
    ) -> MutationOutcome:
        """Drive one row to ``active``.

        Activating creates the row or reactivates an inactive one. Deactivating
        never creates a row.
        """

    @abstractmethod
    async def ensure_user_assignments(
        self,
        kind: ItemKind,
        user_id: str,
        item_ids: Iterable[str],
        source: AssignmentSource,
        assigned_by: Optional[str] = None,
    ) -> List[str]:
        """Make an active row exist for each item. Returns item IDs created or reactivated."""

    @abstractmethod
    async def delete_assignments(
        self,
        kind: ItemKind,
        *,
        source: AssignmentSource,
        user_ids: Optional[Iterable[str]] = None,
        item_ids: Optional[Iterable[str]] = None,
    ) -> int:
        """Hard-delete matching rows of one source. Returns the number deleted."""

    @abstractmethod
    async def ensure_member_assignments(
        self,
        kind: ItemKind,
        user_type_id: str,
        item_id: str,
        assigned_by: Optional[str] = None,
    ) -> List[str]:
        """Give every member of the type an active usertype row for the item.

        Returns the user IDs whose row was created or reactivated.
        """

    @abstractmethod
    async def delete_member_assignments(
        self,
        kind: ItemKind,
        user_type_id: str,
        item_ids: Iterable[str],
    ) -> List[str]:
        """Hard-delete usertype rows for the items across all members of the type.

        Returns one user ID per deleted row.
        """

    @abstractmethod
    async def delete_all_user_assignments(self, user_ids: Iterable[str]) -> int:
        """Remove every row, of every kind and source, for the users."""


class TypeLinkStore(ABC):
    """Per-User-Type content links."""

    @abstractmethod
    async def get_linked_item_ids(self, kind: ItemKind, user_type_id: str) -> List[str]:
        """Items linked to the type."""

    @abstractmethod
    async def link_exists(self, kind: ItemKind, user_type_id: str, item_id: str) -> bool:
        """Whether the link row exists."""

    @abstractmethod
    async def create_link(self, kind: ItemKind, user_type_id: str, item_id: str) -> bool:
        """Create the link if missing. Returns True when a row was inserted."""

    @abstractmethod
    async def delete_link(self, kind: ItemKind, user_type_id: str, item_id: str) -> bool:
        """Delete the link if present. Returns True when a row was removed."""

    @abstractmethod
    async def delete_links_for_type(self, user_type_id: str) -> int:
        """Delete every link of the type, both kinds."""


class UserDirectory(ABC):
    """The collaborator-owned user, user type and content tables."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def existing_user_ids(self, user_ids: Iterable[str]) -> Set[str]:
        ...

    @abstractmethod
    async def list_member_ids(self, user_type_id: str) -> List[str]:
        ...

    @abstractmethod
    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> UserRecord:
        """Apply profile updates; the ``user_type_id`` key reassigns the type."""

    @abstractmethod
    async def delete_users(self, user_ids: Iterable[str]) -> int:
        ...

    @abstractmethod
    async def user_type_exists(self, user_type_id: str) -> bool:
        ...

    @abstractmethod
    async def detach_members(self, user_type_id: str) -> List[str]:
        """Clear ``user_type_id`` on every member. Returns the detached user IDs."""

    @abstractmethod
    async def delete_user_type(self, user_type_id: str) -> bool:
        ...

    @abstractmethod
    async def existing_item_ids(self, kind: ItemKind, item_ids: Iterable[str]) -> Set[str]:
        ...


class EntitlementStore(AssignmentStore, TypeLinkStore, UserDirectory):
    """A backend implementing every store contract over one transaction scope."""

    name = "store"

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """Scope in which all writes commit or roll back together. Nests."""

    async def start(self):
        """Open connections and create schema."""

    async def stop(self):
        """Release connections."""

    async def health_check(self) -> bool:
        return True

    async def get_stats(self) -> Dict[str, Any]:
        return {}
