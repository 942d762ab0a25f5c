"""
Data models for entitlement synchronization.
"""

from typing import Dict, Any, Optional, List, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ItemKind(str, Enum):
    """Kinds of content a user can be entitled to."""
    PROGRAM = "program"
    COURSE = "course"

    @property
    def collection(self) -> str:
        """Plural path segment used by the HTTP layer."""
        return f"{self.value}s"

    @classmethod
    def from_collection(cls, collection: str) -> "ItemKind":
        for kind in cls:
            if kind.collection == collection:
                return kind
        raise ValueError(f"Unknown item collection: {collection}")


class AssignmentSource(str, Enum):
    """Provenance of a stored assignment row."""
    MANUAL = "manual"
    USERTYPE = "usertype"


class Provenance(str, Enum):
    """Derived classification of a (user, item) pair."""
    MANUAL = "manual"
    USERTYPE = "usertype"
    DUAL = "dual"
    NONE = "none"


class MutationOutcome(str, Enum):
    """Result of a set-to-target write on a single assignment row."""
    CREATED = "created"
    REACTIVATED = "reactivated"
    DEACTIVATED = "deactivated"
    UNCHANGED = "unchanged"


class PairOutcome(str, Enum):
    """Outcome of one (user, item) pair inside a bulk operation."""
    CREATED = "created"
    REACTIVATED = "reactivated"
    DEACTIVATED = "deactivated"
    ALREADY_SATISFIED = "already_satisfied"
    PROTECTED_GRANT = "protected_grant"
    NOT_ASSIGNED = "not_assigned"
    FAILED = "failed"


@dataclass
class Assignment:
    """A per-user grant (ProgramAssignment or CourseAssignment row)."""
    user_id: str
    item_id: str
    kind: ItemKind
    source: AssignmentSource
    is_active: bool = True
    assigned_at: datetime = field(default_factory=utcnow)
    assigned_by: Optional[str] = None

    @property
    def key(self) -> Tuple[str, str, AssignmentSource]:
        return (self.user_id, self.item_id, self.source)


@dataclass
class TypeLink:
    """Declares that every member of ``user_type_id`` is entitled to ``item_id``."""
    user_type_id: str
    item_id: str
    kind: ItemKind
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class UserRecord:
    """The slice of a user the engine reads and writes."""
    user_id: str
    user_type_id: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SyncResult:
    """Row changes applied by one sync trigger."""
    added: int = 0
    removed: int = 0
    preserved: int = 0
    link_changed: bool = False
    affected_user_ids: Set[str] = field(default_factory=set)

    def merge(self, other: "SyncResult") -> "SyncResult":
        self.added += other.added
        self.removed += other.removed
        self.preserved += other.preserved
        self.link_changed = self.link_changed or other.link_changed
        self.affected_user_ids |= other.affected_user_ids
        return self


@dataclass
class PairFailure:
    """A bulk-operation failure for one user, one item, or one pair."""
    reason: str
    code: str
    user_id: Optional[str] = None
    item_id: Optional[str] = None


# HTTP request/response models. JSON uses camelCase, Python uses snake_case.

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BulkAssignmentRequest(ApiModel):
    """Request model for bulk assign / deassign."""
    user_ids: List[str] = Field(..., description="Users to act on")
    item_ids: List[str] = Field(..., description="Programs or courses to act on")
    item_kind: ItemKind = Field(..., description="Kind of the items")
    assigned_by: Optional[str] = Field(None, description="Administrator performing the change")


class BulkEditRequest(ApiModel):
    """Request model for bulk user edits."""
    user_ids: List[str] = Field(..., description="Users to update")
    updates: Dict[str, Any] = Field(..., description="Field updates; userTypeId triggers sync")
    assigned_by: Optional[str] = Field(None, description="Administrator performing the change")


class UserEditRequest(ApiModel):
    """Request model for a single-user edit."""
    updates: Dict[str, Any] = Field(..., description="Field updates; userTypeId triggers sync")
    assigned_by: Optional[str] = Field(None, description="Administrator performing the change")


class BulkDeleteRequest(ApiModel):
    """Request model for bulk user deletion."""
    user_ids: List[str] = Field(..., description="Users to delete")
    acting_user_id: Optional[str] = Field(None, description="Administrator issuing the delete")


class TypeLinkRequest(ApiModel):
    """Request model for linking an item to a user type."""
    item_id: str = Field(..., description="Program or course ID")
    assigned_by: Optional[str] = Field(None, description="Administrator performing the change")


class PairFailureModel(ApiModel):
    user_id: Optional[str] = None
    item_id: Optional[str] = None
    code: str
    reason: str


class PairModel(ApiModel):
    user_id: str
    item_id: str


class BulkAssignResponse(ApiModel):
    count: int
    skipped: int = 0
    failed: List[PairFailureModel] = Field(default_factory=list)
    message: Optional[str] = None


class BulkDeassignResponse(ApiModel):
    deactivated: int
    skipped_user_type_assignments: int
    skipped_pairs: List[PairModel] = Field(default_factory=list)
    failed: List[PairFailureModel] = Field(default_factory=list)
    message: Optional[str] = None


class ProgramSyncModel(ApiModel):
    synced: int
    added: int = 0
    removed: int = 0
    preserved: int = 0


class BulkEditResponse(ApiModel):
    count: int
    failed: List[PairFailureModel] = Field(default_factory=list)
    program_sync: Optional[ProgramSyncModel] = None
    message: Optional[str] = None


class BulkDeleteResponse(ApiModel):
    count: int
    deleted_assignments: int = 0
    failed: List[PairFailureModel] = Field(default_factory=list)
    message: Optional[str] = None


class UserResponse(ApiModel):
    id: str
    user_type_id: Optional[str]
    profile: Dict[str, Any]
    updated_at: datetime
    program_sync: Optional[ProgramSyncModel] = None


class AssignmentRowResponse(ApiModel):
    item_id: str
    item_kind: ItemKind
    source: AssignmentSource
    is_active: bool
    assigned_at: datetime
    assigned_by: Optional[str] = None


class UserEntitlementsResponse(ApiModel):
    user_id: str
    programs: Dict[str, Provenance] = Field(default_factory=dict)
    courses: Dict[str, Provenance] = Field(default_factory=dict)


class SyncResponse(ApiModel):
    added: int
    removed: int
    preserved: int = 0


class TypeLinkResponse(ApiModel):
    user_type_id: str
    item_kind: ItemKind
    item_id: str
    created: bool
    synced_users: int


class TypeLinkListResponse(ApiModel):
    user_type_id: str
    item_kind: ItemKind
    item_ids: List[str]


class UnlinkResponse(ApiModel):
    success: bool = True
    removed: int = 0


class UserTypeDeletionImpact(ApiModel):
    user_type_id: str
    affected_users: int
    linked_programs: List[str] = Field(default_factory=list)
    linked_courses: List[str] = Field(default_factory=list)
    inherited_assignments_to_delete: int = 0
    users_losing_all_access: int = 0
    users_with_manual_assignments: int = 0
    warning: Optional[str] = None


class UserTypeDeletionResponse(ApiModel):
    user_type_id: str
    affected_users: int
    deleted_assignments: int
    deleted_links: int
