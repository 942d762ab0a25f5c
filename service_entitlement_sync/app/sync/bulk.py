"""
Bulk operations over many users and many items with partial-failure reporting.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import (
    NotFoundError, StoreError, StoreUnavailableError, TransientStoreError, ValidationError
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry
from shared.tracing import add_span_attributes, trace_operation
from ..persistence.base import EntitlementStore
from .engine import SyncEngine
from .models import (
    AssignmentSource, BulkAssignResponse, BulkDeassignResponse, BulkDeleteResponse, BulkEditResponse,
    ItemKind, MutationOutcome, PairFailure, PairFailureModel, PairModel, PairOutcome, ProgramSyncModel,
    SyncResult, UserRecord
)

USER_TYPE_KEYS = ("userTypeId", "user_type_id")

# Pairs listed by name in the deassign message
MESSAGE_PAIR_LIMIT = 10


def _failure_models(failures: List[PairFailure]) -> List[PairFailureModel]:
    return [
        PairFailureModel(user_id=f.user_id, item_id=f.item_id, code=f.code, reason=f.reason)
        for f in failures
    ]


@dataclass
class BulkAssignResult:
    count: int = 0
    skipped: int = 0
    failed: List[PairFailure] = field(default_factory=list)
    affected_user_ids: Set[str] = field(default_factory=set)

    @property
    def message(self) -> str:
        message = f"Assigned {self.count} item(s)."
        if self.skipped:
            message += f" {self.skipped} already assigned."
        if self.failed:
            message += f" {len(self.failed)} failed."
        return message

    def to_response(self) -> BulkAssignResponse:
        return BulkAssignResponse(
            count=self.count,
            skipped=self.skipped,
            failed=_failure_models(self.failed),
            message=self.message,
        )


@dataclass
class BulkDeassignResult:
    kind: ItemKind = ItemKind.PROGRAM
    deactivated: int = 0
    skipped_pairs: List[Tuple[str, str]] = field(default_factory=list)
    failed: List[PairFailure] = field(default_factory=list)
    affected_user_ids: Set[str] = field(default_factory=set)

    @property
    def skipped_user_type_assignments(self) -> int:
        return len(self.skipped_pairs)

    @property
    def message(self) -> str:
        if not self.skipped_pairs:
            return f"Successfully deactivated {self.deactivated} {self.kind.value} assignment(s)."

        named = ", ".join(f"{user_id}/{item_id}" for user_id, item_id in self.skipped_pairs[:MESSAGE_PAIR_LIMIT])
        extra = len(self.skipped_pairs) - MESSAGE_PAIR_LIMIT
        if extra > 0:
            named += f" and {extra} more"
        return (
            f"Deactivated {self.deactivated} manual assignment(s). "
            f"{self.skipped_user_type_assignments} User Type inherited assignment(s) were not removed: {named}. "
            "Edit the User Type's links or the user's type to remove inherited access."
        )

    def to_response(self) -> BulkDeassignResponse:
        return BulkDeassignResponse(
            deactivated=self.deactivated,
            skipped_user_type_assignments=self.skipped_user_type_assignments,
            skipped_pairs=[PairModel(user_id=u, item_id=i) for u, i in self.skipped_pairs],
            failed=_failure_models(self.failed),
            message=self.message,
        )


@dataclass
class BulkEditResult:
    count: int = 0
    type_change: bool = False
    synced: int = 0
    sync: SyncResult = field(default_factory=SyncResult)
    failed: List[PairFailure] = field(default_factory=list)

    @property
    def affected_user_ids(self) -> Set[str]:
        return self.sync.affected_user_ids

    @property
    def program_sync(self) -> Optional[ProgramSyncModel]:
        if not self.type_change:
            return None
        return ProgramSyncModel(
            synced=self.synced,
            added=self.sync.added,
            removed=self.sync.removed,
            preserved=self.sync.preserved,
        )

    @property
    def message(self) -> str:
        if self.type_change:
            message = (
                f"Updated {self.count} user(s). Programs were synced for {self.synced} user(s): "
                f"+{self.sync.added}, -{self.sync.removed}, {self.sync.preserved} preserved."
            )
        else:
            message = f"Successfully updated {self.count} user(s)."
        if self.failed:
            message += f" {len(self.failed)} failed."
        return message

    def to_response(self) -> BulkEditResponse:
        return BulkEditResponse(
            count=self.count,
            failed=_failure_models(self.failed),
            program_sync=self.program_sync,
            message=self.message,
        )


@dataclass
class UserEditResult:
    user: UserRecord
    sync: Optional[SyncResult] = None


@dataclass
class BulkDeleteResult:
    count: int = 0
    deleted_assignments: int = 0
    failed: List[PairFailure] = field(default_factory=list)
    affected_user_ids: Set[str] = field(default_factory=set)

    @property
    def message(self) -> str:
        message = f"Successfully deleted {self.count} user(s)."
        if self.failed:
            message += f" {len(self.failed)} failed."
        return message

    def to_response(self) -> BulkDeleteResponse:
        return BulkDeleteResponse(
            count=self.count,
            deleted_assignments=self.deleted_assignments,
            failed=_failure_models(self.failed),
            message=self.message,
        )


class BulkOperationCoordinator:
    """Applies administrator actions across users and items.

    Each pair (assign, deassign) or user (edit, delete) commits on its own.
    Unknown ids and per-write store errors are collected as failures; only an
    unreachable store aborts the call, and work already committed stays.
    """

    def __init__(self, store: EntitlementStore, engine: SyncEngine,
                 metrics: Optional[MetricsCollector] = None, max_bulk_pairs: int = 50000,
                 retry_config: Optional[RetryConfig] = None):
        self.store = store
        self.engine = engine
        self.metrics = metrics
        self.max_bulk_pairs = max_bulk_pairs
        self.retry_config = retry_config or engine.retry_config
        self.logger = get_logger("entitlements.sync.bulk")

    # Helpers

    async def _with_retry(self, func, *args, **kwargs):
        try:
            return await call_with_retry(
                func, *args, exceptions=(TransientStoreError,), config=self.retry_config, **kwargs
            )
        except RetryError as e:
            raise StoreUnavailableError(
                f"Store unavailable after {e.attempts} attempts",
                {"error": str(e.last_exception)}
            ) from e

    def _record(self, operation: str, outcome: PairOutcome):
        if self.metrics:
            self.metrics.record_bulk_pair(operation, outcome.value)

    def _require_ids(self, name: str, ids: Iterable[str]) -> List[str]:
        """Drop blanks and duplicates, keeping request order."""
        unique = list(dict.fromkeys(i for i in ids if i))
        if not unique:
            raise ValidationError(f"{name} are required", {"field": name})
        return unique

    def _check_batch_size(self, users: List[str], items: List[str]):
        pairs = len(users) * len(items)
        if pairs > self.max_bulk_pairs:
            raise ValidationError(
                f"Bulk request spans {pairs} pairs; the limit is {self.max_bulk_pairs}",
                {"pairs": pairs, "max_bulk_pairs": self.max_bulk_pairs}
            )

    @staticmethod
    def _clean_updates(updates: Dict[str, Any]) -> Dict[str, Any]:
        """Normalize an update payload.

        Blank values are dropped except for the user type, where a blank or
        null value clears the type.
        """
        cleaned: Dict[str, Any] = {}
        for key, value in (updates or {}).items():
            if key in USER_TYPE_KEYS:
                cleaned["user_type_id"] = value or None
            elif value is not None and value != "":
                cleaned[key] = value

        if not cleaned:
            raise ValidationError("No valid updates provided")
        return cleaned

    async def _resolve_users(self, user_ids: List[str], failures: List[PairFailure]) -> List[str]:
        existing = await self._with_retry(self.store.existing_user_ids, user_ids)
        for user_id in user_ids:
            if user_id not in existing:
                failures.append(PairFailure(f"User not found: {user_id}", "NOT_FOUND", user_id=user_id))
        return [user_id for user_id in user_ids if user_id in existing]

    async def _resolve_items(self, kind: ItemKind, item_ids: List[str], failures: List[PairFailure]) -> List[str]:
        existing = await self._with_retry(self.store.existing_item_ids, kind, item_ids)
        for item_id in item_ids:
            if item_id not in existing:
                failures.append(
                    PairFailure(f"{kind.value.title()} not found: {item_id}", "NOT_FOUND", item_id=item_id)
                )
        return [item_id for item_id in item_ids if item_id in existing]

    # Assign / deassign

    async def bulk_assign(self, user_ids: Iterable[str], item_ids: Iterable[str],
                          kind: ItemKind = ItemKind.PROGRAM, assigned_by: Optional[str] = None) -> BulkAssignResult:
        """Give every (user, item) pair an active manual row.

        Pairs that already hold an active manual row are skipped. Inherited
        rows are not inspected, so a usertype-satisfied pair becomes dual.
        """
        users = self._require_ids("User IDs", user_ids)
        items = self._require_ids(f"{kind.value.title()} IDs", item_ids)
        self._check_batch_size(users, items)

        result = BulkAssignResult()
        with trace_operation("bulk.assign", item_kind=kind.value, users=len(users), items=len(items)):
            users = await self._resolve_users(users, result.failed)
            items = await self._resolve_items(kind, items, result.failed)
            if users and items:
                rows = await self._with_retry(
                    self.store.find_assignments, kind, user_ids=users, item_ids=items,
                    source=AssignmentSource.MANUAL, active=True
                )
                satisfied = {(row.user_id, row.item_id) for row in rows}

                for user_id in users:
                    for item_id in items:
                        if (user_id, item_id) in satisfied:
                            result.skipped += 1
                            self._record("bulk_assign", PairOutcome.ALREADY_SATISFIED)
                            continue
                        await self._assign_pair(kind, user_id, item_id, assigned_by, result)

            add_span_attributes(count=result.count, skipped=result.skipped, failed=len(result.failed))

        if self.metrics:
            self.metrics.record_row_changes(kind.value, AssignmentSource.MANUAL.value, "activated", result.count)
        self.logger.info(
            "Bulk assign completed",
            item_kind=kind.value,
            count=result.count,
            skipped=result.skipped,
            failed=len(result.failed)
        )
        return result

    async def _assign_pair(self, kind, user_id, item_id, assigned_by, result: BulkAssignResult):
        try:
            outcome = await self._with_retry(
                self.store.set_assignment_state, kind, user_id, item_id, AssignmentSource.MANUAL,
                active=True, assigned_by=assigned_by
            )
        except StoreError as e:
            result.failed.append(PairFailure(e.message, e.code, user_id=user_id, item_id=item_id))
            self._record("bulk_assign", PairOutcome.FAILED)
            self.logger.warning("Bulk assign pair failed", user_id=user_id, item_id=item_id, error=e.message)
            return

        if outcome == MutationOutcome.UNCHANGED:
            result.skipped += 1
            self._record("bulk_assign", PairOutcome.ALREADY_SATISFIED)
            return

        result.count += 1
        result.affected_user_ids.add(user_id)
        self._record(
            "bulk_assign",
            PairOutcome.CREATED if outcome == MutationOutcome.CREATED else PairOutcome.REACTIVATED
        )

    async def bulk_deassign(self, user_ids: Iterable[str], item_ids: Iterable[str],
                            kind: ItemKind = ItemKind.PROGRAM) -> BulkDeassignResult:
        """Deactivate manual rows; leave inherited grants alone and report them."""
        users = self._require_ids("User IDs", user_ids)
        items = self._require_ids(f"{kind.value.title()} IDs", item_ids)
        self._check_batch_size(users, items)

        result = BulkDeassignResult(kind=kind)
        with trace_operation("bulk.deassign", item_kind=kind.value, users=len(users), items=len(items)):
            users = await self._resolve_users(users, result.failed)
            items = await self._resolve_items(kind, items, result.failed)
            if users and items:
                rows = await self._with_retry(
                    self.store.find_assignments, kind, user_ids=users, item_ids=items, active=True
                )
                active_sources: Dict[Tuple[str, str], Set[AssignmentSource]] = {}
                for row in rows:
                    active_sources.setdefault((row.user_id, row.item_id), set()).add(row.source)

                for user_id in users:
                    for item_id in items:
                        sources = active_sources.get((user_id, item_id), set())
                        if AssignmentSource.MANUAL in sources:
                            await self._deassign_pair(kind, user_id, item_id, result)
                        elif AssignmentSource.USERTYPE in sources:
                            result.skipped_pairs.append((user_id, item_id))
                            self._record("bulk_deassign", PairOutcome.PROTECTED_GRANT)
                        else:
                            self._record("bulk_deassign", PairOutcome.NOT_ASSIGNED)

            add_span_attributes(
                deactivated=result.deactivated,
                skipped_user_type=result.skipped_user_type_assignments,
                failed=len(result.failed)
            )

        if self.metrics:
            self.metrics.record_row_changes(
                kind.value, AssignmentSource.MANUAL.value, "deactivated", result.deactivated
            )
        self.logger.info(
            "Bulk deassign completed",
            item_kind=kind.value,
            deactivated=result.deactivated,
            skipped_user_type=result.skipped_user_type_assignments,
            failed=len(result.failed)
        )
        return result

    async def _deassign_pair(self, kind, user_id, item_id, result: BulkDeassignResult):
        try:
            outcome = await self._with_retry(
                self.store.set_assignment_state, kind, user_id, item_id, AssignmentSource.MANUAL, active=False
            )
        except StoreError as e:
            result.failed.append(PairFailure(e.message, e.code, user_id=user_id, item_id=item_id))
            self._record("bulk_deassign", PairOutcome.FAILED)
            self.logger.warning("Bulk deassign pair failed", user_id=user_id, item_id=item_id, error=e.message)
            return

        if outcome == MutationOutcome.DEACTIVATED:
            result.deactivated += 1
            result.affected_user_ids.add(user_id)
            self._record("bulk_deassign", PairOutcome.DEACTIVATED)
        else:
            self._record("bulk_deassign", PairOutcome.NOT_ASSIGNED)

    # User edits

    async def _edit_one(self, user_id: str, updates: Dict[str, Any],
                        assigned_by: Optional[str]) -> UserEditResult:
        async with self.store.transaction():
            user = await self.store.get_user(user_id)
            if user is None:
                raise NotFoundError("User", user_id)

            old_type_id = user.user_type_id
            updated = await self.store.update_user(user_id, updates)

            sync = None
            if "user_type_id" in updates and updated.user_type_id != old_type_id:
                sync = await self.engine.apply_user_type_change(
                    user_id, old_type_id, updated.user_type_id, assigned_by
                )
            return UserEditResult(user=updated, sync=sync)

    async def _run_edit(self, user_id: str, updates: Dict[str, Any],
                        assigned_by: Optional[str]) -> UserEditResult:
        """Run ``_edit_one`` with retries, recording a type change as a sync run."""
        if "user_type_id" not in updates:
            return await self._with_retry(self._edit_one, user_id, updates, assigned_by)

        start_time = time.time()
        status = "error"
        try:
            result = await self._with_retry(self._edit_one, user_id, updates, assigned_by)
            status = "success" if result.sync is not None else None
            return result
        except StoreUnavailableError:
            status = "unavailable"
            raise
        except NotFoundError:
            status = "not_found"
            raise
        finally:
            # None: the user already had the requested type
            if self.metrics and status is not None:
                self.metrics.record_sync("user_type_changed", status, time.time() - start_time)

    async def edit_user(self, user_id: str, updates: Dict[str, Any],
                        assigned_by: Optional[str] = None) -> UserEditResult:
        """Update one user and sync their inherited rows if the type changed."""
        cleaned = self._clean_updates(updates)
        new_type_id = cleaned.get("user_type_id")
        if new_type_id and not await self._with_retry(self.store.user_type_exists, new_type_id):
            raise NotFoundError("UserType", new_type_id)

        with trace_operation("user.edit", user_id=user_id):
            result = await self._run_edit(user_id, cleaned, assigned_by)

        if result.sync is not None:
            self.logger.info(
                "User type change synced",
                user_id=user_id,
                new_type_id=new_type_id,
                added=result.sync.added,
                removed=result.sync.removed,
                preserved=result.sync.preserved
            )
        return result

    async def bulk_edit_users(self, user_ids: Iterable[str], updates: Dict[str, Any],
                              assigned_by: Optional[str] = None) -> BulkEditResult:
        """Apply the same field updates to many users.

        A ``userTypeId`` entry reassigns each user whose type differs and syncs
        that user's inherited rows in the same transaction as the update.
        """
        users = self._require_ids("User IDs", user_ids)
        cleaned = self._clean_updates(updates)

        result = BulkEditResult(type_change="user_type_id" in cleaned)
        new_type_id = cleaned.get("user_type_id")

        with trace_operation("bulk.edit", users=len(users), type_change=result.type_change):
            users = await self._resolve_users(users, result.failed)

            if new_type_id and not await self._with_retry(self.store.user_type_exists, new_type_id):
                # Unknown target type: record per existing user and still apply the other fields
                cleaned.pop("user_type_id")
                result.type_change = False
                for user_id in users:
                    result.failed.append(
                        PairFailure(f"UserType not found: {new_type_id}", "NOT_FOUND", user_id=user_id)
                    )

            if cleaned:
                for user_id in users:
                    await self._edit_member(user_id, cleaned, assigned_by, result)

            add_span_attributes(count=result.count, synced=result.synced, failed=len(result.failed))

        self.logger.info(
            "Bulk edit completed",
            count=result.count,
            synced=result.synced,
            added=result.sync.added,
            removed=result.sync.removed,
            preserved=result.sync.preserved,
            failed=len(result.failed)
        )
        return result

    async def _edit_member(self, user_id: str, updates: Dict[str, Any], assigned_by: Optional[str],
                           result: BulkEditResult):
        try:
            edit = await self._run_edit(user_id, updates, assigned_by)
        except (StoreError, NotFoundError) as e:
            result.failed.append(PairFailure(e.message, e.code, user_id=user_id))
            self._record("bulk_edit", PairOutcome.FAILED)
            self.logger.warning("Bulk edit user failed", user_id=user_id, error=e.message)
            return

        result.count += 1
        if edit.sync is not None:
            result.synced += 1
            result.sync.merge(edit.sync)
            self._record("bulk_edit", PairOutcome.CREATED if edit.sync.added else PairOutcome.ALREADY_SATISFIED)
        else:
            self._record("bulk_edit", PairOutcome.ALREADY_SATISFIED)

    # User deletion

    async def bulk_delete_users(self, user_ids: Iterable[str],
                                acting_user_id: Optional[str] = None) -> BulkDeleteResult:
        """Delete users with every assignment row they hold."""
        users = self._require_ids("User IDs", user_ids)
        if acting_user_id and acting_user_id in users:
            raise ValidationError("You cannot delete your own account", {"user_id": acting_user_id})

        result = BulkDeleteResult()
        with trace_operation("bulk.delete_users", users=len(users)):
            users = await self._resolve_users(users, result.failed)
            for user_id in users:
                try:
                    deleted_rows, deleted = await self._with_retry(self._delete_one, user_id)
                except StoreError as e:
                    result.failed.append(PairFailure(e.message, e.code, user_id=user_id))
                    self._record("bulk_delete", PairOutcome.FAILED)
                    self.logger.warning("Bulk delete user failed", user_id=user_id, error=e.message)
                    continue

                result.count += deleted
                result.deleted_assignments += deleted_rows
                result.affected_user_ids.add(user_id)
                self._record("bulk_delete", PairOutcome.DEACTIVATED)

        self.logger.info(
            "Bulk delete completed",
            count=result.count,
            deleted_assignments=result.deleted_assignments,
            failed=len(result.failed)
        )
        return result

    async def _delete_one(self, user_id: str) -> Tuple[int, int]:
        async with self.store.transaction():
            deleted_rows = await self.store.delete_all_user_assignments([user_id])
            deleted = await self.store.delete_users([user_id])
            return deleted_rows, deleted
