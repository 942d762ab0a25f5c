"""
Reconciliation engine for inherited (usertype) assignments.
"""

import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Set, Tuple

from shared.errors import (
    EntitlementServiceException, NotFoundError, StoreUnavailableError, TransientStoreError
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, call_with_retry
from shared.tracing import add_span_attributes, trace_operation
from ..persistence.base import EntitlementStore
from .models import AssignmentSource, ItemKind, SyncResult, UserTypeDeletionImpact, UserTypeDeletionResponse


class SyncEngine:
    """Keeps usertype assignment rows equal to the current User Type links.

    The engine is the only writer of usertype rows and never touches manual
    rows. Each trigger runs in one store transaction; the whole trigger is
    retried on transient store failures, which is safe because every write is
    an upsert or a delete-if-match.
    """

    def __init__(self, store: EntitlementStore, metrics: Optional[MetricsCollector] = None,
                 retry_config: Optional[RetryConfig] = None):
        self.store = store
        self.metrics = metrics
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.05, max_delay=1.0)
        self.logger = get_logger("entitlements.sync.engine")

    # Trigger plumbing

    async def run_in_transaction(self, trigger: str, operation: Callable[..., Awaitable[Any]], *args,
                                 **kwargs) -> Any:
        """Run ``operation`` in a store transaction, retrying transient failures."""
        start_time = time.time()
        status = "success"

        async def attempt():
            async with self.store.transaction():
                return await operation(*args, **kwargs)

        try:
            return await call_with_retry(attempt, exceptions=(TransientStoreError,), config=self.retry_config)
        except RetryError as e:
            status = "unavailable"
            self.logger.error(
                "Sync trigger failed after retries",
                trigger=trigger,
                attempts=e.attempts,
                error=str(e.last_exception)
            )
            raise StoreUnavailableError(
                f"{trigger} failed after {e.attempts} attempts",
                {"trigger": trigger, "error": str(e.last_exception)}
            ) from e
        except EntitlementServiceException as e:
            status = "not_found" if isinstance(e, NotFoundError) else "error"
            raise
        finally:
            if self.metrics:
                self.metrics.record_sync(trigger, status, time.time() - start_time)

    def _record_rows(self, kind: ItemKind, change: str, count: int):
        if self.metrics:
            self.metrics.record_row_changes(kind.value, AssignmentSource.USERTYPE.value, change, count)

    async def _count_manual_grants(self, user_ids: Iterable[str]) -> int:
        user_ids = list(user_ids)
        preserved = 0
        for kind in ItemKind:
            preserved += len(await self.store.find_assignments(
                kind, user_ids=user_ids, source=AssignmentSource.MANUAL, active=True
            ))
        return preserved

    # User type changed

    async def on_user_type_changed(self, user_id: str, old_type_id: Optional[str], new_type_id: Optional[str],
                                   assigned_by: Optional[str] = None) -> SyncResult:
        """Move a user's inherited rows from ``old_type_id`` to ``new_type_id``.

        The caller has already written the new ``user_type_id`` and passes both
        values as they were at the moment of the write.
        """
        with trace_operation("sync.user_type_changed", user_id=user_id,
                             old_type_id=old_type_id, new_type_id=new_type_id):
            result = await self.run_in_transaction(
                "user_type_changed", self._user_type_changed, user_id, old_type_id, new_type_id, assigned_by
            )
            add_span_attributes(added=result.added, removed=result.removed)

        self.logger.info(
            "User type change synced",
            user_id=user_id,
            old_type_id=old_type_id,
            new_type_id=new_type_id,
            added=result.added,
            removed=result.removed,
            preserved=result.preserved
        )
        return result

    async def _user_type_changed(self, user_id, old_type_id, new_type_id, assigned_by):
        if new_type_id and not await self.store.user_type_exists(new_type_id):
            raise NotFoundError("UserType", new_type_id)
        return await self.apply_user_type_change(user_id, old_type_id, new_type_id, assigned_by)

    async def apply_user_type_change(self, user_id: str, old_type_id: Optional[str], new_type_id: Optional[str],
                                     assigned_by: Optional[str] = None) -> SyncResult:
        """Reconcile one user's type change inside the caller's transaction.

        Items linked to both types keep their rows. Rows for items linked only
        to the old type are deleted before rows for the new type's items are
        created or reactivated.
        """
        result = SyncResult()
        if old_type_id == new_type_id:
            return result

        new_links = {}
        for kind in ItemKind:
            old_items = set(await self.store.get_linked_item_ids(kind, old_type_id)) if old_type_id else set()
            new_links[kind] = await self.store.get_linked_item_ids(kind, new_type_id) if new_type_id else []

            stale = sorted(old_items - set(new_links[kind]))
            if stale:
                removed = await self.store.delete_assignments(
                    kind, source=AssignmentSource.USERTYPE, user_ids=[user_id], item_ids=stale
                )
                result.removed += removed
                self._record_rows(kind, "deleted", removed)

        for kind, item_ids in new_links.items():
            if item_ids:
                added = await self.store.ensure_user_assignments(
                    kind, user_id, item_ids, AssignmentSource.USERTYPE, assigned_by
                )
                result.added += len(added)
                self._record_rows(kind, "created", len(added))

        result.preserved = await self._count_manual_grants([user_id])
        if result.added or result.removed:
            result.affected_user_ids.add(user_id)
        return result

    # Links

    async def on_link_added(self, user_type_id: str, kind: ItemKind, item_id: str,
                            assigned_by: Optional[str] = None) -> SyncResult:
        """Create the link if needed and give every member an active inherited row."""
        with trace_operation("sync.link_added", user_type_id=user_type_id, item_kind=kind.value, item_id=item_id):
            result = await self.run_in_transaction(
                "link_added", self._link_added, user_type_id, kind, item_id, assigned_by
            )
            add_span_attributes(added=result.added, link_created=result.link_changed)

        self.logger.info(
            "Link added",
            user_type_id=user_type_id,
            item_kind=kind.value,
            item_id=item_id,
            link_created=result.link_changed,
            members_synced=result.added
        )
        return result

    async def _link_added(self, user_type_id, kind, item_id, assigned_by):
        if not await self.store.user_type_exists(user_type_id):
            raise NotFoundError("UserType", user_type_id)
        if not await self.store.existing_item_ids(kind, [item_id]):
            raise NotFoundError(kind.value.title(), item_id)

        created = await self.store.create_link(kind, user_type_id, item_id)
        user_ids = await self.store.ensure_member_assignments(kind, user_type_id, item_id, assigned_by)
        self._record_rows(kind, "created", len(user_ids))

        return SyncResult(added=len(user_ids), link_changed=created, affected_user_ids=set(user_ids))

    async def on_link_removed(self, user_type_id: str, kind: ItemKind, item_id: str) -> SyncResult:
        """Delete the link, then every member's inherited row for the item.

        Members' manual rows for the item are kept, so a manually granted
        member keeps access.
        """
        with trace_operation("sync.link_removed", user_type_id=user_type_id, item_kind=kind.value, item_id=item_id):
            result = await self.run_in_transaction(
                "link_removed", self._link_removed, user_type_id, kind, item_id
            )
            add_span_attributes(removed=result.removed, link_deleted=result.link_changed)

        self.logger.info(
            "Link removed",
            user_type_id=user_type_id,
            item_kind=kind.value,
            item_id=item_id,
            link_deleted=result.link_changed,
            rows_removed=result.removed
        )
        return result

    async def _link_removed(self, user_type_id, kind, item_id):
        deleted = await self.store.delete_link(kind, user_type_id, item_id)
        user_ids = await self.store.delete_member_assignments(kind, user_type_id, [item_id])
        self._record_rows(kind, "deleted", len(user_ids))

        return SyncResult(removed=len(user_ids), link_changed=deleted, affected_user_ids=set(user_ids))

    # Repair

    async def reconcile_user(self, user_id: str, assigned_by: Optional[str] = None) -> SyncResult:
        """Rebuild one user's inherited rows from the current links of their type."""
        with trace_operation("sync.reconcile_user", user_id=user_id):
            result = await self.run_in_transaction("reconcile_user", self._reconcile_user, user_id, assigned_by)

        if result.added or result.removed:
            self.logger.warning("Reconciled drifted user", user_id=user_id,
                                added=result.added, removed=result.removed)
        return result

    async def _reconcile_user(self, user_id, assigned_by):
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        result = SyncResult()
        for kind in ItemKind:
            linked = (
                set(await self.store.get_linked_item_ids(kind, user.user_type_id))
                if user.user_type_id else set()
            )
            rows = await self.store.find_assignments(kind, user_ids=[user_id], source=AssignmentSource.USERTYPE)
            orphans = sorted({row.item_id for row in rows} - linked)
            if orphans:
                removed = await self.store.delete_assignments(
                    kind, source=AssignmentSource.USERTYPE, user_ids=[user_id], item_ids=orphans
                )
                result.removed += removed
                self._record_rows(kind, "deleted", removed)

        for kind in ItemKind:
            if user.user_type_id:
                linked_ids = await self.store.get_linked_item_ids(kind, user.user_type_id)
                added = await self.store.ensure_user_assignments(
                    kind, user_id, linked_ids, AssignmentSource.USERTYPE, assigned_by
                )
                result.added += len(added)
                self._record_rows(kind, "created", len(added))

        result.preserved = await self._count_manual_grants([user_id])
        if result.added or result.removed:
            result.affected_user_ids.add(user_id)
        return result

    # User type deletion

    async def analyze_user_type_deletion(self, user_type_id: str) -> UserTypeDeletionImpact:
        """Report what deleting a user type would remove, without writing."""
        async with self.store.transaction():
            if not await self.store.user_type_exists(user_type_id):
                raise NotFoundError("UserType", user_type_id)

            member_ids = await self.store.list_member_ids(user_type_id)
            linked = {kind: await self.store.get_linked_item_ids(kind, user_type_id) for kind in ItemKind}

            inherited = 0
            with_fallback: Set[str] = set()
            for kind in ItemKind:
                if not member_ids:
                    break
                inherited += len(await self.store.find_assignments(
                    kind, user_ids=member_ids, source=AssignmentSource.USERTYPE
                ))
                manual_rows = await self.store.find_assignments(
                    kind, user_ids=member_ids, source=AssignmentSource.MANUAL, active=True
                )
                with_fallback.update(row.user_id for row in manual_rows)

        losing_all = len(member_ids) - len(with_fallback)
        return UserTypeDeletionImpact(
            user_type_id=user_type_id,
            affected_users=len(member_ids),
            linked_programs=linked[ItemKind.PROGRAM],
            linked_courses=linked[ItemKind.COURSE],
            inherited_assignments_to_delete=inherited,
            users_losing_all_access=losing_all,
            users_with_manual_assignments=len(with_fallback),
            warning=(
                f"{losing_all} user(s) will lose all program and course access"
                if losing_all else
                "All affected users have manual assignments to fall back on"
            ),
        )

    async def on_user_type_deleted(self, user_type_id: str) -> Tuple[UserTypeDeletionResponse, SyncResult]:
        """Delete a user type together with its links and its members' inherited rows.

        Members are detached (``user_type_id`` cleared) and keep their manual rows.
        Returns ``(response, sync_result)``.
        """
        with trace_operation("sync.user_type_deleted", user_type_id=user_type_id):
            response, result = await self.run_in_transaction(
                "user_type_deleted", self._user_type_deleted, user_type_id
            )

        self.logger.info(
            "User type deleted",
            user_type_id=user_type_id,
            affected_users=response.affected_users,
            deleted_assignments=response.deleted_assignments,
            deleted_links=response.deleted_links
        )
        return response, result

    async def _user_type_deleted(self, user_type_id):
        if not await self.store.user_type_exists(user_type_id):
            raise NotFoundError("UserType", user_type_id)

        member_ids = await self.store.list_member_ids(user_type_id)
        result = SyncResult(affected_user_ids=set(member_ids), link_changed=True)

        if member_ids:
            for kind in ItemKind:
                removed = await self.store.delete_assignments(
                    kind, source=AssignmentSource.USERTYPE, user_ids=member_ids
                )
                result.removed += removed
                self._record_rows(kind, "deleted", removed)

        await self.store.detach_members(user_type_id)
        deleted_links = await self.store.delete_links_for_type(user_type_id)
        await self.store.delete_user_type(user_type_id)

        response = UserTypeDeletionResponse(
            user_type_id=user_type_id,
            affected_users=len(member_ids),
            deleted_assignments=result.removed,
            deleted_links=deleted_links,
        )
        return response, result
