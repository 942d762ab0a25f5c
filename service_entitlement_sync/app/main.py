"""
Entitlement Sync service.
"""

from typing import Dict, Iterable, List, Optional

from fastapi import Query, Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig
from shared.errors import NotFoundError, StoreUnavailableError, ValidationError
from shared.logging import set_actor_context
from shared.observability import get_observability_manager
from shared.retry import RetryConfig

from .cache.redis_cache import AssignmentViewCache
from .persistence import EntitlementStore, build_store
from .sync.bulk import BulkOperationCoordinator
from .sync.engine import SyncEngine
from .sync.models import (
    AssignmentRowResponse, BulkAssignResponse, BulkAssignmentRequest, BulkDeassignResponse,
    BulkDeleteRequest, BulkDeleteResponse, BulkEditRequest, BulkEditResponse, ItemKind,
    ProgramSyncModel, SyncResponse, TypeLinkListResponse, TypeLinkRequest, TypeLinkResponse,
    UnlinkResponse, UserEditRequest, UserEntitlementsResponse, UserResponse,
    UserTypeDeletionImpact, UserTypeDeletionResponse
)
from .sync.provenance import ProvenanceView


def _kind_from_collection(collection: str) -> ItemKind:
    try:
        return ItemKind.from_collection(collection)
    except ValueError:
        raise ValidationError(f"Unknown item collection: {collection}", {"collection": collection}) from None


class EntitlementSyncService(BaseService):
    """Entitlement Sync service implementation."""

    def __init__(self, store: Optional[EntitlementStore] = None,
                 cache: Optional[AssignmentViewCache] = None,
                 config: Optional[ServiceConfig] = None):
        super().__init__("entitlements", 8021, config)

        self.observability = get_observability_manager(
            "entitlements",
            log_level=self.config.log_level,
            otel_exporter=self.config.otel_exporter,
            enable_tracing=self.config.enable_tracing,
            enable_console=self.config.enable_console_tracing,
            metrics=self.metrics
        )

        retry_config = RetryConfig(
            max_attempts=self.config.sync_retry_attempts,
            base_delay=self.config.sync_retry_base_delay,
            max_delay=2.0
        )

        # Initialize components
        self.store = store or build_store(self.config)
        self.cache = cache or AssignmentViewCache(self.config.redis_url, self.config.cache_ttl_seconds)
        self.engine = SyncEngine(self.store, self.metrics, retry_config)
        self.coordinator = BulkOperationCoordinator(
            self.store, self.engine, self.metrics, self.config.max_bulk_pairs, retry_config
        )
        self.provenance = ProvenanceView(self.store)

        self._setup_entitlement_routes()

    async def _invalidate(self, user_ids: Iterable[str]):
        await self.cache.invalidate_users(user_ids)

    async def _require_user(self, user_id: str):
        user = await self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User", user_id)
        return user

    async def _require_user_type(self, user_type_id: str):
        if not await self.store.user_type_exists(user_type_id):
            raise NotFoundError("UserType", user_type_id)

    def _setup_entitlement_routes(self):
        """Set up entitlement-sync routes."""

        @self.app.middleware("http")
        async def request_context(request: Request, call_next):
            self.observability.trace_request(request_id=request.headers.get("X-Request-ID"))
            try:
                return await call_next(request)
            finally:
                self.observability.clear_request_context()

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Entitlement Sync Service",
                "version": "1.0.0",
                "store": self.store.name,
                "capabilities": ["type_sync", "bulk_operations", "provenance", "caching"]
            }

        # Manual assignments

        @self.app.post("/assignments/bulk-assign", response_model=BulkAssignResponse)
        async def bulk_assign(request: BulkAssignmentRequest):
            """Create or reactivate manual assignments for every (user, item) pair."""
            set_actor_context(request.assigned_by)
            result = await self.coordinator.bulk_assign(
                request.user_ids, request.item_ids, request.item_kind, request.assigned_by
            )
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "bulk_assign_completed",
                item_kind=request.item_kind.value,
                count=result.count,
                skipped=result.skipped,
                failed=len(result.failed)
            )
            return result.to_response()

        @self.app.post("/assignments/bulk-deassign", response_model=BulkDeassignResponse)
        async def bulk_deassign(request: BulkAssignmentRequest):
            """Deactivate manual assignments; inherited grants are reported, not touched."""
            set_actor_context(request.assigned_by)
            result = await self.coordinator.bulk_deassign(request.user_ids, request.item_ids, request.item_kind)
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "bulk_deassign_completed",
                item_kind=request.item_kind.value,
                deactivated=result.deactivated,
                skipped_user_type=result.skipped_user_type_assignments,
                failed=len(result.failed)
            )
            return result.to_response()

        @self.app.get("/assignments/matrix")
        async def assignment_matrix(
            user_ids: str = Query(..., alias="userIds", description="Comma-separated user IDs"),
            item_kind: ItemKind = Query(ItemKind.PROGRAM, alias="itemKind", description="Kind of item")
        ) -> Dict[str, Dict[str, str]]:
            """Provenance of every active grant held by the given users."""
            ids = [user_id.strip() for user_id in user_ids.split(",") if user_id.strip()]
            if not ids:
                raise ValidationError("userIds is required", {"field": "userIds"})

            matrix = await self.provenance.assignment_matrix(ids, item_kind)
            return {
                item_id: {user_id: provenance.value for user_id, provenance in users.items()}
                for item_id, users in matrix.items()
            }

        # Users

        @self.app.patch("/users/bulk-edit", response_model=BulkEditResponse)
        async def bulk_edit(request: BulkEditRequest):
            """Update many users; a userTypeId change syncs their inherited assignments."""
            set_actor_context(request.assigned_by)
            result = await self.coordinator.bulk_edit_users(request.user_ids, request.updates, request.assigned_by)
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "bulk_edit_completed",
                count=result.count,
                synced=result.synced,
                failed=len(result.failed)
            )
            return result.to_response()

        @self.app.delete("/users/bulk-delete", response_model=BulkDeleteResponse)
        async def bulk_delete(request: BulkDeleteRequest):
            """Delete users and all of their assignments."""
            set_actor_context(request.acting_user_id)
            result = await self.coordinator.bulk_delete_users(request.user_ids, request.acting_user_id)
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "bulk_delete_completed",
                count=result.count,
                deleted_assignments=result.deleted_assignments,
                failed=len(result.failed)
            )
            return result.to_response()

        @self.app.patch("/users/{user_id}", response_model=UserResponse)
        async def edit_user(user_id: str, request: UserEditRequest):
            """Update one user."""
            set_actor_context(request.assigned_by)
            result = await self.coordinator.edit_user(user_id, request.updates, request.assigned_by)

            program_sync = None
            if result.sync is not None:
                await self._invalidate(result.sync.affected_user_ids)
                program_sync = ProgramSyncModel(
                    synced=1,
                    added=result.sync.added,
                    removed=result.sync.removed,
                    preserved=result.sync.preserved
                )

            return UserResponse(
                id=result.user.user_id,
                user_type_id=result.user.user_type_id,
                profile=result.user.profile,
                updated_at=result.user.updated_at,
                program_sync=program_sync
            )

        @self.app.post("/users/{user_id}/reconcile", response_model=SyncResponse)
        async def reconcile_user(user_id: str):
            """Rebuild a user's inherited assignments from their type's links."""
            result = await self.engine.reconcile_user(user_id)
            await self._invalidate(result.affected_user_ids)
            return SyncResponse(added=result.added, removed=result.removed, preserved=result.preserved)

        @self.app.get("/users/{user_id}/assignments", response_model=List[AssignmentRowResponse])
        async def get_user_assignments(user_id: str):
            """Every stored assignment row for a user."""
            await self._require_user(user_id)
            rows = await self.provenance.user_assignments(user_id)
            return [
                AssignmentRowResponse(
                    item_id=row.item_id,
                    item_kind=row.kind,
                    source=row.source,
                    is_active=row.is_active,
                    assigned_at=row.assigned_at,
                    assigned_by=row.assigned_by
                )
                for row in rows
            ]

        @self.app.get("/users/{user_id}/entitlements", response_model=UserEntitlementsResponse)
        async def get_user_entitlements(user_id: str):
            """Provenance of each item the user can access."""
            view = await self.cache.get_user_entitlements(user_id)
            if view is None:
                generation = await self.cache.get_generation(user_id)
                await self._require_user(user_id)
                view = await self.provenance.user_entitlements(user_id)
                await self.cache.set_user_entitlements(user_id, view, generation)

            return UserEntitlementsResponse(
                user_id=user_id,
                programs=view.get(ItemKind.PROGRAM, {}),
                courses=view.get(ItemKind.COURSE, {})
            )

        # User type links

        @self.app.get("/user-types/{user_type_id}/deletion-impact", response_model=UserTypeDeletionImpact)
        async def user_type_deletion_impact(user_type_id: str):
            """What deleting the user type would remove."""
            return await self.engine.analyze_user_type_deletion(user_type_id)

        @self.app.delete("/user-types/{user_type_id}", response_model=UserTypeDeletionResponse)
        async def delete_user_type(user_type_id: str):
            """Delete a user type, its links and its members' inherited assignments."""
            response, result = await self.engine.on_user_type_deleted(user_type_id)
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "user_type_deleted",
                user_type_id=user_type_id,
                affected_users=response.affected_users,
                deleted_assignments=response.deleted_assignments
            )
            return response

        @self.app.get("/user-types/{user_type_id}/{collection}", response_model=TypeLinkListResponse)
        async def list_type_links(user_type_id: str, collection: str):
            """Items linked to a user type."""
            kind = _kind_from_collection(collection)
            await self._require_user_type(user_type_id)
            item_ids = await self.store.get_linked_item_ids(kind, user_type_id)
            return TypeLinkListResponse(user_type_id=user_type_id, item_kind=kind, item_ids=item_ids)

        @self.app.post("/user-types/{user_type_id}/{collection}", response_model=TypeLinkResponse,
                       status_code=201)
        async def add_type_link(user_type_id: str, collection: str, request: TypeLinkRequest, response: Response):
            """Link an item to a user type and grant it to every member."""
            kind = _kind_from_collection(collection)
            set_actor_context(request.assigned_by)
            result = await self.engine.on_link_added(user_type_id, kind, request.item_id, request.assigned_by)
            await self._invalidate(result.affected_user_ids)

            if not result.link_changed:
                response.status_code = 200

            self.observability.log_business_event(
                "type_link_added",
                user_type_id=user_type_id,
                item_kind=kind.value,
                item_id=request.item_id,
                synced_users=result.added
            )
            return TypeLinkResponse(
                user_type_id=user_type_id,
                item_kind=kind,
                item_id=request.item_id,
                created=result.link_changed,
                synced_users=result.added
            )

        @self.app.delete("/user-types/{user_type_id}/{collection}/{item_id}", response_model=UnlinkResponse)
        async def remove_type_link(user_type_id: str, collection: str, item_id: str):
            """Unlink an item from a user type and revoke members' inherited access to it."""
            kind = _kind_from_collection(collection)
            if not await self.store.link_exists(kind, user_type_id, item_id):
                raise NotFoundError("Link", f"{user_type_id}/{collection}/{item_id}")

            result = await self.engine.on_link_removed(user_type_id, kind, item_id)
            await self._invalidate(result.affected_user_ids)

            self.observability.log_business_event(
                "type_link_removed",
                user_type_id=user_type_id,
                item_kind=kind.value,
                item_id=item_id,
                removed=result.removed
            )
            return UnlinkResponse(success=True, removed=result.removed)

        @self.app.get("/stats")
        async def get_stats():
            """Store and cache statistics."""
            return {
                "store": await self.store.get_stats(),
                "cache": await self.cache.get_cache_stats()
            }

    async def _check_dependencies(self):
        """Check entitlement-sync service dependencies."""
        dependencies = {self.store.name: "ok" if await self.store.health_check() else "error"}

        if self.config.cache_enabled:
            dependencies["redis"] = "ok" if await self.cache.health_check() else "error"

        return dependencies

    async def start(self):
        """Start entitlement-sync service components."""
        await self.store.start()

        if self.config.cache_enabled:
            try:
                await self.cache.start()
            except StoreUnavailableError as e:
                self.observability.log_error(e.code, e.message, component="cache")

        self.logger.info("Entitlement sync service started", store=self.store.name,
                         cache_enabled=self.cache.redis is not None)

    async def stop(self):
        """Stop entitlement-sync service components."""
        await self.cache.stop()
        await self.store.stop()

        self.logger.info("Entitlement sync service stopped")


def create_app():
    """Create entitlement sync service application."""
    service = EntitlementSyncService()
    return service.app


if __name__ == "__main__":
    service = EntitlementSyncService()
    service.run()
