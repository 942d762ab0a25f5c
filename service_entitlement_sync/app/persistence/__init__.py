"""
Persistence package for the Entitlement Sync service.

Stores implement the contracts in ``base``:

- memory: In-process dict store with snapshot rollback, for local runs and tests.
- postgres: asyncpg store; nested transactions map to savepoints.

Backends hold no business rules. The sync engine and bulk coordinator decide
what to write; the store only knows how to write it idempotently.
"""

from shared.config import BaseConfig
from shared.errors import ValidationError
from .base import EntitlementStore
from .memory import InMemoryEntitlementStore
from .postgres import PostgreSQLEntitlementStore


def build_store(config: BaseConfig) -> EntitlementStore:
    """Create the store selected by ``config.store_backend``."""
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryEntitlementStore()
    if backend == "postgres":
        return PostgreSQLEntitlementStore(
            config.postgres_dsn,
            min_pool_size=config.postgres_min_pool_size,
            max_pool_size=config.postgres_max_pool_size,
            command_timeout=config.postgres_command_timeout,
        )
    raise ValidationError(f"Unknown store backend: {config.store_backend}", {"store_backend": config.store_backend})


__all__ = [
    "EntitlementStore",
    "InMemoryEntitlementStore",
    "PostgreSQLEntitlementStore",
    "build_store",
]
