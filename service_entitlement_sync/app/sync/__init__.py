"""
Sync package.

Holds the reconciliation logic of the service:

- models: Assignment rows, type links, sync results and HTTP models.
- engine: SyncEngine, reacting to user type changes and link add/remove.
- bulk: BulkOperationCoordinator for assign, deassign, edit and delete batches.
- provenance: Pure manual / usertype / dual / none classification.

Provenance is always derived from the stored rows, never stored itself.
"""
