"""
Entitlement Sync service package.

This package keeps each user's Program and Course access consistent across
two provenance sources: manual grants made by an administrator and
inherited grants derived from the user's User Type. It provides:

- app.main: API surface for bulk operations, type links and provenance reads.
- app.sync: Sync engine, bulk coordinator and provenance classification.
- app.persistence: Store contracts with in-memory and PostgreSQL backends.
- app.cache: Redis-backed cache of per-user provenance views.

Guidelines:
- Only the sync engine writes inherited (usertype) rows; it never touches manual rows.
- Every write is set-to-target so an interrupted trigger can be re-run.
- Keep bulk outcomes observable (metrics + logs) and report partial failure.
"""
