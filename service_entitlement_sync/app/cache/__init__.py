"""
Cache package for the Entitlement Sync service.

Provides a Redis-backed cache of per-user provenance views. Entries are
invalidated for every user a mutation touches.
"""
