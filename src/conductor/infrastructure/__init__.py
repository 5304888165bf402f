"""
conductor.infrastructure - Collaborator Interfaces
====================================================

Storage-facing collaborators of the Executor. Each is an ABC with an
in-memory implementation; production backends implement the same ABC.

    - cache:             Cache, InMemoryCache, build_cache_key
    - resumption_store:  ResumptionStore, InMemoryResumptionStore
"""

from conductor.infrastructure.cache import Cache, InMemoryCache, build_cache_key
from conductor.infrastructure.resumption_store import InMemoryResumptionStore, ResumptionStore

__all__ = [
    "Cache",
    "InMemoryCache",
    "build_cache_key",
    "ResumptionStore",
    "InMemoryResumptionStore",
]
