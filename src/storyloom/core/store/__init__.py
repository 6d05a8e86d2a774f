"""Durable store for sessions, artifacts and stage status.

SQLAlchemy Core tables behind two store classes. All writes that change a
status are guarded UPDATEs; the caller learns from the return value whether
its compare-and-set won.
"""

from storyloom.core.store.database import SchemaCompatibilityError, StoryloomDB
from storyloom.core.store.schema import metadata
from storyloom.core.store.session_store import SessionStore
from storyloom.core.store.stage_store import StageStatusStore

__all__ = [
    "SchemaCompatibilityError",
    "SessionStore",
    "StageStatusStore",
    "StoryloomDB",
    "metadata",
]
