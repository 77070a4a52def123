"""Local storage for replicated tables, settings and sync state."""

from .local_store import SYNC_SOURCE, LocalStore

__all__ = ["LocalStore", "SYNC_SOURCE"]
