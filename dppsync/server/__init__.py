"""Relay server for dppsync clients.

Assigns a global sequence to pushed operations and serves them back to
other clients by cursor, using FastAPI over SQLite.
"""

from .app import create_app
from .storage import RelayStore

__all__ = ["RelayStore", "create_app"]
