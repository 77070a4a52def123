"""dppsync: offline-first operation-log replication with an encrypted relay."""

__version__ = "0.1.0"
