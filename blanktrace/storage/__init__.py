"""
BlankTrace persistent store.
"""

from blanktrace.storage.database import (
    EVENT_TABLES,
    Database,
    TrackingDomain,
    WhitelistEntry,
    open_database,
)

__all__ = [
    "EVENT_TABLES",
    "Database",
    "TrackingDomain",
    "WhitelistEntry",
    "open_database",
]
