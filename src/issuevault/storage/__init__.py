"""
Storage layer for issuevault.

Provides the data models shared by every component, atomic file helpers,
and the TargetStore handle on the Dolt server.

Usage:
    from issuevault.storage import TargetConfig, TargetStore

    store = TargetStore(TargetConfig(port=3307, database="proj")).open()
    print(store.count_rows("issues"))
"""

from issuevault.storage.models import (
    Comment,
    Dependency,
    Event,
    Record,
    Snapshot,
    format_timestamp,
    parse_timestamp,
)
from issuevault.storage.target_store import (
    TargetConfig,
    TargetStore,
    TargetStoreError,
)

__all__ = [
    # Models
    "Record",
    "Dependency",
    "Event",
    "Comment",
    "Snapshot",
    "parse_timestamp",
    "format_timestamp",
    # Target store
    "TargetConfig",
    "TargetStore",
    "TargetStoreError",
]
