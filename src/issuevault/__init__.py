"""
issuevault - migration and backup for a local issue tracker

Moves a project's issues out of a retiring single-file SQLite store into a
Dolt sql-server exactly once, and keeps a portable, incrementally updated
JSONL copy of the data afterwards.

Key Features:
    - Two independent SQLite extractors (driver and sqlite3 CLI) that must agree
    - Fail-closed check of the target server before anything is written
    - Row-count verification before the backend switch, rollback on failure
    - Repeatable: a migrated store is detected and left alone
    - JSONL backup with incremental events, optional git push
    - Native DOLT_BACKUP destinations and a freshness check

Design Principles:
    - Safety: nothing is switched until the target is verified
    - Transparency: every skip is a status, every failure has a message
    - Portability: backups are plain text
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from issuevault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
