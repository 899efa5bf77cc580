"""
Dolt target store.

The target engine is a Dolt sql-server reached over the MySQL wire protocol
with mysql-connector-python. This module is the one place that speaks SQL to
it: database and schema creation, row counts, the key/value config and
metadata tables, version-control commits, and the engine's native
``DOLT_BACKUP`` procedure.

Connections run in autocommit mode; bulk writes go through transaction(),
which commits on success and rolls back on error.

Usage:
    store = TargetStore(TargetConfig(port=3307, database="proj"))
    store.open(create=True)
    store.ensure_schema()
    with store.transaction() as cursor:
        cursor.execute("INSERT INTO config (`key`, value) VALUES (%s, %s)", ("k", "v"))
    store.commit("import")
    store.close()
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Generator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import mysql.connector

if TYPE_CHECKING:
    from issuevault.config.metadata import ProjectMetadata

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10

SYSTEM_DATABASES = frozenset({"information_schema", "mysql", "performance_schema", "sys"})

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_-]+$")

ISSUE_TABLE_COLUMNS = (
    "id",
    "content_hash",
    "title",
    "description",
    "design",
    "acceptance_criteria",
    "notes",
    "status",
    "priority",
    "issue_type",
    "assignee",
    "estimated_minutes",
    "created_at",
    "created_by",
    "owner",
    "updated_at",
    "closed_at",
    "close_reason",
    "external_ref",
    "source_repo",
    "sender",
    "ephemeral",
    "pinned",
    "is_template",
    "quality_score",
    "due_at",
    "defer_until",
    "metadata",
)

CREATE_TABLES_SQL = (
    """
    CREATE TABLE IF NOT EXISTS issues (
        id VARCHAR(255) PRIMARY KEY,
        content_hash VARCHAR(64) NOT NULL,
        title VARCHAR(500) NOT NULL,
        description TEXT NOT NULL,
        design TEXT NOT NULL,
        acceptance_criteria TEXT NOT NULL,
        notes TEXT NOT NULL,
        status VARCHAR(32) NOT NULL,
        priority INT NOT NULL DEFAULT 0,
        issue_type VARCHAR(32) NOT NULL,
        assignee VARCHAR(255) NOT NULL,
        estimated_minutes INT NULL,
        created_at DATETIME(6) NULL,
        created_by VARCHAR(255) NOT NULL,
        owner VARCHAR(255) NOT NULL,
        updated_at DATETIME(6) NULL,
        closed_at DATETIME(6) NULL,
        close_reason TEXT NOT NULL,
        external_ref VARCHAR(255) NULL,
        source_repo VARCHAR(512) NOT NULL,
        sender VARCHAR(255) NOT NULL,
        ephemeral TINYINT(1) NOT NULL DEFAULT 0,
        pinned TINYINT(1) NOT NULL DEFAULT 0,
        is_template TINYINT(1) NOT NULL DEFAULT 0,
        quality_score DOUBLE NULL,
        due_at DATETIME(6) NULL,
        defer_until DATETIME(6) NULL,
        metadata TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS labels (
        issue_id VARCHAR(255) NOT NULL,
        label VARCHAR(255) NOT NULL,
        PRIMARY KEY (issue_id, label)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dependencies (
        issue_id VARCHAR(255) NOT NULL,
        depends_on_id VARCHAR(255) NOT NULL,
        type VARCHAR(32) NOT NULL,
        created_at DATETIME(6) NULL,
        created_by VARCHAR(255) NOT NULL,
        metadata TEXT NOT NULL,
        thread_id VARCHAR(255) NOT NULL,
        PRIMARY KEY (issue_id, depends_on_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        issue_id VARCHAR(255) NOT NULL,
        event_type VARCHAR(32) NOT NULL,
        actor VARCHAR(255) NOT NULL,
        old_value TEXT NULL,
        new_value TEXT NULL,
        comment TEXT NULL,
        created_at DATETIME(6) NULL,
        INDEX idx_events_issue (issue_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comments (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        issue_id VARCHAR(255) NOT NULL,
        author VARCHAR(255) NOT NULL,
        text TEXT NOT NULL,
        created_at DATETIME(6) NULL,
        INDEX idx_comments_issue (issue_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS config (
        `key` VARCHAR(255) PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS metadata (
        `key` VARCHAR(255) PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

KNOWN_TABLES = frozenset(
    {"issues", "labels", "dependencies", "events", "comments", "config", "metadata"}
)


class TargetStoreError(Exception):
    """Error talking to the target server."""

    pass


def validate_identifier(name: str) -> str:
    """
    Check a database or backup name before it is spliced into SQL.

    Raises:
        TargetStoreError: If the name is empty or holds other characters
                          than letters, digits, underscore and dash.
    """
    if not name or not _IDENTIFIER_RE.match(name):
        raise TargetStoreError(f"Invalid identifier: {name!r}")
    return name


def _validate_table(table: str) -> str:
    if table not in KNOWN_TABLES:
        raise TargetStoreError(f"Unknown table: {table}")
    return table


def db_timestamp(value: datetime | None) -> datetime | None:
    """Convert an aware datetime to the naive UTC value DATETIME columns hold."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


@dataclass
class TargetConfig:
    """Connection parameters for the target server."""

    host: str = "127.0.0.1"
    port: int = 3307
    user: str = "root"
    password: str = ""
    database: str = ""
    tls: bool = False
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    @classmethod
    def from_metadata(cls, metadata: ProjectMetadata, password: str = "") -> TargetConfig:
        """Build connection parameters from project metadata."""
        return cls(
            host=metadata.server_host,
            port=metadata.effective_port(),
            user=metadata.server_user,
            password=password,
            database=metadata.target_database,
            tls=metadata.server_tls,
        )

    def connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "autocommit": True,
            "connection_timeout": max(1, int(self.connect_timeout)),
        }
        if not self.tls:
            kwargs["ssl_disabled"] = True
        return kwargs


class TargetStore:
    """
    Handle on one database hosted by the target server.

    The store is an explicit value passed to whatever needs it; nothing in
    the package keeps a process-wide connection.
    """

    def __init__(
        self,
        config: TargetConfig,
        connect: Callable[..., Any] | None = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            config: Connection parameters.
            connect: Connection factory, mysql.connector.connect by default.
        """
        self.config = config
        self._connect = connect or mysql.connector.connect
        self._conn: Any = None

    def __enter__(self) -> TargetStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._conn is None

    @property
    def database(self) -> str:
        return self.config.database

    def open(self, create: bool = False) -> TargetStore:
        """
        Connect to the server and select the configured database.

        Args:
            create: Create the database first if it does not exist.

        Raises:
            TargetStoreError: If the connection or database selection fails.
        """
        try:
            self._conn = self._connect(**self.config.connect_kwargs())
        except mysql.connector.Error as e:
            raise TargetStoreError(
                f"Cannot connect to target server at {self.config.host}:{self.config.port}: {e}"
            ) from e
        logger.debug(f"Connected to target server at {self.config.host}:{self.config.port}")

        if self.config.database:
            if create:
                self.ensure_database(self.config.database)
            self.execute(f"USE `{validate_identifier(self.config.database)}`")
        return self

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.close()
        except mysql.connector.Error as e:
            logger.debug(f"Error closing target connection: {e}")
        finally:
            self._conn = None

    @contextmanager
    def _cursor(self) -> Generator[Any, None, None]:
        if self._conn is None:
            raise TargetStoreError("Target store is closed")
        cursor = self._conn.cursor(dictionary=True)
        try:
            yield cursor
        except mysql.connector.Error as e:
            raise TargetStoreError(str(e)) from e
        finally:
            cursor.close()

    def query(self, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        """Run a statement and return its rows as dictionaries."""
        with self._cursor() as cursor:
            cursor.execute(sql, params or ())
            if not cursor.with_rows:
                return []
            return list(cursor.fetchall())

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> int:
        """Run a statement and return the affected row count."""
        with self._cursor() as cursor:
            cursor.execute(sql, params or ())
            if cursor.with_rows:
                cursor.fetchall()
            return int(cursor.rowcount or 0)

    @contextmanager
    def transaction(self) -> Generator[Any, None, None]:
        """
        Run statements in one transaction.

        Yields:
            A dictionary cursor. The transaction commits when the block
            exits normally and rolls back on any exception.
        """
        if self._conn is None:
            raise TargetStoreError("Target store is closed")
        try:
            self._conn.start_transaction()
        except mysql.connector.Error as e:
            raise TargetStoreError(f"Cannot start transaction: {e}") from e
        cursor = self._conn.cursor(dictionary=True)
        try:
            yield cursor
            self._conn.commit()
        except mysql.connector.Error as e:
            self._rollback()
            raise TargetStoreError(str(e)) from e
        except BaseException:
            self._rollback()
            raise
        finally:
            cursor.close()

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except mysql.connector.Error as e:
            logger.warning(f"Rollback failed: {e}")

    def ensure_database(self, name: str) -> None:
        """Create the database if absent."""
        self.execute(f"CREATE DATABASE IF NOT EXISTS `{validate_identifier(name)}`")

    def ensure_schema(self) -> None:
        """Create the tracker tables if absent."""
        for statement in CREATE_TABLES_SQL:
            self.execute(statement)

    def list_databases(self) -> list[str]:
        """Names of all databases the server hosts."""
        rows = self.query("SHOW DATABASES")
        return [str(next(iter(row.values()))) for row in rows]

    def count_rows(self, table: str) -> int:
        rows = self.query(f"SELECT COUNT(*) AS n FROM `{_validate_table(table)}`")
        return int(rows[0]["n"]) if rows else 0

    def max_id(self, table: str) -> int:
        """Highest id in a table with a numeric key, 0 when it is empty."""
        rows = self.query(f"SELECT MAX(id) AS n FROM `{_validate_table(table)}`")
        return int(rows[0]["n"] or 0) if rows else 0

    def fetch_table(
        self,
        table: str,
        order_by: Sequence[str],
        after_id: int | None = None,
    ) -> list[dict[str, Any]]:
        """
        Read a whole table in a stable order.

        Args:
            table: Table name.
            order_by: Column names to sort by.
            after_id: Only rows with ``id`` strictly greater than this.
        """
        for column in order_by:
            validate_identifier(column)
        order = ", ".join(f"`{c}`" for c in order_by)
        sql = f"SELECT * FROM `{_validate_table(table)}`"
        params: tuple[Any, ...] = ()
        if after_id is not None:
            sql += " WHERE id > %s"
            params = (after_id,)
        if order:
            sql += f" ORDER BY {order}"
        return self.query(sql, params)

    def get_config(self, key: str) -> str | None:
        rows = self.query("SELECT value FROM config WHERE `key` = %s", (key,))
        return str(rows[0]["value"]) if rows else None

    def set_config(self, key: str, value: str) -> None:
        self.execute(
            "INSERT INTO config (`key`, value) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE value = VALUES(value)",
            (key, value),
        )

    def get_metadata(self, key: str) -> str | None:
        rows = self.query("SELECT value FROM metadata WHERE `key` = %s", (key,))
        return str(rows[0]["value"]) if rows else None

    def set_metadata(self, key: str, value: str) -> None:
        self.execute(
            "INSERT INTO metadata (`key`, value) VALUES (%s, %s) "
            "ON DUPLICATE KEY UPDATE value = VALUES(value)",
            (key, value),
        )

    def current_commit(self) -> str:
        """Hash of the current HEAD commit."""
        rows = self.query("SELECT DOLT_HASHOF('HEAD') AS hash")
        if not rows:
            raise TargetStoreError("DOLT_HASHOF returned no rows")
        return str(rows[0]["hash"])

    def commit(self, message: str) -> bool:
        """
        Commit all working-set changes.

        Returns:
            True if a commit was made, False if there was nothing to commit.
        """
        try:
            self.query("CALL DOLT_COMMIT('-Am', %s)", (message,))
        except TargetStoreError as e:
            if "nothing to commit" in str(e).lower():
                return False
            raise
        return True

    def backup_add(self, name: str, url: str) -> None:
        self.query("CALL DOLT_BACKUP('add', %s, %s)", (validate_identifier(name), url))

    def backup_remove(self, name: str) -> None:
        self.query("CALL DOLT_BACKUP('remove', %s)", (validate_identifier(name),))

    def backup_sync(self, name: str) -> None:
        self.query("CALL DOLT_BACKUP('sync', %s)", (validate_identifier(name),))
