"""
Target server reachability check.

Before anything is written, decide whether it is safe to migrate into the
configured server endpoint. The rule is to fail closed: the only network
failure that counts as "no server here" is an actively refused connection.
Timeouts, unreachable hosts and anything else leave the server's state
unknown and stop the migration.

If a server answers, it must also answer ``SHOW DATABASES`` over the MySQL
protocol. A listener that does not speak it, or a server that refuses the
query, is treated as unverifiable.
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from issuevault.migration.errors import TargetVerificationError
from issuevault.storage.target_store import SYSTEM_DATABASES, TargetConfig, TargetStore

logger = logging.getLogger(__name__)

REACHABILITY_TIMEOUT_SECONDS = 2.0

STATUS_NO_NETWORK_TARGET = "no_network_target"
STATUS_NO_SERVER = "no_server"
STATUS_DATABASE_EXISTS = "database_exists"
STATUS_DATABASE_ABSENT = "database_absent"


@dataclass
class TargetCheckResult:
    """Outcome of a successful (safe) target check."""

    status: str
    other_databases: list[str] = field(default_factory=list)

    @property
    def shared_server(self) -> bool:
        return bool(self.other_databases)


def verify_server_target(
    expected_db_name: str,
    port: int,
    host: str = "127.0.0.1",
    user: str = "root",
    password: str = "",
    timeout: float = REACHABILITY_TIMEOUT_SECONDS,
    connect: Callable[..., Any] | None = None,
) -> TargetCheckResult:
    """
    Decide whether migrating into the server endpoint is safe.

    Args:
        expected_db_name: Database the migration will write to.
        port: Server port. Zero means no network target is configured.
        host: Server host.
        user: Server user.
        password: Server password.
        timeout: Timeout for the TCP probe and the introspection connection.
        connect: Connection factory passed to TargetStore.

    Returns:
        TargetCheckResult describing why it is safe.

    Raises:
        TargetVerificationError: If the server's state cannot be confirmed.
    """
    if port == 0:
        return TargetCheckResult(status=STATUS_NO_NETWORK_TARGET)

    if not expected_db_name:
        raise TargetVerificationError(
            f"No target database name configured for server on port {port}"
        )

    address = f"{host}:{port}"
    try:
        probe = socket.create_connection((host, port), timeout=timeout)
    except ConnectionRefusedError:
        logger.debug(f"Connection to {address} refused, no server running")
        return TargetCheckResult(status=STATUS_NO_SERVER)
    except (TimeoutError, OSError) as e:
        raise TargetVerificationError(
            f"Cannot determine whether a server is running at {address}: {e}. "
            "Refusing to migrate into an unknown target."
        ) from e
    probe.close()

    store = TargetStore(
        TargetConfig(host=host, port=port, user=user, password=password, connect_timeout=timeout),
        connect=connect,
    )
    try:
        store.open()
        databases = store.list_databases()
    except Exception as e:
        raise TargetVerificationError(
            f"A process is listening on {address} but could not be queried as a "
            f"Dolt/MySQL server: {e}"
        ) from e
    finally:
        store.close()

    if expected_db_name in databases:
        logger.info(f"Database '{expected_db_name}' already exists on {address}, re-running migration")
        return TargetCheckResult(status=STATUS_DATABASE_EXISTS)

    others = sorted(
        name for name in databases if name not in SYSTEM_DATABASES and name != expected_db_name
    )
    if others:
        logger.info(
            f"Server at {address} hosts other databases ({', '.join(others)}); "
            f"'{expected_db_name}' will be created alongside them"
        )
    return TargetCheckResult(status=STATUS_DATABASE_ABSENT, other_databases=others)
