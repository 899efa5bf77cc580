"""
Encrypted storage for the target server password.

The password is kept out of ``metadata.json`` (often committed next to the
project) and written to ``credentials.enc`` as a Fernet token. The Fernet key
is derived from a user passphrase with PBKDF2-SHA256 and a random per-project
salt kept in ``salt``. Both files are owner-only.

Resolution order for the server password used by the CLI:
    1. ISSUEVAULT_SERVER_PASSWORD environment variable
    2. The credential store, unlocked with ISSUEVAULT_PASSPHRASE
    3. Empty password (the Dolt default for a local root user)

Usage:
    store = CredentialStore(project_dir)
    store.unlock(passphrase)
    password = store.get_credential(SERVER_SCOPE, PASSWORD_KEY)
    store.lock()
"""

from __future__ import annotations

import base64
import json
import logging
import os
import secrets
import time
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from issuevault.storage.files import atomic_write_bytes

logger = logging.getLogger(__name__)

# PBKDF2-SHA256 work factor; tests pass a lower value
PBKDF2_ITERATIONS = 600_000
SALT_BYTES = 32
UNLOCK_TTL_SECONDS = 3600
MIN_PASSPHRASE_LENGTH = 12
SECRET_FILE_MODE = 0o600

SERVER_SCOPE = "server"
PASSWORD_KEY = "password"

Secrets = dict[str, dict[str, str]]


class CredentialError(Exception):
    """Base error for the encrypted credential store."""

    pass


class CredentialStoreNotInitializedError(CredentialError):
    """No salt or credentials file in the project yet."""

    pass


class CredentialStoreLockedError(CredentialError):
    """The store must be unlocked with the passphrase first."""

    pass


class InvalidPassphraseError(CredentialError):
    """The passphrase does not decrypt credentials.enc."""

    pass


class CredentialNotFoundError(CredentialError):
    """No secret stored under the requested scope and key."""

    pass


class CredentialStore:
    """
    Passphrase-protected secrets, grouped by scope and key.

    The store is unlocked for UNLOCK_TTL_SECONDS after unlock() or
    initialize(); after that, reads and writes raise
    CredentialStoreLockedError until it is unlocked again.
    """

    def __init__(self, project_dir: Path, iterations: int = PBKDF2_ITERATIONS) -> None:
        self.project_dir = Path(project_dir)
        self.salt_path = self.project_dir / "salt"
        self.credentials_path = self.project_dir / "credentials.enc"
        self.iterations = iterations
        self._fernet: Fernet | None = None
        self._unlocked_until = 0.0

    def is_initialized(self) -> bool:
        return self.salt_path.exists() and self.credentials_path.exists()

    def initialize(self, passphrase: str) -> None:
        """
        Create the salt and an empty encrypted secrets file.

        Raises:
            CredentialError: If the project already has a credential store.
            ValueError: If the passphrase is shorter than MIN_PASSPHRASE_LENGTH.
        """
        if self.is_initialized():
            raise CredentialError(
                f"A credential store already exists in {self.project_dir}; "
                f"remove {self.salt_path.name} and {self.credentials_path.name} to start over"
            )
        if len(passphrase) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(f"Passphrase needs at least {MIN_PASSPHRASE_LENGTH} characters")

        salt = secrets.token_bytes(SALT_BYTES)
        atomic_write_bytes(self.salt_path, salt, mode=SECRET_FILE_MODE)
        self._open_session(self._fernet_for(passphrase, salt))
        self._write_secrets({})
        logger.info(f"Initialized credential store in {self.project_dir}")

    def unlock(self, passphrase: str, ttl_seconds: int | None = None) -> None:
        """
        Derive the key from the passphrase and check it against the file.

        Raises:
            CredentialStoreNotInitializedError: If the store does not exist.
            InvalidPassphraseError: If the passphrase is wrong.
        """
        if not self.is_initialized():
            raise CredentialStoreNotInitializedError(
                "No credential store found. Run 'issuevault credentials set-password' first."
            )

        fernet = self._fernet_for(passphrase, self.salt_path.read_bytes())
        try:
            fernet.decrypt(self.credentials_path.read_bytes())
        except InvalidToken as e:
            raise InvalidPassphraseError("Passphrase does not match the credential store") from e
        self._open_session(fernet, ttl_seconds)

    def lock(self) -> None:
        self._fernet = None
        self._unlocked_until = 0.0

    def is_unlocked(self) -> bool:
        if self._fernet is not None and time.monotonic() >= self._unlocked_until:
            logger.debug("Credential store unlock expired")
            self.lock()
        return self._fernet is not None

    def get_credential(self, scope: str, key: str) -> str:
        """
        Return a stored secret.

        Raises:
            CredentialStoreLockedError: If the store is locked.
            CredentialNotFoundError: If nothing is stored under scope/key.
        """
        value = self._read_secrets().get(scope, {}).get(key)
        if value is None:
            raise CredentialNotFoundError(f"No {scope}/{key} credential stored")
        return value

    def set_credential(self, scope: str, key: str, value: str) -> None:
        stored = self._read_secrets()
        stored.setdefault(scope, {})[key] = value
        self._write_secrets(stored)

    def delete_credential(self, scope: str, key: str) -> None:
        stored = self._read_secrets()
        entries = stored.get(scope, {})
        if key not in entries:
            raise CredentialNotFoundError(f"No {scope}/{key} credential stored")
        del entries[key]
        if not entries:
            stored.pop(scope)
        self._write_secrets(stored)

    def has_credential(self, scope: str, key: str) -> bool:
        return key in self._read_secrets().get(scope, {})

    def _open_session(self, fernet: Fernet, ttl_seconds: int | None = None) -> None:
        self._fernet = fernet
        self._unlocked_until = time.monotonic() + (ttl_seconds or UNLOCK_TTL_SECONDS)

    def _fernet_for(self, passphrase: str, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8"))))

    def _session_key(self) -> Fernet:
        if not self.is_unlocked():
            raise CredentialStoreLockedError("Credential store is locked; unlock it with the passphrase")
        assert self._fernet is not None
        return self._fernet

    def _read_secrets(self) -> Secrets:
        token = self.credentials_path.read_bytes()
        stored: Secrets = json.loads(self._session_key().decrypt(token))
        return stored

    def _write_secrets(self, stored: Secrets) -> None:
        token = self._session_key().encrypt(json.dumps(stored, sort_keys=True).encode("utf-8"))
        atomic_write_bytes(self.credentials_path, token, mode=SECRET_FILE_MODE)


def resolve_server_password(
    project_dir: Path,
    store: CredentialStore | None = None,
) -> str:
    """
    Resolve the password for the target server.

    Raises:
        InvalidPassphraseError: If ISSUEVAULT_PASSPHRASE does not unlock the store.
    """
    env_password = os.environ.get("ISSUEVAULT_SERVER_PASSWORD")
    if env_password is not None:
        return env_password

    store = store or CredentialStore(project_dir)
    passphrase = os.environ.get("ISSUEVAULT_PASSPHRASE")
    if not passphrase or not store.is_initialized():
        return ""

    store.unlock(passphrase)
    try:
        return store.get_credential(SERVER_SCOPE, PASSWORD_KEY)
    except CredentialNotFoundError:
        logger.debug("No server password stored, using empty password")
        return ""
    finally:
        store.lock()
