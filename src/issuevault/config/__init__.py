"""
Configuration management for issuevault.

Three files live in the project directory:

- ``metadata.json``: the authoritative backend record (see metadata.py)
- ``config.yaml``: human-editable settings (see settings.py)
- ``salt`` / ``credentials.enc``: the encrypted server password
"""

from issuevault.config.credentials import (
    CredentialError,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    resolve_server_password,
)
from issuevault.config.metadata import (
    BACKEND_DOLT,
    BACKEND_SQLITE,
    ProjectMetadata,
    load_metadata,
    save_metadata,
)
from issuevault.config.settings import (
    ConfigurationError,
    Settings,
    find_project_dir,
    load_config,
    save_config,
    set_config_value,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "set_config_value",
    "find_project_dir",
    "ConfigurationError",
    # Metadata
    "ProjectMetadata",
    "load_metadata",
    "save_metadata",
    "BACKEND_SQLITE",
    "BACKEND_DOLT",
    # Credentials
    "CredentialStore",
    "CredentialError",
    "CredentialStoreNotInitializedError",
    "CredentialStoreLockedError",
    "InvalidPassphraseError",
    "CredentialNotFoundError",
    "resolve_server_password",
]
