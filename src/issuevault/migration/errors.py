"""Exceptions raised by the migration package."""


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class ExtractionError(MigrationError):
    """The legacy store could not be read."""

    pass


class CorruptLegacyStoreError(ExtractionError):
    """The legacy file failed format validation."""

    pass


class TargetVerificationError(MigrationError):
    """The state of the target server could not be confirmed as safe."""

    pass


class BackupCollisionError(MigrationError):
    """Every candidate backup filename for this timestamp is taken."""

    pass


class MigrationVerificationError(MigrationError):
    """Row counts or spot checks in the target fell short of the source."""

    pass


class RollbackError(MigrationError):
    """Persisted configuration could not be restored."""

    pass


class MigrationFinalizeError(MigrationError):
    """Metadata was switched to the target but the legacy file was not retired."""

    pass
