"""Exception hierarchy for notebackup."""


class BackupError(Exception):
    """Base class for all notebackup errors."""


class CollectionUnavailableError(BackupError):
    """Raised when the target document collection cannot be read at all.

    This is the only failure that aborts a pull; every per-file problem is
    reported through ``PullResult.errors`` instead.
    """


class ConfigError(BackupError):
    """Raised when configuration is missing or invalid."""
