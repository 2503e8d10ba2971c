"""Custom exception classes for the tree-migrator."""

from typing import Optional


class MigratorError(Exception):
    """Base exception class for all migrator errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(MigratorError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None) -> None:
        self.config_key = config_key
        super().__init__(message)


class PreconditionError(MigratorError):
    """Raised when a migration is rejected before any I/O takes place."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(message)


class SourceNotFoundError(PreconditionError):
    """Raised when the source directory does not exist."""


class DestinationExistsError(PreconditionError):
    """Raised when the destination exists and overwriting was not allowed."""


class InvalidPathError(PreconditionError):
    """Raised when source and destination are the same or nested in each other."""


class MigrationInProgressError(PreconditionError):
    """Raised when an engine instance is asked to run two migrations at once."""


class TransferError(MigratorError):
    """Raised when copying the bytes of a single file fails."""

    def __init__(
        self,
        message: str,
        relative_path: Optional[str] = None,
        bytes_copied: int = 0,
    ) -> None:
        self.relative_path = relative_path
        self.bytes_copied = bytes_copied
        super().__init__(message)


class VerificationError(MigratorError):
    """Raised when a copied file does not hash to its expected digest."""

    def __init__(
        self,
        message: str,
        relative_path: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
    ) -> None:
        self.relative_path = relative_path
        self.expected = expected
        self.actual = actual
        super().__init__(message)


class CheckpointError(MigratorError):
    """Raised when a checkpoint cannot be written."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        self.path = path
        super().__init__(message)


class MigrationCancelled(MigratorError):
    """Raised internally when a cancellation request is observed.

    Cancellation is a terminal outcome of its own, not a failure; the engine
    catches this and reports it distinctly.
    """

    def __init__(self, message: str = "Migration cancelled") -> None:
        super().__init__(message)
