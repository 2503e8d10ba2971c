from .logger import (
    setup_logging,
    get_logger,
    log_file_for,
    DEFAULT_LOG_DIR,
    DEFAULT_LOG_FORMAT,
)
from .paths import is_within, resolve_root, validate_roots
from .exceptions import (
    MigratorError,
    ConfigurationError,
    PreconditionError,
    SourceNotFoundError,
    DestinationExistsError,
    InvalidPathError,
    MigrationInProgressError,
    TransferError,
    VerificationError,
    CheckpointError,
    MigrationCancelled,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "log_file_for",
    "DEFAULT_LOG_DIR",
    "DEFAULT_LOG_FORMAT",
    "is_within",
    "resolve_root",
    "validate_roots",
    "MigratorError",
    "ConfigurationError",
    "PreconditionError",
    "SourceNotFoundError",
    "DestinationExistsError",
    "InvalidPathError",
    "MigrationInProgressError",
    "TransferError",
    "VerificationError",
    "CheckpointError",
    "MigrationCancelled",
]
