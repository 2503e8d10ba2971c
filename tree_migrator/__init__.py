"""Tree Migrator - Resumable, parallel, hash-verified directory copy and move."""

__version__ = "0.1.0"

from .config import ConfigManager
from .migration.engine import EngineState, MigrationEngine, MigrationOptions
from .migration.checkpoint import CheckpointStore
from .migration.partitioner import partition
from .migration.progress import MigrationOutcome, MigrationProgress, MigrationResult
from .migration.state import FileTask, MigrationState
from .transfer import CancelSignal, ChunkedFileTransfer, IntegrityVerifier

__all__ = [
    "ConfigManager",
    "EngineState",
    "MigrationEngine",
    "MigrationOptions",
    "CheckpointStore",
    "partition",
    "MigrationOutcome",
    "MigrationProgress",
    "MigrationResult",
    "FileTask",
    "MigrationState",
    "CancelSignal",
    "ChunkedFileTransfer",
    "IntegrityVerifier",
]
