from .engine import EngineState, MigrationEngine, MigrationOptions
from .checkpoint import CheckpointStore
from .partitioner import partition, partition_sizes
from .progress import (
    FileFailure,
    MigrationOutcome,
    MigrationProgress,
    MigrationResult,
    ProgressReporter,
)
from .state import FileTask, MigrationState

__all__ = [
    "EngineState",
    "MigrationEngine",
    "MigrationOptions",
    "CheckpointStore",
    "partition",
    "partition_sizes",
    "FileFailure",
    "MigrationOutcome",
    "MigrationProgress",
    "MigrationResult",
    "ProgressReporter",
    "FileTask",
    "MigrationState",
]
