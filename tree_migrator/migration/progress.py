import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024


@dataclass(frozen=True)
class MigrationProgress:
    files_completed: int
    total_files: int
    bytes_copied: int
    total_bytes: int
    current_file: Optional[str] = None

    @property
    def fraction(self) -> float:
        if self.total_bytes == 0:
            return 1.0 if self.files_completed == self.total_files else 0.0
        return self.bytes_copied / self.total_bytes


ProgressSink = Callable[[MigrationProgress], None]


class MigrationOutcome(Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class FileFailure:
    relative_path: str
    reason: str


@dataclass
class MigrationResult:
    """Terminal report of one ``migrate`` call.

    Truthy only when the migration completed, so it can be used wherever a
    plain success flag is expected.
    """

    outcome: MigrationOutcome
    files_completed: int = 0
    total_files: int = 0
    bytes_copied: int = 0
    total_bytes: int = 0
    resumed: bool = False
    failures: List[FileFailure] = field(default_factory=list)
    state_id: Optional[str] = None

    def __bool__(self) -> bool:
        return self.outcome == MigrationOutcome.COMPLETED


class ProgressReporter:
    """Delivers progress snapshots to a sink on a dedicated thread.

    Neither ``report`` nor ``report_final`` ever blocks. When the queue is
    full, ``report`` drops the new update while ``report_final`` evicts the
    oldest queued one, so per-file completions are favoured over chunk
    updates. Exceptions raised by the sink are logged and do not reach the
    migration.
    """

    _STOP = object()

    def __init__(
        self,
        sink: Optional[ProgressSink],
        max_queue: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._sink = sink
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=max_queue)
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    @property
    def active(self) -> bool:
        return self._thread is not None

    @property
    def dropped(self) -> int:
        return self._dropped

    def start(self) -> None:
        if self._sink is None or self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name="tree-migrator-progress", daemon=True
        )
        self._thread.start()

    def report(self, progress: MigrationProgress) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put_nowait(progress)
        except queue.Full:
            self._dropped += 1

    def report_final(self, progress: MigrationProgress) -> None:
        if self._thread is None:
            return
        while True:
            try:
                self._queue.put_nowait(progress)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self._dropped += 1
                except queue.Empty:
                    continue

    def close(self, timeout: Optional[float] = None) -> None:
        if self._thread is None:
            return
        try:
            self._queue.put(self._STOP, timeout=timeout)
        except queue.Full:
            logger.warning("Progress sink is not draining; abandoning it")
            self._thread = None
            return
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("Progress sink did not finish within %.1fs", timeout)
        self._thread = None
        if self._dropped:
            logger.debug("Dropped %d intermediate progress updates", self._dropped)

    def _run(self) -> None:
        assert self._sink is not None
        while True:
            item = self._queue.get()
            if item is self._STOP:
                return
            try:
                self._sink(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Progress sink raised; continuing migration")
