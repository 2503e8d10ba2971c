import asyncio
import logging
import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

from ..sources.local_tree import TreeFile, list_directories, to_absolute, walk_tree
from ..transfer.chunked import (
    CancelSignal,
    ChunkedFileTransfer,
    TransferResult,
    TransferStatus,
)
from ..transfer.integrity import IntegrityVerifier
from ..utils.exceptions import (
    ConfigurationError,
    MigrationCancelled,
    MigrationInProgressError,
    TransferError,
    VerificationError,
)
from ..utils.paths import resolve_root, validate_roots
from .checkpoint import CheckpointStore
from .partitioner import partition
from .progress import (
    FileFailure,
    MigrationOutcome,
    MigrationProgress,
    MigrationResult,
    ProgressReporter,
    ProgressSink,
)
from .state import FileTask, MigrationState

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
TreeWalker = Callable[[Path], Iterable[TreeFile]]

REPORTER_CLOSE_TIMEOUT = 5.0


class EngineState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def available_parallelism() -> int:
    return os.cpu_count() or 1


@dataclass
class MigrationOptions:
    copy: bool = True
    preserve_timestamps: bool = True
    verify: bool = True
    workers: Optional[int] = None
    allow_existing: bool = False
    skip_existing: bool = False
    resumable: bool = True
    buffer_size: Optional[int] = None
    progress_sink: Optional[ProgressSink] = None
    on_file_completed: Optional[Callable[[str], None]] = None

    def __post_init__(self) -> None:
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError("workers must be >= 1", config_key="workers")
        if self.buffer_size is not None and self.buffer_size < 1:
            raise ConfigurationError(
                "buffer_size must be >= 1", config_key="buffer_size"
            )

    def resolve_workers(self) -> int:
        requested = self.workers or available_parallelism()
        return max(1, min(requested, available_parallelism()))


@dataclass
class _FileOutcome:
    status: TransferStatus
    bytes_copied: int
    error: Optional[str] = None


@dataclass
class _RunContext:
    state: MigrationState
    options: MigrationOptions
    reporter: ProgressReporter
    source_root: Path
    dest_root: Path
    save_lock: asyncio.Lock
    total_files: int = 0
    files_completed: int = 0
    bytes_done: int = 0
    inflight: Dict[str, int] = field(default_factory=dict)
    failures: List[FileFailure] = field(default_factory=list)
    errors: List[BaseException] = field(default_factory=list)
    stop: bool = False
    counter_lock: threading.Lock = field(default_factory=threading.Lock)

    def snapshot(self, current_file: Optional[str]) -> MigrationProgress:
        with self.counter_lock:
            copied = self.bytes_done + sum(self.inflight.values())
            files_completed = self.files_completed
        return MigrationProgress(
            files_completed=files_completed,
            total_files=self.total_files,
            bytes_copied=copied,
            total_bytes=self.state.total_bytes,
            current_file=current_file,
        )


class MigrationEngine:
    """Copies or moves a directory tree with parallel, resumable workers.

    One instance runs at most one migration at a time. Progress is kept in
    a checkpoint owned by ``store``; calling ``migrate`` again with the same
    source, destination and store resumes where the previous run stopped.
    """

    def __init__(
        self,
        store: Optional[CheckpointStore] = None,
        transfer: Optional[ChunkedFileTransfer] = None,
        verifier: Optional[IntegrityVerifier] = None,
        walker: TreeWalker = walk_tree,
    ) -> None:
        self._store = store or CheckpointStore()
        self._transfer = transfer
        self._verifier = verifier or IntegrityVerifier()
        self._walker = walker
        self._run_lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._cancel = CancelSignal()
        self._state = EngineState.IDLE

    @property
    def store(self) -> CheckpointStore:
        return self._store

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return not self._idle.is_set()

    def request_cancel(self) -> None:
        """Ask a running migration to stop; safe to call from any thread."""
        if self.is_running:
            logger.info("Cancellation requested")
            self._cancel.set()

    async def cancel(self) -> None:
        """Request cancellation and wait until the engine is idle again."""
        if not self.is_running:
            return
        self.request_cancel()
        delay = 0.01
        while self.is_running:
            await asyncio.sleep(delay)
            delay = min(delay * 2, 0.5)

    async def migrate(
        self,
        source: PathLike,
        destination: PathLike,
        options: Optional[MigrationOptions] = None,
    ) -> MigrationResult:
        options = options or MigrationOptions()
        if not self._run_lock.acquire(blocking=False):
            raise MigrationInProgressError(
                "Another migration is already running on this engine"
            )

        self._idle.clear()
        self._cancel.clear()
        reporter = ProgressReporter(options.progress_sink)
        try:
            reporter.start()
            return await self._run(source, destination, options, reporter)
        finally:
            await asyncio.to_thread(reporter.close, REPORTER_CLOSE_TIMEOUT)
            self._state = EngineState.IDLE
            self._cancel.clear()
            self._idle.set()
            self._run_lock.release()

    async def _run(
        self,
        source: PathLike,
        destination: PathLike,
        options: MigrationOptions,
        reporter: ProgressReporter,
    ) -> MigrationResult:
        src = resolve_root(source)
        dest = resolve_root(destination)

        state: Optional[MigrationState] = None
        if options.resumable:
            state = self._store.load_matching(src, dest)
            if state is not None and not dest.is_dir():
                logger.warning(
                    "Destination %s vanished since the last checkpoint; rescanning",
                    dest,
                )
                state = None

        validate_roots(
            src, dest, allow_existing=options.allow_existing or state is not None
        )

        self._state = EngineState.SCANNING
        resumed = state is not None
        try:
            if state is None:
                logger.info("Scanning %s", src)
                state = await asyncio.to_thread(self._scan, src, dest, options)
            else:
                logger.info(
                    "Resuming %s -> %s: %d of %d files pending",
                    src,
                    dest,
                    len(state.pending_tasks),
                    state.total_files,
                )
                if options.verify:
                    await asyncio.to_thread(self._fill_missing_digests, state, src)
            await asyncio.to_thread(self._prepare_destination, src, dest)
        except MigrationCancelled:
            logger.info("Migration cancelled during scan")
            self._state = EngineState.CANCELLED
            return MigrationResult(
                outcome=MigrationOutcome.CANCELLED,
                resumed=resumed,
                state_id=self._store.state_id,
            )

        if options.resumable:
            await asyncio.to_thread(self._store.save, state)

        ctx = _RunContext(
            state=state,
            options=options,
            reporter=reporter,
            source_root=src,
            dest_root=dest,
            save_lock=asyncio.Lock(),
            total_files=state.total_files,
            files_completed=len(state.completed_paths),
            bytes_done=state.completed_bytes,
        )

        self._state = EngineState.TRANSFERRING
        partitions = partition(state.pending_tasks, options.resolve_workers())
        logger.info(
            "Transferring %d files (%d bytes) with %d workers",
            len(state.pending_tasks),
            state.pending_bytes,
            len(partitions),
        )
        await asyncio.gather(
            *(self._run_partition(part, ctx) for part in partitions),
            return_exceptions=True,
        )

        return await self._finish(ctx, resumed)

    async def _finish(self, ctx: _RunContext, resumed: bool) -> MigrationResult:
        state = ctx.state
        options = ctx.options

        if ctx.errors or ctx.failures or not state.is_complete:
            if options.resumable:
                await asyncio.to_thread(self._store.save, state)
            if ctx.errors:
                self._state = EngineState.FAILED
                raise ctx.errors[0]
            if ctx.failures:
                outcome = MigrationOutcome.FAILED
                self._state = EngineState.FAILED
                for failure in ctx.failures:
                    logger.warning(
                        "Failed: %s (%s)", failure.relative_path, failure.reason
                    )
            else:
                outcome = MigrationOutcome.CANCELLED
                self._state = EngineState.CANCELLED
                logger.info(
                    "Migration cancelled with %d files pending",
                    len(state.pending_tasks),
                )
        else:
            if not options.copy:
                await asyncio.to_thread(_remove_empty_tree, ctx.source_root)
            if options.resumable:
                await asyncio.to_thread(self._store.delete)
            outcome = MigrationOutcome.COMPLETED
            self._state = EngineState.COMPLETED
            logger.info("Migration completed: %d files", state.total_files)

        final = ctx.snapshot(None)
        return MigrationResult(
            outcome=outcome,
            files_completed=final.files_completed,
            total_files=final.total_files,
            bytes_copied=final.bytes_copied,
            total_bytes=final.total_bytes,
            resumed=resumed,
            failures=list(ctx.failures),
            state_id=self._store.state_id,
        )

    def _scan(
        self, src: Path, dest: Path, options: MigrationOptions
    ) -> MigrationState:
        tasks: List[FileTask] = []
        completed: List[str] = []
        total_bytes = 0

        for tree_file in self._walker(src):
            if self._cancel.is_set():
                raise MigrationCancelled("Cancelled while scanning")
            digest = None
            if options.verify:
                digest = self._verifier.digest(tree_file.absolute_path, self._cancel)
            total_bytes += tree_file.size
            if options.skip_existing and self._already_present(
                tree_file, to_absolute(dest, tree_file.relative_path), digest
            ):
                if options.copy or _discard_source(tree_file):
                    completed.append(tree_file.relative_path)
                    continue
            tasks.append(
                FileTask(
                    relative_path=tree_file.relative_path,
                    total_bytes=tree_file.size,
                    expected_digest=digest,
                )
            )

        logger.info(
            "Scan found %d files (%d bytes), %d already present",
            len(tasks) + len(completed),
            total_bytes,
            len(completed),
        )
        state = MigrationState.create(src, dest, tasks)
        state.completed_paths = completed
        state.total_bytes = total_bytes
        return state

    def _already_present(
        self, tree_file: TreeFile, target: Path, digest: Optional[str]
    ) -> bool:
        try:
            if target.stat().st_size != tree_file.size:
                return False
        except FileNotFoundError:
            return False
        if digest is None:
            return True
        return self._verifier.digest(target, self._cancel) == digest

    def _fill_missing_digests(self, state: MigrationState, src: Path) -> None:
        for task in state.pending_tasks:
            if self._cancel.is_set():
                raise MigrationCancelled("Cancelled while hashing")
            source = to_absolute(src, task.relative_path)
            if task.expected_digest is None and source.exists():
                task.expected_digest = self._verifier.digest(source, self._cancel)

    @staticmethod
    def _prepare_destination(src: Path, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        for relative in list_directories(src):
            to_absolute(dest, relative).mkdir(parents=True, exist_ok=True)

    async def _run_partition(
        self, tasks: List[FileTask], ctx: _RunContext
    ) -> None:
        try:
            for task in tasks:
                if ctx.stop or self._cancel.is_set():
                    return
                outcome = await asyncio.to_thread(self._migrate_file, task, ctx)
                await self._commit(task, outcome, ctx)
        except Exception as e:
            logger.exception("Worker crashed")
            ctx.errors.append(e)
            ctx.stop = True
            raise

    async def _commit(
        self, task: FileTask, outcome: _FileOutcome, ctx: _RunContext
    ) -> None:
        async with ctx.save_lock:
            with ctx.counter_lock:
                ctx.inflight.pop(task.relative_path, None)

            if outcome.status != TransferStatus.SUCCESS:
                task.bytes_copied = min(outcome.bytes_copied, task.total_bytes)
                if outcome.status == TransferStatus.FAILED:
                    ctx.failures.append(
                        FileFailure(
                            task.relative_path, outcome.error or "unknown error"
                        )
                    )
                    ctx.stop = True
                return

            task.bytes_copied = task.total_bytes
            ctx.state.mark_completed(task.relative_path)
            with ctx.counter_lock:
                ctx.files_completed += 1
                ctx.bytes_done += task.total_bytes
            if ctx.options.resumable:
                await asyncio.to_thread(self._store.save, ctx.state)

        if ctx.reporter.active:
            ctx.reporter.report_final(ctx.snapshot(task.relative_path))
        if ctx.options.on_file_completed is not None:
            ctx.options.on_file_completed(task.relative_path)

    def _migrate_file(self, task: FileTask, ctx: _RunContext) -> _FileOutcome:
        options = ctx.options
        source = to_absolute(ctx.source_root, task.relative_path)
        destination = to_absolute(ctx.dest_root, task.relative_path)
        verifying = options.verify and task.expected_digest is not None

        def on_progress(copied: int, total: int) -> None:
            with ctx.counter_lock:
                ctx.inflight[task.relative_path] = copied
            if ctx.reporter.active:
                ctx.reporter.report(ctx.snapshot(task.relative_path))

        if not options.copy and _moved_before_checkpoint(source, destination, task):
            if verifying and not self._verifier.verify(
                destination, task.expected_digest or ""
            ):
                return _FileOutcome(
                    TransferStatus.FAILED,
                    0,
                    f"{task.relative_path} was already moved but does not match",
                )
            logger.info("%s was already moved; recording it", task.relative_path)
            return _FileOutcome(TransferStatus.SUCCESS, task.total_bytes)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return _FileOutcome(TransferStatus.FAILED, task.bytes_copied, str(e))

        transfer = self._transfer or ChunkedFileTransfer(options.buffer_size)
        result: TransferResult = transfer.transfer(
            source,
            destination,
            start_offset=task.bytes_copied,
            copy=options.copy or verifying,
            total_bytes=task.total_bytes,
            on_progress=on_progress,
            cancel=self._cancel,
            preserve_timestamps=options.preserve_timestamps,
        )
        if result.status == TransferStatus.CANCELLED:
            return _FileOutcome(result.status, result.bytes_copied)
        try:
            result.raise_for_status(task.relative_path)
        except TransferError as e:
            return _FileOutcome(TransferStatus.FAILED, e.bytes_copied, e.message)

        if verifying:
            assert task.expected_digest is not None
            try:
                self._verifier.ensure(
                    destination, task.expected_digest, task.relative_path
                )
            except VerificationError as e:
                logger.warning(
                    "%s: expected %s, got %s", e.message, e.expected, e.actual
                )
                # The bytes on disk are wrong, so the retry starts from zero.
                return _FileOutcome(TransferStatus.FAILED, 0, e.message)
            except OSError as e:
                return _FileOutcome(
                    TransferStatus.FAILED, 0, f"Could not hash {destination}: {e}"
                )
            if not options.copy:
                try:
                    source.unlink()
                except OSError as e:
                    return _FileOutcome(
                        TransferStatus.FAILED,
                        result.bytes_copied,
                        f"Copied but could not delete source: {e}",
                    )

        return _FileOutcome(TransferStatus.SUCCESS, result.bytes_copied)


def _discard_source(tree_file: TreeFile) -> bool:
    """Delete a source file whose identical copy is already at the destination."""
    try:
        tree_file.absolute_path.unlink()
    except OSError as e:
        logger.warning(
            "Could not remove %s, moving it again: %s", tree_file.absolute_path, e
        )
        return False
    return True


def _moved_before_checkpoint(source: Path, destination: Path, task: FileTask) -> bool:
    """True when an earlier run moved this file but stopped before recording it."""
    if source.exists():
        return False
    try:
        return destination.stat().st_size == task.total_bytes
    except FileNotFoundError:
        return False


def _remove_empty_tree(root: Path) -> None:
    """Remove ``root`` and its directories once every file has been moved out.

    Anything that still contains files is left in place and logged.
    """
    directories = [to_absolute(root, rel) for rel in list_directories(root)]
    for directory in sorted(directories, key=lambda p: len(p.parts), reverse=True):
        try:
            directory.rmdir()
        except OSError as e:
            logger.warning("Leaving source directory %s: %s", directory, e)
    try:
        root.rmdir()
    except OSError as e:
        logger.warning("Leaving source directory %s: %s", root, e)
