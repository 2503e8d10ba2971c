import asyncio
import hashlib
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import pytest

from tree_migrator.migration.checkpoint import CheckpointStore
from tree_migrator.migration.engine import (
    EngineState,
    MigrationEngine,
    MigrationOptions,
    _RunContext,
)
from tree_migrator.migration.progress import (
    MigrationOutcome,
    MigrationProgress,
    ProgressReporter,
)
from tree_migrator.migration.state import FileTask, MigrationState
from tree_migrator.sources.local_tree import TreeFile, walk_tree
from tree_migrator.transfer.chunked import ChunkedFileTransfer
from tree_migrator.utils.exceptions import (
    ConfigurationError,
    DestinationExistsError,
    InvalidPathError,
    MigrationInProgressError,
    SourceNotFoundError,
)
from tree_migrator.utils.paths import resolve_root

pytestmark = pytest.mark.unit

TREE = {
    "big.bin": b"B" * 300_000,
    "docs/readme.txt": b"hello world\n",
    "docs/nested/notes.md": b"# notes\n" * 50,
    "empty.dat": b"",
}


def _write_tree(root: Path, files: Dict[str, bytes]) -> None:
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)


def _read_tree(root: Path) -> Dict[str, bytes]:
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in root.rglob("*")
        if p.is_file()
    }


class RecordingTransfer(ChunkedFileTransfer):
    """Records every transfer call before delegating."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[Dict[str, Any]] = []

    def transfer(self, source, destination, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"source": Path(source), **kwargs})
        return super().transfer(source, destination, **kwargs)


class CorruptingTransfer(ChunkedFileTransfer):
    """Copies normally, then flips the first byte of one destination file."""

    def __init__(self, victim: str) -> None:
        super().__init__()
        self.victim = victim

    def transfer(self, source, destination, **kwargs):  # type: ignore[no-untyped-def]
        result = super().transfer(source, destination, **kwargs)
        if Path(destination).name == self.victim:
            data = bytearray(Path(destination).read_bytes())
            data[0] ^= 0xFF
            Path(destination).write_bytes(bytes(data))
        return result


class GatedTransfer(ChunkedFileTransfer):
    """Blocks inside ``transfer`` until the test opens the gate."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.gate = threading.Event()

    def transfer(self, source, destination, **kwargs):  # type: ignore[no-untyped-def]
        self.started.set()
        self.gate.wait(10)
        return super().transfer(source, destination, **kwargs)


class CancellingTransfer(ChunkedFileTransfer):
    """Asks the engine to cancel once half of one file has been written."""

    def __init__(self, victim: str, buffer_size: int) -> None:
        super().__init__(buffer_size)
        self.victim = victim
        self.engine: Optional[MigrationEngine] = None

    def transfer(self, source, destination, **kwargs):  # type: ignore[no-untyped-def]
        forward = kwargs.get("on_progress")
        if Path(source).name == self.victim:

            def cancel_halfway(copied: int, total: int) -> None:
                if forward is not None:
                    forward(copied, total)
                if copied * 2 > total and self.engine is not None:
                    self.engine.request_cancel()

            kwargs["on_progress"] = cancel_halfway
        return super().transfer(source, destination, **kwargs)


class ExplodingTransfer(ChunkedFileTransfer):
    def transfer(self, source, destination, **kwargs):  # type: ignore[no-untyped-def]
        raise RuntimeError("disk controller on fire")


@pytest.fixture
def src(tmp_path: Path) -> Path:
    root = tmp_path / "src"
    _write_tree(root, TREE)
    (root / "empty_dir" / "inner").mkdir(parents=True)
    return root


@pytest.fixture
def dest(tmp_path: Path) -> Path:
    return tmp_path / "dest"


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(state_id="test-run", state_dir=tmp_path / "state")


async def _wait_for(event: threading.Event) -> None:
    while not event.is_set():
        await asyncio.sleep(0.01)


class TestMigrationOptions:
    def test_rejects_zero_workers(self) -> None:
        with pytest.raises(ConfigurationError):
            MigrationOptions(workers=0)

    def test_rejects_bad_buffer(self) -> None:
        with pytest.raises(ConfigurationError):
            MigrationOptions(buffer_size=0)

    def test_workers_capped_by_cpu_count(self) -> None:
        with pytest.MonkeyPatch.context() as mp:
            mp.setattr("tree_migrator.migration.engine.os.cpu_count", lambda: 2)
            assert MigrationOptions(workers=16).resolve_workers() == 2
            assert MigrationOptions().resolve_workers() == 2
            assert MigrationOptions(workers=1).resolve_workers() == 1


class TestCopy:
    def test_copies_tree(self, src: Path, dest: Path, store: CheckpointStore) -> None:
        engine = MigrationEngine(store=store)
        result = asyncio.run(engine.migrate(src, dest, MigrationOptions(workers=2)))

        assert result.outcome == MigrationOutcome.COMPLETED
        assert result
        assert result.files_completed == len(TREE)
        assert result.total_files == len(TREE)
        assert result.bytes_copied == result.total_bytes == sum(
            len(v) for v in TREE.values()
        )
        assert not result.resumed
        assert _read_tree(dest) == TREE
        assert _read_tree(src) == TREE
        assert (dest / "empty_dir" / "inner").is_dir()
        assert not store.exists()
        assert engine.state == EngineState.IDLE
        assert not engine.is_running

    def test_preserves_timestamps(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        os.utime(src / "docs" / "readme.txt", (1_500_000_000, 1_500_000_000))
        engine = MigrationEngine(store=store)
        asyncio.run(engine.migrate(src, dest))
        assert int((dest / "docs" / "readme.txt").stat().st_mtime) == 1_500_000_000

    def test_empty_source(
        self, tmp_path: Path, dest: Path, store: CheckpointStore
    ) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        result = asyncio.run(MigrationEngine(store=store).migrate(empty, dest))
        assert result.outcome == MigrationOutcome.COMPLETED
        assert result.total_files == 0
        assert dest.is_dir()

    def test_without_verification(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        options = MigrationOptions(verify=False, workers=3)
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest, options))
        assert result.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE

    def test_progress_sink_sees_final_totals(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        seen: List[MigrationProgress] = []
        options = MigrationOptions(progress_sink=seen.append, buffer_size=1 << 16)
        asyncio.run(MigrationEngine(store=store).migrate(src, dest, options))

        assert seen
        last = seen[-1]
        assert last.files_completed == len(TREE)
        assert last.bytes_copied == last.total_bytes
        assert all(p.bytes_copied <= p.total_bytes for p in seen)

    def test_not_resumable_never_writes_checkpoint(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        saved: List[int] = []
        original = store.save
        store.save = lambda state: saved.append(1) or original(state)  # type: ignore[method-assign]

        options = MigrationOptions(resumable=False)
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest, options))

        assert result.outcome == MigrationOutcome.COMPLETED
        assert saved == []
        assert not store.exists()


class TestMove:
    def test_moves_tree(self, src: Path, dest: Path, store: CheckpointStore) -> None:
        options = MigrationOptions(copy=False, workers=2)
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest, options))

        assert result.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE
        assert not src.exists()
        assert (dest / "empty_dir" / "inner").is_dir()

    def test_moves_without_verification(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        options = MigrationOptions(copy=False, verify=False)
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest, options))
        assert result.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE
        assert not src.exists()

    def test_file_moved_before_checkpoint_is_recorded(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        content = TREE["docs/readme.txt"]
        state = MigrationState.create(
            resolve_root(src),
            resolve_root(dest),
            [
                FileTask(
                    "docs/readme.txt",
                    len(content),
                    expected_digest=hashlib.sha256(content).hexdigest(),
                )
            ],
        )
        store.save(state)
        _write_tree(dest, {"docs/readme.txt": content})
        (src / "docs" / "readme.txt").unlink()

        transfer = RecordingTransfer()
        options = MigrationOptions(copy=False)
        result = asyncio.run(
            MigrationEngine(store=store, transfer=transfer).migrate(src, dest, options)
        )

        assert result.outcome == MigrationOutcome.COMPLETED
        assert result.resumed
        assert transfer.calls == []
        assert (dest / "docs" / "readme.txt").read_bytes() == content


class TestResume:
    def test_resumes_after_cancellation(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store)
        first_done: List[str] = []

        def stop_after_first(path: str) -> None:
            first_done.append(path)
            engine.request_cancel()

        options = MigrationOptions(workers=1, on_file_completed=stop_after_first)
        first = asyncio.run(engine.migrate(src, dest, options))

        assert first.outcome == MigrationOutcome.CANCELLED
        assert first.files_completed == 1
        assert first_done == ["big.bin"]
        checkpoint = store.load()
        assert checkpoint is not None
        assert checkpoint.completed_paths == ["big.bin"]
        assert len(checkpoint.pending_tasks) == len(TREE) - 1

        second_done: List[str] = []
        options = MigrationOptions(workers=1, on_file_completed=second_done.append)
        second = asyncio.run(engine.migrate(src, dest, options))

        assert second.outcome == MigrationOutcome.COMPLETED
        assert second.resumed
        assert sorted(second_done) == sorted(set(TREE) - {"big.bin"})
        assert second.files_completed == len(TREE)
        assert _read_tree(dest) == TREE
        assert not store.exists()

    def test_resumes_partial_file_from_offset(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        content = TREE["big.bin"]
        half = len(content) // 2
        state = MigrationState.create(
            resolve_root(src),
            resolve_root(dest),
            [
                FileTask(
                    "big.bin",
                    len(content),
                    bytes_copied=half,
                    expected_digest=hashlib.sha256(content).hexdigest(),
                )
            ],
        )
        store.save(state)
        _write_tree(dest, {"big.bin": content[:half]})

        transfer = RecordingTransfer()
        result = asyncio.run(
            MigrationEngine(store=store, transfer=transfer).migrate(src, dest)
        )

        assert result.outcome == MigrationOutcome.COMPLETED
        assert [c["start_offset"] for c in transfer.calls] == [half]
        assert (dest / "big.bin").read_bytes() == content

    def test_checkpoint_for_other_roots_is_ignored(
        self, src: Path, dest: Path, tmp_path: Path, store: CheckpointStore
    ) -> None:
        store.save(
            MigrationState.create(tmp_path / "elsewhere", dest, [FileTask("x", 1)])
        )
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest))
        assert result.outcome == MigrationOutcome.COMPLETED
        assert not result.resumed
        assert _read_tree(dest) == TREE

    def test_rescans_when_destination_vanished(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        store.save(
            MigrationState.create(
                resolve_root(src), resolve_root(dest), [FileTask("big.bin", 300_000)]
            )
        )
        result = asyncio.run(MigrationEngine(store=store).migrate(src, dest))
        assert result.outcome == MigrationOutcome.COMPLETED
        assert not result.resumed
        assert _read_tree(dest) == TREE

    def test_source_growing_after_scan_keeps_checkpoint_usable(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        def growing_walker(root: Path) -> Iterator[TreeFile]:
            yield from list(walk_tree(root))
            with open(root / "big.bin", "ab") as fh:
                fh.write(b"G" * 1000)

        engine = MigrationEngine(store=store, walker=growing_walker)
        first = asyncio.run(engine.migrate(src, dest, MigrationOptions(workers=1)))

        assert first.outcome == MigrationOutcome.FAILED
        assert [f.relative_path for f in first.failures] == ["big.bin"]
        assert "grew" in first.failures[0].reason
        checkpoint = store.load()
        assert checkpoint is not None
        task = checkpoint.get_task("big.bin")
        assert task is not None
        assert task.bytes_copied <= task.total_bytes

        second = asyncio.run(engine.migrate(src, dest))
        assert second.resumed
        assert second.outcome == MigrationOutcome.FAILED

        (src / "big.bin").write_bytes(TREE["big.bin"])
        third = asyncio.run(engine.migrate(src, dest))
        assert third.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE


class TestRerun:
    def test_existing_destination_rejected_by_default(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store)
        asyncio.run(engine.migrate(src, dest))
        with pytest.raises(DestinationExistsError):
            asyncio.run(engine.migrate(src, dest))

    def test_skip_existing_copies_nothing(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store)
        asyncio.run(engine.migrate(src, dest))

        done: List[str] = []
        options = MigrationOptions(
            allow_existing=True, skip_existing=True, on_file_completed=done.append
        )
        result = asyncio.run(engine.migrate(src, dest, options))

        assert result.outcome == MigrationOutcome.COMPLETED
        assert result.files_completed == len(TREE)
        assert done == []

    def test_skip_existing_recopies_changed_files(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store)
        asyncio.run(engine.migrate(src, dest))
        (dest / "docs" / "readme.txt").write_bytes(b"HELLO WORLD\n")

        done: List[str] = []
        options = MigrationOptions(
            allow_existing=True, skip_existing=True, on_file_completed=done.append
        )
        asyncio.run(engine.migrate(src, dest, options))

        assert done == ["docs/readme.txt"]
        assert _read_tree(dest) == TREE

    def test_skip_existing_move_removes_source(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store)
        asyncio.run(engine.migrate(src, dest))

        transfer = RecordingTransfer()
        options = MigrationOptions(copy=False, allow_existing=True, skip_existing=True)
        result = asyncio.run(
            MigrationEngine(store=store, transfer=transfer).migrate(src, dest, options)
        )

        assert result.outcome == MigrationOutcome.COMPLETED
        assert transfer.calls == []
        assert not src.exists()
        assert _read_tree(dest) == TREE


class TestVerificationFailure:
    def test_corrupted_copy_fails_and_stays_pending(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(
            store=store, transfer=CorruptingTransfer("readme.txt")
        )
        result = asyncio.run(engine.migrate(src, dest, MigrationOptions(workers=1)))

        assert result.outcome == MigrationOutcome.FAILED
        assert not result
        assert [f.relative_path for f in result.failures] == ["docs/readme.txt"]
        assert "Digest mismatch" in result.failures[0].reason

        checkpoint = store.load()
        assert checkpoint is not None
        task = checkpoint.get_task("docs/readme.txt")
        assert task is not None
        assert task.bytes_copied == 0

        retry = asyncio.run(MigrationEngine(store=store).migrate(src, dest))
        assert retry.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE

    def test_corrupted_move_keeps_source(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(
            store=store, transfer=CorruptingTransfer("readme.txt")
        )
        options = MigrationOptions(copy=False, workers=1)
        result = asyncio.run(engine.migrate(src, dest, options))

        assert result.outcome == MigrationOutcome.FAILED
        assert (src / "docs" / "readme.txt").read_bytes() == TREE["docs/readme.txt"]

    def test_worker_crash_propagates_and_keeps_checkpoint(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        engine = MigrationEngine(store=store, transfer=ExplodingTransfer())
        with pytest.raises(RuntimeError, match="on fire"):
            asyncio.run(engine.migrate(src, dest))
        assert store.exists()
        assert not engine.is_running


class TestPreconditions:
    def test_missing_source(self, tmp_path: Path, store: CheckpointStore) -> None:
        engine = MigrationEngine(store=store)
        with pytest.raises(SourceNotFoundError):
            asyncio.run(engine.migrate(tmp_path / "missing", tmp_path / "out"))
        assert not engine.is_running

    def test_destination_inside_source(
        self, src: Path, store: CheckpointStore
    ) -> None:
        with pytest.raises(InvalidPathError):
            asyncio.run(MigrationEngine(store=store).migrate(src, src / "copy"))
        assert not (src / "copy").exists()


class TestConcurrency:
    def test_second_migration_rejected_while_running(
        self, src: Path, dest: Path, tmp_path: Path, store: CheckpointStore
    ) -> None:
        transfer = GatedTransfer()
        engine = MigrationEngine(store=store, transfer=transfer)

        async def scenario() -> Any:
            first = asyncio.create_task(engine.migrate(src, dest))
            await _wait_for(transfer.started)
            assert engine.is_running
            assert engine.state == EngineState.TRANSFERRING
            with pytest.raises(MigrationInProgressError):
                await engine.migrate(src, tmp_path / "other")
            transfer.gate.set()
            return await first

        result = asyncio.run(scenario())
        assert result.outcome == MigrationOutcome.COMPLETED

    def test_cancel_stops_and_waits_for_idle(
        self, src: Path, dest: Path, store: CheckpointStore
    ) -> None:
        transfer = GatedTransfer()
        engine = MigrationEngine(store=store, transfer=transfer)

        async def scenario() -> Any:
            first = asyncio.create_task(
                engine.migrate(src, dest, MigrationOptions(workers=1))
            )
            await _wait_for(transfer.started)
            engine.request_cancel()
            transfer.gate.set()
            await engine.cancel()
            assert not engine.is_running
            return await first

        result = asyncio.run(scenario())

        assert result.outcome == MigrationOutcome.CANCELLED
        assert result.files_completed == 0
        checkpoint = store.load()
        assert checkpoint is not None
        assert len(checkpoint.pending_tasks) == len(TREE)

        resumed = asyncio.run(MigrationEngine(store=store).migrate(src, dest))
        assert resumed.outcome == MigrationOutcome.COMPLETED
        assert _read_tree(dest) == TREE

    def test_cancel_when_idle_is_noop(self, store: CheckpointStore) -> None:
        engine = MigrationEngine(store=store)
        engine.request_cancel()
        asyncio.run(engine.cancel())
        assert engine.state == EngineState.IDLE

    def test_cancel_mid_file_keeps_partial_offset(
        self, src: Path, dest: Path, store: CheckpointStore, monkeypatch
    ) -> None:
        monkeypatch.setattr("tree_migrator.migration.engine.os.cpu_count", lambda: 2)
        transfer = CancellingTransfer("big.bin", buffer_size=4096)
        engine = MigrationEngine(store=store, transfer=transfer)
        transfer.engine = engine

        result = asyncio.run(engine.migrate(src, dest, MigrationOptions(workers=2)))

        assert result.outcome == MigrationOutcome.CANCELLED
        checkpoint = store.load()
        assert checkpoint is not None
        pending = [t.relative_path for t in checkpoint.pending_tasks]
        recorded = pending + checkpoint.completed_paths
        assert len(recorded) == len(set(recorded))
        assert set(recorded) == set(TREE)

        big = checkpoint.get_task("big.bin")
        assert big is not None
        assert 0 < big.bytes_copied < big.total_bytes
        assert (dest / "big.bin").stat().st_size >= big.bytes_copied

        resume = RecordingTransfer()
        resumed = asyncio.run(
            MigrationEngine(store=store, transfer=resume).migrate(src, dest)
        )
        assert resumed.outcome == MigrationOutcome.COMPLETED
        offsets = {c["source"].name: c["start_offset"] for c in resume.calls}
        assert offsets["big.bin"] == big.bytes_copied
        assert _read_tree(dest) == TREE

    def test_snapshot_total_files_fixed_for_the_run(
        self, tmp_path: Path
    ) -> None:
        state = MigrationState.create(
            tmp_path / "src", tmp_path / "dest", [FileTask("a", 1), FileTask("b", 2)]
        )
        ctx = _RunContext(
            state=state,
            options=MigrationOptions(),
            reporter=ProgressReporter(None),
            source_root=tmp_path / "src",
            dest_root=tmp_path / "dest",
            save_lock=asyncio.Lock(),
            total_files=state.total_files,
        )

        # Halfway through mark_completed: removed from pending, not yet recorded.
        del state.pending_tasks[0]

        assert ctx.snapshot("a").total_files == 2
