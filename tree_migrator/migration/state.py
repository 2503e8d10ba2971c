from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

STATE_FORMAT_VERSION = 1


@dataclass
class FileTask:
    relative_path: str
    total_bytes: int
    bytes_copied: int = 0
    expected_digest: Optional[str] = None

    @property
    def remaining_bytes(self) -> int:
        return self.total_bytes - self.bytes_copied


@dataclass
class MigrationState:
    source_root: str
    dest_root: str
    pending_tasks: List[FileTask] = field(default_factory=list)
    completed_paths: List[str] = field(default_factory=list)
    total_bytes: int = 0
    last_updated: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        source_root: Union[str, Path],
        dest_root: Union[str, Path],
        tasks: Optional[List[FileTask]] = None,
    ) -> "MigrationState":
        pending = list(tasks or [])
        return cls(
            source_root=str(source_root),
            dest_root=str(dest_root),
            pending_tasks=pending,
            completed_paths=[],
            total_bytes=sum(t.total_bytes for t in pending),
            last_updated=datetime.now(timezone.utc),
        )

    @property
    def total_files(self) -> int:
        return len(self.pending_tasks) + len(self.completed_paths)

    @property
    def pending_bytes(self) -> int:
        return sum(t.total_bytes for t in self.pending_tasks)

    @property
    def completed_bytes(self) -> int:
        return self.total_bytes - self.pending_bytes

    @property
    def is_complete(self) -> bool:
        return not self.pending_tasks

    def matches(
        self, source_root: Union[str, Path], dest_root: Union[str, Path]
    ) -> bool:
        return self.source_root == str(source_root) and self.dest_root == str(dest_root)

    def get_task(self, relative_path: str) -> Optional[FileTask]:
        for task in self.pending_tasks:
            if task.relative_path == relative_path:
                return task
        return None

    def mark_completed(self, relative_path: str) -> None:
        """Move a task from the pending list to the completed set.

        Calling it again for an already completed path is a no-op.
        """
        if relative_path in self.completed_paths:
            return
        for index, task in enumerate(self.pending_tasks):
            if task.relative_path == relative_path:
                del self.pending_tasks[index]
                self.completed_paths.append(relative_path)
                return
        raise KeyError(relative_path)

    def reset_task(self, relative_path: str) -> None:
        task = self.get_task(relative_path)
        if task is None:
            raise KeyError(relative_path)
        task.bytes_copied = 0

    def touch(self) -> None:
        self.last_updated = datetime.now(timezone.utc)


def _file_task_to_dict(task: FileTask) -> Dict[str, Any]:
    return {
        "relative_path": task.relative_path,
        "bytes_copied": task.bytes_copied,
        "total_bytes": task.total_bytes,
        "digest": task.expected_digest,
    }


def _file_task_from_dict(data: Dict[str, Any]) -> FileTask:
    total = int(data["total_bytes"])
    copied = int(data.get("bytes_copied", 0))
    if total < 0 or not 0 <= copied <= total:
        raise ValueError(
            f"Invalid byte counts for {data['relative_path']}: {copied}/{total}"
        )
    return FileTask(
        relative_path=str(data["relative_path"]),
        total_bytes=total,
        bytes_copied=copied,
        expected_digest=data.get("digest"),
    )


def state_to_dict(state: MigrationState) -> Dict[str, Any]:
    return {
        "version": STATE_FORMAT_VERSION,
        "source_root": state.source_root,
        "dest_root": state.dest_root,
        "total_bytes": state.total_bytes,
        "last_updated": state.last_updated.isoformat() if state.last_updated else None,
        "pending_tasks": [_file_task_to_dict(t) for t in state.pending_tasks],
        "completed_paths": list(state.completed_paths),
    }


def state_from_dict(data: Dict[str, Any]) -> MigrationState:
    """Rebuild a state from its JSON form.

    Raises ``ValueError`` or ``KeyError`` when the record is structurally
    unusable, including a path listed as both pending and completed.
    """
    version = data.get("version", STATE_FORMAT_VERSION)
    if version != STATE_FORMAT_VERSION:
        raise ValueError(f"Unsupported checkpoint version: {version}")

    pending = [_file_task_from_dict(t) for t in data.get("pending_tasks", [])]
    completed = [str(p) for p in data.get("completed_paths", [])]

    pending_paths = [t.relative_path for t in pending]
    if len(set(pending_paths)) != len(pending_paths):
        raise ValueError("Duplicate pending paths in checkpoint")
    if len(set(completed)) != len(completed):
        raise ValueError("Duplicate completed paths in checkpoint")
    overlap = set(pending_paths) & set(completed)
    if overlap:
        raise ValueError(f"Paths both pending and completed: {sorted(overlap)}")

    last_updated = None
    if data.get("last_updated"):
        last_updated = datetime.fromisoformat(data["last_updated"])

    pending_total = sum(t.total_bytes for t in pending)
    return MigrationState(
        source_root=str(data["source_root"]),
        dest_root=str(data["dest_root"]),
        pending_tasks=pending,
        completed_paths=completed,
        total_bytes=max(int(data.get("total_bytes", pending_total)), pending_total),
        last_updated=last_updated,
    )
