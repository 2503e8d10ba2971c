import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Union

from ..utils.exceptions import MigratorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TreeFile:
    relative_path: str
    absolute_path: Path
    size: int


def to_relative(root: Path, path: Path) -> str:
    return PurePosixPath(*path.relative_to(root).parts).as_posix()


def to_absolute(root: Path, relative_path: str) -> Path:
    return root.joinpath(*PurePosixPath(relative_path).parts)


def _scan_sorted(directory: Path) -> List[os.DirEntry]:
    try:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda entry: entry.name)
    except OSError as e:
        raise MigratorError(f"Failed to list directory {directory}: {e}") from e


def walk_tree(root: Union[str, Path], recursive: bool = True) -> Iterator[TreeFile]:
    """Yield every regular file below ``root`` in a stable, sorted order.

    Symlinks to directories are not followed, so a link cycle cannot make
    the walk run forever. Relative paths always use ``/`` separators so the
    checkpoint format does not depend on the platform that wrote it.
    """
    root_path = Path(root)
    pending = [root_path]

    while pending:
        directory = pending.pop(0)
        subdirectories: List[Path] = []
        for entry in _scan_sorted(directory):
            path = Path(entry.path)
            if entry.is_dir(follow_symlinks=False):
                if recursive:
                    subdirectories.append(path)
                continue
            if not entry.is_file():
                logger.debug("Skipping non-regular file %s", path)
                continue
            try:
                size = entry.stat().st_size
            except OSError as e:
                raise MigratorError(f"Failed to stat {path}: {e}") from e
            yield TreeFile(
                relative_path=to_relative(root_path, path),
                absolute_path=path,
                size=size,
            )
        pending[0:0] = subdirectories


def list_directories(root: Union[str, Path]) -> List[str]:
    """Return every directory below ``root`` as a relative path, parents first."""
    root_path = Path(root)
    result: List[str] = []
    pending = [root_path]
    while pending:
        directory = pending.pop(0)
        children = [
            Path(entry.path)
            for entry in _scan_sorted(directory)
            if entry.is_dir(follow_symlinks=False)
        ]
        result.extend(to_relative(root_path, child) for child in children)
        pending.extend(children)
    return result
