"""Precondition checks on the source and destination of a migration."""

from pathlib import Path
from typing import Tuple, Union

from .exceptions import (
    DestinationExistsError,
    InvalidPathError,
    SourceNotFoundError,
)

PathLike = Union[str, Path]


def resolve_root(path: PathLike) -> Path:
    return Path(path).expanduser().resolve()


def is_within(child: Path, parent: Path) -> bool:
    """True if ``child`` is ``parent`` or lies below it.

    Compares path components, so ``/data/foo-bar`` is not inside ``/data/foo``.
    """
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True


def validate_roots(
    source: PathLike,
    destination: PathLike,
    allow_existing: bool = False,
) -> Tuple[Path, Path]:
    src = resolve_root(source)
    dest = resolve_root(destination)

    if not src.is_dir():
        raise SourceNotFoundError(f"Source directory not found: '{src}'", path=str(src))
    if src == dest:
        raise InvalidPathError(
            "Source and destination are the same directory", path=str(src)
        )
    if is_within(dest, src):
        raise InvalidPathError(
            f"Destination '{dest}' is inside the source directory", path=str(dest)
        )
    if is_within(src, dest):
        raise InvalidPathError(
            f"Source '{src}' is inside the destination directory", path=str(src)
        )
    if not allow_existing and dest.exists():
        raise DestinationExistsError(
            f"Destination directory already exists: '{dest}'", path=str(dest)
        )
    return src, dest
