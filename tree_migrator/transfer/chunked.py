import logging
import os
import shutil
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from ..utils.exceptions import TransferError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1 << 17
SINGLE_CHUNK_CUTOFF = 1 << 18

ProgressCallback = Callable[[int, int], None]


def choose_buffer_size(total_bytes: int, preferred: Optional[int] = None) -> int:
    """Pick the chunk size for a file of ``total_bytes``.

    Files below the cutoff are copied in one chunk sized to the file.
    """
    if total_bytes < SINGLE_CHUNK_CUTOFF:
        return max(total_bytes, 1)
    if preferred is not None and preferred > 0:
        return preferred
    return DEFAULT_BUFFER_SIZE


class CancelSignal:
    """Cooperative cancellation flag shared between the engine and its workers."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def set(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()

    def is_set(self) -> bool:
        return self._event.is_set()


class TransferStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TransferResult:
    status: TransferStatus
    bytes_copied: int
    total_bytes: int
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == TransferStatus.SUCCESS

    def raise_for_status(self, relative_path: Optional[str] = None) -> None:
        if self.status == TransferStatus.FAILED:
            raise TransferError(
                self.error or "transfer failed",
                relative_path=relative_path,
                bytes_copied=self.bytes_copied,
            )


class ChunkedFileTransfer:
    def __init__(self, buffer_size: Optional[int] = None) -> None:
        if buffer_size is not None and buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._buffer_size = buffer_size

    def transfer(
        self,
        source: Union[str, Path],
        destination: Union[str, Path],
        start_offset: int = 0,
        copy: bool = True,
        total_bytes: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelSignal] = None,
        preserve_timestamps: bool = False,
    ) -> TransferResult:
        """Copy ``source`` to ``destination`` starting at ``start_offset``.

        The destination is truncated to ``start_offset`` before writing, so a
        partially written tail from an interrupted attempt is overwritten. If
        the destination is missing or shorter than the offset, the copy
        restarts from zero. Failures and cancellation are returned, not
        raised; ``bytes_copied`` is always the last offset known to be on disk.
        When ``copy`` is False the source is deleted after a full success.
        """
        source = Path(source)
        destination = Path(destination)
        offset = start_offset
        declared = total_bytes

        try:
            src = open(source, "rb")
        except OSError as e:
            return self._failed(
                offset, declared or 0, f"Cannot open source {source}: {e}"
            )

        with src:
            try:
                if declared is None:
                    declared = os.fstat(src.fileno()).st_size
                offset = self._usable_offset(destination, offset, declared)
                dest = open(destination, "r+b" if offset > 0 else "wb")
            except OSError as e:
                return self._failed(
                    0, declared or 0, f"Cannot open destination {destination}: {e}"
                )

            with dest:
                try:
                    src.seek(offset)
                    dest.seek(offset)
                    dest.truncate(offset)
                except OSError as e:
                    return self._failed(offset, declared, f"Seek failed: {e}")

                result = self._copy_chunks(
                    src, dest, offset, declared, on_progress, cancel
                )

        if not result.ok:
            return result

        if result.bytes_copied != declared:
            return self._failed(
                result.bytes_copied,
                declared,
                f"Copy failed: expected {declared} bytes but copied "
                f"{result.bytes_copied} bytes",
            )

        try:
            if preserve_timestamps:
                shutil.copystat(source, destination)
            if not copy:
                source.unlink()
        except OSError as e:
            return self._failed(result.bytes_copied, declared, str(e))

        return result

    def _copy_chunks(
        self,
        src: BinaryIO,
        dest: BinaryIO,
        offset: int,
        total: int,
        on_progress: Optional[ProgressCallback],
        cancel: Optional[CancelSignal],
    ) -> TransferResult:
        buffer_size = choose_buffer_size(total, self._buffer_size)
        copied = offset

        while copied < total:
            if cancel is not None and cancel.is_set():
                return TransferResult(TransferStatus.CANCELLED, copied, total)
            try:
                chunk = src.read(min(buffer_size, total - copied))
                if not chunk:
                    break
                written = dest.write(chunk)
                dest.flush()
            except OSError as e:
                return self._failed(copied, total, f"I/O error at offset {copied}: {e}")
            if written != len(chunk):
                return self._failed(
                    copied,
                    total,
                    f"Short write at offset {copied}: {written} of {len(chunk)} bytes",
                )
            copied += written
            if on_progress is not None:
                on_progress(copied, total)

        try:
            extra = src.read(1) if copied == total else b""
            os.fsync(dest.fileno())
        except OSError as e:
            return self._failed(copied, total, f"Failed to flush destination: {e}")
        if extra:
            return self._failed(
                copied, total, f"Source grew past the expected {total} bytes"
            )
        return TransferResult(TransferStatus.SUCCESS, copied, total)

    @staticmethod
    def _usable_offset(destination: Path, offset: int, total: int) -> int:
        if offset <= 0:
            return 0
        if offset > total:
            logger.warning(
                "Resume offset %d beyond size %d of %s, restarting",
                offset,
                total,
                destination,
            )
            return 0
        try:
            existing = destination.stat().st_size
        except FileNotFoundError:
            logger.warning("Partial file %s missing, restarting copy", destination)
            return 0
        if existing < offset:
            logger.warning(
                "Partial file %s has %d bytes, expected at least %d; restarting",
                destination,
                existing,
                offset,
            )
            return 0
        return offset

    @staticmethod
    def _failed(copied: int, total: int, error: str) -> TransferResult:
        logger.warning("Transfer failed: %s", error)
        return TransferResult(TransferStatus.FAILED, copied, total, error=error)
