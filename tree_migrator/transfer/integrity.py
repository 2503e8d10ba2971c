import hashlib
import logging
from pathlib import Path
from typing import Optional, Union

from ..utils.exceptions import MigrationCancelled, VerificationError
from .chunked import CancelSignal

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "sha256"
DEFAULT_HASH_CHUNK_SIZE = 1 << 20


class IntegrityVerifier:
    """Streams files through a hashlib digest and compares the result."""

    def __init__(
        self,
        algorithm: str = DEFAULT_ALGORITHM,
        chunk_size: int = DEFAULT_HASH_CHUNK_SIZE,
    ) -> None:
        if algorithm not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self._algorithm = algorithm
        self._chunk_size = chunk_size

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def digest(
        self,
        path: Union[str, Path],
        cancel: Optional[CancelSignal] = None,
    ) -> str:
        hasher = hashlib.new(self._algorithm)
        with open(path, "rb") as f:
            while True:
                if cancel is not None and cancel.is_set():
                    raise MigrationCancelled(f"Hashing of {path} cancelled")
                chunk = f.read(self._chunk_size)
                if not chunk:
                    break
                hasher.update(chunk)
        return hasher.hexdigest()

    def verify(self, path: Union[str, Path], expected: str) -> bool:
        try:
            self.ensure(path, expected)
        except VerificationError as e:
            logger.warning(
                "Digest mismatch for %s: expected %s, got %s", path, e.expected, e.actual
            )
            return False
        return True

    def ensure(
        self,
        path: Union[str, Path],
        expected: str,
        relative_path: Optional[str] = None,
    ) -> None:
        """Raise ``VerificationError`` unless ``path`` hashes to ``expected``."""
        actual = self.digest(path)
        if actual != expected.lower():
            raise VerificationError(
                f"Digest mismatch for {relative_path or path}",
                relative_path=relative_path,
                expected=expected,
                actual=actual,
            )
