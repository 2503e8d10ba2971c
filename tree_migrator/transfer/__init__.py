from .chunked import (
    CancelSignal,
    ChunkedFileTransfer,
    TransferResult,
    TransferStatus,
    choose_buffer_size,
)
from .integrity import IntegrityVerifier

__all__ = [
    "CancelSignal",
    "ChunkedFileTransfer",
    "TransferResult",
    "TransferStatus",
    "choose_buffer_size",
    "IntegrityVerifier",
]
