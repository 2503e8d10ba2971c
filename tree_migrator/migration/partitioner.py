import heapq
import logging
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _default_size(item: object) -> int:
    size: int = getattr(item, "total_bytes")
    return size


def partition(
    files: Sequence[T],
    partition_count: int,
    size_key: Optional[Callable[[T], int]] = None,
) -> List[List[T]]:
    """Split ``files`` into at most ``partition_count`` size-balanced groups.

    Greedy descending bin packing: files are taken largest first (ties keep
    their input order) and each one goes to the partition with the smallest
    running total, lowest index first. The largest and smallest partition
    totals therefore never differ by more than the largest single file.
    Partitions that receive nothing are dropped, and every input item lands
    in exactly one partition, in descending size order within it.
    """
    if partition_count < 1:
        raise ValueError("partition_count must be >= 1")
    if not files:
        return []

    key = size_key or _default_size
    ordered = sorted(
        enumerate(files), key=lambda pair: (-key(pair[1]), pair[0])
    )
    count = min(partition_count, len(files))

    buckets: List[List[T]] = [[] for _ in range(count)]
    heap: List[Tuple[int, int]] = [(0, index) for index in range(count)]

    for _, item in ordered:
        total, index = heapq.heappop(heap)
        buckets[index].append(item)
        heapq.heappush(heap, (total + key(item), index))

    result = [bucket for bucket in buckets if bucket]
    logger.debug(
        "Partitioned %d files into %d partitions (requested %d)",
        len(files),
        len(result),
        partition_count,
    )
    return result


def partition_sizes(
    partitions: Sequence[Sequence[T]],
    size_key: Optional[Callable[[T], int]] = None,
) -> List[int]:
    key = size_key or _default_size
    return [sum(key(item) for item in part) for part in partitions]
