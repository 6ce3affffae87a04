"""Split a document's pages into contiguous ranges, one per worker."""

from dataclasses import dataclass
from typing import Iterator, List


@dataclass(frozen=True)
class PageRange:
    """Inclusive 1-indexed page range; ``end < start`` means empty."""
    start: int
    end: int

    def __len__(self) -> int:
        return max(0, self.end - self.start + 1)

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __str__(self) -> str:
        if not len(self):
            return "[]"
        return f"[{self.start}..{self.end}]"


def partition_pages(total_pages: int, worker_count: int) -> List[PageRange]:
    """
    Partition pages 1..total_pages into ``worker_count`` contiguous ranges.

    Ranges are disjoint, cover every page exactly once and differ in size by
    at most one page. When there are fewer pages than workers the trailing
    ranges are empty.

    Args:
        total_pages: Page count of the document (may be 0)
        worker_count: Number of workers (>= 1)

    Returns:
        Exactly ``worker_count`` PageRange objects in page order
    """
    if worker_count < 1:
        raise ValueError("worker_count must be at least 1")
    if total_pages < 0:
        raise ValueError("total_pages must not be negative")

    base, remainder = divmod(total_pages, worker_count)
    ranges: List[PageRange] = []
    start = 1
    for worker in range(worker_count):
        size = base + (1 if worker < remainder else 0)
        ranges.append(PageRange(start, start + size - 1))
        start += size
    return ranges
