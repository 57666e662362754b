from __future__ import annotations

from dataclasses import dataclass, field
from typing import AbstractSet, List, Sequence, TypeVar

T = TypeVar("T")


@dataclass
class BatchView:
    offset: int
    size: int
    total: int
    items: list = field(default_factory=list)

    @property
    def page_number(self) -> int:
        return self.offset // self.size + 1 if self.size else 1

    @property
    def page_count(self) -> int:
        if not self.size:
            return 1
        return max(1, -(-self.total // self.size))

    @property
    def has_next(self) -> bool:
        return self.offset + self.size < self.total


def _place_id(item) -> str:
    return item.place_id


def current_page(pool: Sequence[T], offset: int, size: int) -> List[T]:
    if size <= 0:
        raise ValueError("batch size must be positive")
    return list(pool[offset : offset + size])


def page_exhausted(page: Sequence, eliminated: AbstractSet[str]) -> bool:
    """True when every item on a non-empty page was eliminated by someone."""
    return bool(page) and all(_place_id(item) in eliminated for item in page)


def survivors(page: Sequence[T], eliminated: AbstractSet[str]) -> List[T]:
    return [item for item in page if _place_id(item) not in eliminated]


def next_offset(pool: Sequence, offset: int, size: int, eliminated: AbstractSet[str]) -> int:
    """Offset after automatic advancing.

    Moves one page at a time while the active page is exhausted and another
    page follows; an exhausted last page stays put.
    """
    while True:
        page = current_page(pool, offset, size)
        if not page_exhausted(page, eliminated) or offset + size >= len(pool):
            return offset
        offset += size


def view(pool: Sequence, offset: int, size: int) -> BatchView:
    return BatchView(offset=offset, size=size, total=len(pool), items=current_page(pool, offset, size))
