"""The allocation contract used for every buffer a loaded BSP owns.

Callers may supply their own pair of ``allocate(size)`` and ``release(buffer)`` functions,
for instance to account for or limit memory use. The :py:class:`Allocator` wraps these with
zeroing and growing helpers, and :py:class:`GrowableArray` builds capacity-doubling sequences
on top of it.
"""
from typing import Callable, Generic, Iterator, List, Optional, Sequence, TypeVar, Union, overload
from typing_extensions import TypeAlias
import sys

from q1bsp import BSPAllocationError


__all__ = [
    'AllocateFunc', 'ReleaseFunc', 'default_allocate', 'default_release', 'zero_fill',
    'Allocator', 'GrowableArray',
]

T = TypeVar('T')
AllocateFunc: TypeAlias = Callable[[int], Optional[bytearray]]
ReleaseFunc: TypeAlias = Callable[[bytearray], None]
# Largest request we accept, mirroring an unsigned size type.
MAX_ALLOC_SIZE = sys.maxsize
# Buffers are zeroed this many bytes at a time.
ZERO_CHUNK = bytes(64 * 1024)


def default_allocate(size: int) -> bytearray:
    """Allocate a new zero-filled buffer."""
    return bytearray(size)


def default_release(buffer: bytearray) -> None:
    """Buffers from :py:func:`default_allocate` are reclaimed by the garbage collector."""


def zero_fill(buffer: bytearray, size: int) -> None:
    """Set the first ``size`` bytes of the buffer to zero, in place."""
    chunk = len(ZERO_CHUNK)
    with memoryview(buffer) as view:
        for start in range(0, size, chunk):
            end = min(start + chunk, size)
            view[start:end] = ZERO_CHUNK[:end - start]


class Allocator:
    """Wraps a pair of allocate/release callables.

    The allocate function returns a :external:py:class:`bytearray` of exactly the requested size,
    or ``None`` if it cannot. Every buffer handed out must eventually be passed to release once.
    """
    def __init__(
        self,
        allocate: Optional[AllocateFunc] = None,
        release: Optional[ReleaseFunc] = None,
    ) -> None:
        self._allocate = allocate if allocate is not None else default_allocate
        self._release = release if release is not None else default_release

    def __repr__(self) -> str:
        return f'<Allocator {self._allocate!r}, {self._release!r}>'

    def allocate(self, size: int) -> Optional[bytearray]:
        """Allocate a buffer of ``size`` bytes, or return ``None`` on failure."""
        if size < 0 or size > MAX_ALLOC_SIZE:
            return None
        try:
            return self._allocate(size)
        except MemoryError:
            return None

    def release(self, buffer: Optional[bytearray]) -> None:
        """Release a buffer. ``None`` is ignored."""
        if buffer is not None:
            self._release(buffer)

    def zeroed_allocate(self, count: int, elem_size: int) -> Optional[bytearray]:
        """Allocate ``count`` elements of ``elem_size`` bytes each, all set to zero.

        If the total size overflows or the allocation fails, ``None`` is returned.
        """
        if count < 0 or elem_size < 0:
            return None
        if elem_size and count > MAX_ALLOC_SIZE // elem_size:
            return None
        total = count * elem_size
        buffer = self.allocate(total)
        if buffer is not None:
            zero_fill(buffer, total)
        return buffer

    def grow(
        self,
        old: Optional[bytearray],
        old_count: int,
        new_count: int,
        elem_size: int,
    ) -> Optional[bytearray]:
        """Move ``old`` into a new buffer with room for ``new_count`` elements.

        The first ``min(old_count, new_count)`` elements are copied over. The old buffer is always
        released, even if the new allocation fails and ``None`` is returned.
        """
        new = self.zeroed_allocate(new_count, elem_size)
        if new is not None and old is not None and old_count:
            copy = min(old_count, new_count) * elem_size
            new[:copy] = old[:copy]
        self.release(old)
        return new


class GrowableArray(Sequence[T], Generic[T]):
    """A list whose capacity is reserved through an allocator, doubling when full.

    Items themselves are stored in a regular list. The allocator backs a slot buffer
    of ``capacity * slot_size`` bytes, so capacity growth is accounted for and can fail.
    """
    def __init__(self, alloc: Allocator, capacity: int, slot_size: int) -> None:
        self._alloc = alloc
        self._slot_size = slot_size
        self._items: List[T] = []
        self._slots = alloc.zeroed_allocate(capacity, slot_size)
        if self._slots is None:
            raise BSPAllocationError(f'Could not reserve {capacity} slots of {slot_size} bytes')
        self._capacity = capacity

    def __repr__(self) -> str:
        return f'<GrowableArray {len(self._items)}/{self._capacity}: {self._items!r}>'

    @property
    def capacity(self) -> int:
        """The number of items which fit before the storage must grow."""
        return self._capacity

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)

    @overload
    def __getitem__(self, index: int) -> T: ...
    @overload
    def __getitem__(self, index: slice) -> Sequence[T]: ...

    def __getitem__(self, index: Union[int, slice]) -> Union[T, Sequence[T]]:
        return self._items[index]

    def append(self, item: T) -> None:
        """Add an item, doubling the capacity first if the array is full."""
        if len(self._items) >= self._capacity:
            new_capacity = max(self._capacity * 2, 1)
            # grow() releases the old slots either way.
            self._slots = self._alloc.grow(
                self._slots, self._capacity, new_capacity, self._slot_size,
            )
            if self._slots is None:
                self._capacity = 0
                raise BSPAllocationError(
                    f'Could not grow array to {new_capacity} slots of {self._slot_size} bytes'
                )
            self._capacity = new_capacity
        self._items.append(item)

    def release(self) -> None:
        """Release the slot storage. The items are not touched."""
        self._alloc.release(self._slots)
        self._slots = None
        self._capacity = 0
