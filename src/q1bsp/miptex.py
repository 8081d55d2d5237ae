"""Resolve the texture directory stored inside the miptex lump.

The lump starts with a count and a table of offsets, each pointing at a texture header
inside the same lump. Headers are exposed as :py:class:`MipTex` views into the raw lump
buffer, rather than being copied out.
"""
from typing import ClassVar, List, Optional, Tuple
from struct import Struct

import attrs

from q1bsp import BSPAllocationError, BSPFormatError, logger
from q1bsp.allocator import Allocator
from q1bsp.binformat import SIZE_INT, read_array, read_nullstr


__all__ = ['MipTex', 'MipTexDirectory', 'resolve_directory']

LOGGER = logger.get_logger('miptex')
ST_COUNT = Struct('<i')


@attrs.frozen(eq=False)
class MipTex:
    """A texture header, viewed inside the raw miptex lump.

    Fields are decoded each time they are accessed, after checking the header still fits
    inside the buffer.
    """
    ST: ClassVar[Struct] = Struct('<16s2I4I')

    _buffer: bytearray = attrs.field(repr=False)
    offset: int

    def _fields(self) -> Tuple[bytes, int, int, int, int, int, int]:
        if self.offset <= 0 or self.offset + self.ST.size > len(self._buffer):
            raise ValueError(
                f'Miptex header at {self.offset} no longer fits in a {len(self._buffer)}-byte lump!'
            )
        return self.ST.unpack_from(self._buffer, self.offset)

    @property
    def name(self) -> str:
        """The texture name, up to the first null byte."""
        return read_nullstr(self._fields()[0])

    @property
    def width(self) -> int:
        """Width of the full-size image."""
        return self._fields()[1]

    @property
    def height(self) -> int:
        """Height of the full-size image."""
        return self._fields()[2]

    @property
    def mip_offsets(self) -> Tuple[int, int, int, int]:
        """Offsets of the four mip levels, relative to the start of this header."""
        return self._fields()[3:]


@attrs.define(eq=False)
class MipTexDirectory:
    """The decoded directory: owned offset table, and a view (or ``None``) per slot."""
    offsets_buffer: Optional[bytearray] = attrs.field(repr=False)
    offsets: Tuple[int, ...]
    textures: Tuple[Optional[MipTex], ...]

    @property
    def count(self) -> int:
        return len(self.offsets)


def resolve_directory(alloc: Allocator, raw: bytearray) -> MipTexDirectory:
    """Decode the directory at the start of the raw miptex lump.

    A truncated directory raises :py:class:`~q1bsp.BSPFormatError`. Individual offsets which do
    not point at a complete header inside the lump produce ``None`` for that slot instead.
    """
    size = len(raw)
    if size < SIZE_INT:
        raise BSPFormatError(f'Miptex lump is only {size} bytes, too short for a directory!')
    [count] = ST_COUNT.unpack_from(raw, 0)
    LOGGER.debug('Miptex directory has {} entries', count)
    if count < 0:
        raise BSPFormatError(f'Miptex directory has negative count {count}!')

    dir_size = SIZE_INT + count * SIZE_INT
    if dir_size > size:
        raise BSPFormatError(
            f'Miptex directory truncated (need {dir_size} bytes, have {size})!'
        )

    offsets_buffer: Optional[bytearray] = None
    if count:
        offsets_buffer = alloc.allocate(count * SIZE_INT)
        if offsets_buffer is None:
            raise BSPAllocationError(f'Could not allocate {count} miptex offsets')
        with memoryview(raw) as view:
            offsets_buffer[:] = view[SIZE_INT:dir_size]

    offsets: List[int] = []
    if offsets_buffer is not None:
        offsets = read_array('<i', offsets_buffer, count)

    textures: List[Optional[MipTex]] = []
    for i, off in enumerate(offsets):
        if off <= 0:
            LOGGER.debug('Miptex {}: not present (offset={})', i, off)
            textures.append(None)
        elif off >= size:
            LOGGER.warning('Miptex {} offset out of range: {} (lump size={})', i, off, size)
            textures.append(None)
        elif off + MipTex.ST.size > size:
            LOGGER.warning('Miptex {} header truncated at offset {}', i, off)
            textures.append(None)
        else:
            textures.append(MipTex(raw, off))
    return MipTexDirectory(offsets_buffer, tuple(offsets), tuple(textures))
