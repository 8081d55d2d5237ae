"""
The binformat module :mod:`binformat` contains the low-level helpers for reading the binary \
structures in BSP files, expanding on :external:mod:`struct`'s functionality.

"""
from typing import IO, Any, Final, List, Mapping, Optional, Tuple, Union
from struct import Struct
import functools

from q1bsp import BSPReadError


__all__ = [
    'SIZES',
    'SIZE_CHAR', 'SIZE_FLOAT', 'SIZE_INT', 'SIZE_SHORT',
    'read_exact', 'read_into', 'seek_to', 'struct_read', 'read_array', 'read_nullstr',
]

SIZES: Final[Mapping[str, int]] = {
    fmt: Struct('<' + fmt).size
    for fmt in 'cbB?hHiIlLqQfd'
}
SIZE_CHAR: Final = 1
SIZE_SHORT: Final = 2
SIZE_INT: Final = 4
SIZE_FLOAT: Final = 4

assert SIZE_CHAR == SIZES['b']
assert SIZE_SHORT == SIZES['h']
assert SIZE_INT == SIZES['i']
assert SIZE_FLOAT == SIZES['f']

_cached_struct = functools.lru_cache()(Struct)


def seek_to(file: IO[bytes], offset: int) -> None:
    """Seek to an absolute offset, which must not be negative."""
    if offset < 0:
        raise BSPReadError(f'Cannot seek to negative offset {offset}!')
    try:
        file.seek(offset)
    except (OSError, ValueError, OverflowError) as exc:
        raise BSPReadError(f'Cannot seek to offset {offset}: {exc}') from exc


def read_into(file: IO[bytes], buffer: Union[bytearray, memoryview], size: int) -> None:
    """Fill the start of ``buffer`` with exactly ``size`` bytes from the file.

    Reads are repeated until enough data arrives. If the file ends early, or reading fails,
    :py:class:`~q1bsp.BSPReadError` is raised and the buffer holds whatever was read.
    """
    view = memoryview(buffer)
    pos = 0
    while pos < size:
        try:
            chunk = file.read(size - pos)
        except OSError as exc:
            raise BSPReadError(f'Read failed after {pos} of {size} bytes: {exc}') from exc
        if not chunk:
            raise BSPReadError(f'Expected {size} bytes, file ended after {pos}!')
        view[pos:pos + len(chunk)] = chunk
        pos += len(chunk)


def read_exact(file: IO[bytes], size: int) -> bytes:
    """Read exactly ``size`` bytes from the file, raising :py:class:`~q1bsp.BSPReadError` if short."""
    buffer = bytearray(size)
    read_into(file, buffer, size)
    return bytes(buffer)


def struct_read(fmt: Union[Struct, str], file: IO[bytes]) -> Tuple[Any, ...]:
    """Read a structure from the file, automatically computing the required number of bytes."""
    if not isinstance(fmt, Struct):
        fmt = _cached_struct(fmt)
    return fmt.unpack(read_exact(file, fmt.size))


def read_array(fmt: Union[str, Struct], data: Union[bytes, bytearray, memoryview], count: Optional[int] = None) -> List[int]:
    """Read a buffer containing a stream of integers.

    The format string should be one of the integer format characters, optionally prefixed by an
    endianness indicator. If ``count`` is not given, as many integers as fit are read.
    """
    if isinstance(fmt, Struct):
        fmt = fmt.format

    if len(fmt) == 2:
        endianness = fmt[0]
        fmt = fmt[1]
    else:
        endianness = ''
    try:
        item_size = SIZES[fmt]
    except KeyError:
        raise ValueError(f'Unknown format character {fmt!r}!') from None
    if count is None:
        count = len(data) // item_size
    return list(Struct(endianness + fmt * count).unpack_from(data))


def read_nullstr(data: Union[bytes, bytearray, memoryview], encoding: str = 'ascii') -> str:
    """Decode a fixed-size character field, stopping at the first null byte.

    Bytes outside the encoding are preserved with ``surrogateescape``.
    """
    raw = bytes(data)
    end = raw.find(b'\0')
    if end != -1:
        raw = raw[:end]
    return raw.decode(encoding, 'surrogateescape')
