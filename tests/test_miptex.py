"""Test resolving the miptex directory."""
from io import BytesIO
import struct

import pytest

from helpers import CountingAllocator, build_bsp, miptex_lump
from q1bsp import BSPFormatError
from q1bsp.allocator import Allocator
from q1bsp.bsp import BSP, BSP_LUMPS
from q1bsp.miptex import MipTex, resolve_directory


def header(name: bytes, width: int, height: int) -> bytes:
    return struct.pack('<16s2I4I', name, width, height, 40, 0, 0, 0)


def test_resolve() -> None:
    """Test valid and invalid slots."""
    counter = CountingAllocator()
    raw = bytearray(miptex_lump([('brick', 32, 16), None, ('+1button', 64, 64)]))
    directory = resolve_directory(Allocator(counter.allocate, counter.release), raw)
    assert directory.count == 3
    assert directory.offsets == (16, -1, 56)
    brick, missing, button = directory.textures
    assert missing is None
    assert brick.name == 'brick'
    assert brick.offset == 16
    assert (button.name, button.width, button.height) == ('+1button', 64, 64)
    # Only the offset table is copied.
    assert counter.outstanding == 1


def test_empty_directory() -> None:
    counter = CountingAllocator()
    directory = resolve_directory(Allocator(counter.allocate, counter.release), bytearray(4))
    assert directory.count == 0
    assert directory.textures == ()
    assert directory.offsets_buffer is None
    assert counter.allocations == 0


@pytest.mark.parametrize('raw', [
    b'',
    b'\x01\x00',
    struct.pack('<i', -1),
    struct.pack('<ii', 2, 12),  # Needs 12 bytes.
    struct.pack('<i', 1000),
], ids=['empty', 'short_count', 'negative', 'truncated', 'huge'])
def test_bad_directory(raw: bytes) -> None:
    counter = CountingAllocator()
    with pytest.raises(BSPFormatError):
        resolve_directory(Allocator(counter.allocate, counter.release), bytearray(raw))
    assert counter.outstanding == 0


def test_bad_offsets() -> None:
    """Offsets outside the lump, or where the header doesn't fit, are absent."""
    body = header(b'ok', 8, 8)
    # 7 ints of directory, then one 40-byte header: 68 bytes in total.
    raw = struct.pack('<7i', 6, 0, 28, 1000, 68, 28 + 40 - 1, 28) + body
    assert len(raw) == 68
    directory = resolve_directory(Allocator(), bytearray(raw))
    assert [tex is not None for tex in directory.textures] == [
        False,  # Zero.
        True,
        False,  # Past the end.
        False,  # Exactly at the end.
        False,  # Header doesn't fit.
        True,
    ]
    assert directory.textures[1].name == 'ok'
    assert directory.textures[5].offset == 28


def test_full_name() -> None:
    """A name using all 16 bytes has no terminator."""
    raw = bytearray(struct.pack('<2i', 1, 8) + header(b'ABCDEFGHIJKLMNOP', 1, 1))
    [tex] = resolve_directory(Allocator(), raw).textures
    assert tex.name == 'ABCDEFGHIJKLMNOP'


def test_view_revalidates() -> None:
    """Fields check the header still fits the buffer they view."""
    raw = bytearray(struct.pack('<2i', 1, 8) + header(b'test', 1, 1))
    tex = MipTex(raw, 8)
    assert tex.width == 1
    del raw[20:]
    with pytest.raises(ValueError):
        tex.width


def test_bsp_format_error() -> None:
    """An invalid directory fails the whole load, releasing everything."""
    counter = CountingAllocator()
    bsp = BSP(counter.allocate, counter.release)
    data = build_bsp({
        BSP_LUMPS.PLANES: bytes(40),
        BSP_LUMPS.MIPTEX: struct.pack('<ii', 3, 8),
    })
    with pytest.raises(BSPFormatError):
        bsp.load(BytesIO(data))
    assert counter.allocations == 2
    assert counter.outstanding == 0
    assert not bsp.is_loaded
