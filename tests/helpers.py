"""Helpers for performing tests."""
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from io import BytesIO
import struct

from q1bsp.bsp import BSP_LUMPS, HEADER


__all__ = [
    'CountingAllocator', 'build_bsp', 'miptex_lump', 'entity_lump', 'pack_records',
    'ShortReader',
]


class CountingAllocator:
    """Tracks every buffer handed out, and optionally fails after a number of allocations.

    :param limit: If set, allocation number ``limit`` (starting from 0) and all later ones fail.
    """
    def __init__(self, limit: Optional[int] = None) -> None:
        self.limit = limit
        self.live: Dict[int, bytearray] = {}
        self.allocations = 0
        self.releases = 0
        self.failures = 0

    def allocate(self, size: int) -> Optional[bytearray]:
        if self.limit is not None and self.allocations >= self.limit:
            self.failures += 1
            return None
        self.allocations += 1
        buffer = bytearray(b'\xCD' * size)  # Garbage, zeroing must be explicit.
        self.live[id(buffer)] = buffer
        return buffer

    def release(self, buffer: bytearray) -> None:
        assert id(buffer) in self.live, 'Released a buffer twice, or one never allocated!'
        del self.live[id(buffer)]
        self.releases += 1

    @property
    def outstanding(self) -> int:
        """The number of buffers not yet released."""
        return len(self.live)


class ShortReader(BytesIO):
    """A stream which returns at most ``chunk`` bytes per read, to test read looping."""
    def __init__(self, data: bytes, chunk: int = 3) -> None:
        super().__init__(data)
        self.chunk = chunk

    def read(self, size: Optional[int] = -1) -> bytes:
        if size is None or size < 0 or size > self.chunk:
            size = self.chunk
        return super().read(size)


def pack_records(fmt: str, records: Iterable[Tuple[object, ...]]) -> bytes:
    """Pack a sequence of records with the same format."""
    st = struct.Struct(fmt)
    return b''.join(st.pack(*rec) for rec in records)


def entity_lump(*entities: Iterable[Tuple[str, str]]) -> bytes:
    """Build entity lump text from key/value pairs, null terminated."""
    parts: List[str] = []
    for ent in entities:
        parts.append('{\n')
        for key, value in ent:
            parts.append(f'"{key}" "{value}"\n')
        parts.append('}\n')
    return ''.join(parts).encode('ascii') + b'\0'


def miptex_lump(textures: Iterable[Optional[Tuple[str, int, int]]]) -> bytes:
    """Build a miptex lump. ``None`` produces a -1 directory slot.

    Each texture is given a header only, with mip offsets pointing just past it.
    """
    textures = list(textures)
    offsets: List[int] = []
    body = bytearray()
    base = 4 + 4 * len(textures)
    for tex in textures:
        if tex is None:
            offsets.append(-1)
            continue
        name, width, height = tex
        offsets.append(base + len(body))
        body += struct.pack(
            '<16s2I4I', name.encode('ascii'), width, height,
            40, 40 + width * height, 40 + width * height * 5 // 4, 40 + width * height * 21 // 16,
        )
    return struct.pack(f'<i{len(offsets)}i', len(offsets), *offsets) + bytes(body)


def build_bsp(lumps: Mapping[BSP_LUMPS, bytes], version: int = 29) -> bytes:
    """Produce a BSP file with the given lump contents. Missing lumps are empty.

    Lumps are written in reverse order after the header, so that the loader has to seek.
    """
    locations: Dict[BSP_LUMPS, Tuple[int, int]] = {}
    body = bytearray()
    for lump in reversed(BSP_LUMPS):
        data = lumps.get(lump, b'')
        locations[lump] = (HEADER.size + len(body), len(data))
        body += data
        # Pad to a multiple of 4.
        body += bytes(-len(body) % 4)
    header = [version]
    for lump in BSP_LUMPS:
        header.extend(locations[lump])
    return HEADER.pack(*header) + bytes(body)
