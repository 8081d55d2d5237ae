"""Read Quake 1 BSP files (version 29).

All lumps are read when :py:meth:`BSP.load` is called. Fixed-size records are kept packed in
their original buffers and decoded as they are accessed.
"""
from typing import (
    IO, Any, Callable, ClassVar, Dict, Generator, Generic, Iterator, List, Mapping, Optional,
    Sequence, Tuple, Type, TypeVar, Union, overload,
)
from typing_extensions import Self
from enum import Enum
from struct import Struct
import contextlib

import attrs

from q1bsp import (
    BSPAllocationError, BSPFormatError, BSPReadError, StringPath, logger,
)
from q1bsp.allocator import AllocateFunc, Allocator, GrowableArray, ReleaseFunc
from q1bsp.binformat import read_into, seek_to, struct_read
from q1bsp.entities import ENCODING, Entity, Property, parse_entities
from q1bsp.miptex import MipTex, MipTexDirectory, resolve_directory


__all__ = [
    'BSP_VERSION', 'BSP_LUMPS', 'LUMP_LOAD_ORDER',
    'BSP', 'Header', 'LumpInfo', 'RecordArray', 'RecordLump',
    'Plane', 'PlaneType', 'Vertex', 'Node', 'TexInfo', 'Face', 'ClipNode',
    'Leaf', 'Contents', 'Edge', 'Model',
    'Entity', 'Property', 'MipTex',
]

BSP_VERSION = 29
HEADER = Struct('<i30i')  # Version, then offset/length for each lump.

T = TypeVar('T')
LOGGER = logger.get_logger('bsp')


class BSP_LUMPS(Enum):
    """All the lumps in a BSP file.

    The values represent the order lumps appear in the index.
    """
    ENTITIES = 0  #: self.entities
    PLANES = 1  #: self.planes
    MIPTEX = 2  #: self.miptex
    VERTICES = 3  #: self.vertices
    VISDATA = 4  #: self.visdata
    NODES = 5  #: self.nodes
    TEXINFO = 6  #: self.texinfo
    FACES = 7  #: self.faces
    LIGHTING = 8  #: self.lighting
    CLIPNODES = 9  #: self.clipnodes
    LEAVES = 10  #: self.leaves
    FACELISTS = 11  #: self.facelists
    EDGES = 12  #: self.edges
    SURFEDGES = 13  #: self.surfedges
    MODELS = 14  #: self.models


LUMP_COUNT = len(BSP_LUMPS)
# Lumps are always decoded in index order.
LUMP_LOAD_ORDER: List[BSP_LUMPS] = sorted(BSP_LUMPS, key=lambda lump: lump.value)
BLOB_LUMPS = (BSP_LUMPS.VISDATA, BSP_LUMPS.LIGHTING)


class PlaneType(Enum):
    """The orientation of a plane."""
    X = 0  # Exactly in the X axis.
    Y = 1  # Exactly in the Y axis.
    Z = 2  # Exactly in the Z axis.
    ANY_X = 3  # Pointing mostly in the X axis
    ANY_Y = 4  # Pointing mostly in the Y axis.
    ANY_Z = 5  # Pointing mostly in the Z axis.


class Contents(Enum):
    """The contents of a leaf."""
    EMPTY = -1
    SOLID = -2
    WATER = -3
    SLIME = -4
    LAVA = -5
    SKY = -6
    ORIGIN = -7  # Removed by the compiler.
    CLIP = -8  # Changed to SOLID by the compiler.
    CURRENT_0 = -9
    CURRENT_90 = -10
    CURRENT_180 = -11
    CURRENT_270 = -12
    CURRENT_UP = -13
    CURRENT_DOWN = -14


def _enum_or_none(enum: Type[Enum], value: int) -> Any:
    try:
        return enum(value)
    except ValueError:
        return None


Vec3 = Tuple[float, float, float]
ShortVec3 = Tuple[int, int, int]


@attrs.frozen
class LumpInfo:
    """The location of a lump in the file."""
    offset: int
    length: int


@attrs.frozen
class Header:
    """The file header: the version, then the location of each lump."""
    version: int
    lumps: Mapping[BSP_LUMPS, LumpInfo] = attrs.field(repr=False)


@attrs.frozen
class Plane:
    """A plane, shared by nodes, clipnodes and faces."""
    ST: ClassVar[Struct] = Struct('<4fi')

    normal: Vec3
    dist: float
    type: int

    @classmethod
    def from_fields(cls, x: float, y: float, z: float, dist: float, typ: int) -> 'Plane':
        return cls((x, y, z), dist, typ)

    @property
    def plane_type(self) -> Optional[PlaneType]:
        """The orientation as an enum, or ``None`` if the stored value is unknown."""
        return _enum_or_none(PlaneType, self.type)


@attrs.frozen
class Vertex:
    """A point in the map."""
    ST: ClassVar[Struct] = Struct('<3f')

    x: float
    y: float
    z: float

    @classmethod
    def from_fields(cls, x: float, y: float, z: float) -> 'Vertex':
        return cls(x, y, z)

    def __iter__(self) -> Iterator[float]:
        yield self.x
        yield self.y
        yield self.z


@attrs.frozen
class Node:
    """A node in the rendering BSP tree.

    Positive children are node indexes, negative children are ``-(leaf + 1)``.
    """
    ST: ClassVar[Struct] = Struct('<i2h6h2H')

    plane_index: int
    children: Tuple[int, int]
    mins: ShortVec3
    maxs: ShortVec3
    first_face: int
    num_faces: int

    @classmethod
    def from_fields(
        cls, plane: int, front: int, back: int,
        min_x: int, min_y: int, min_z: int,
        max_x: int, max_y: int, max_z: int,
        first_face: int, num_faces: int,
    ) -> 'Node':
        return cls(
            plane, (front, back),
            (min_x, min_y, min_z), (max_x, max_y, max_z),
            first_face, num_faces,
        )


@attrs.frozen
class TexInfo:
    """Texture projection for faces: S and T axes with offsets, and the miptex index."""
    ST: ClassVar[Struct] = Struct('<8f2i')

    s_axis: Vec3
    s_offset: float
    t_axis: Vec3
    t_offset: float
    miptex: int
    flags: int

    @classmethod
    def from_fields(
        cls,
        s_x: float, s_y: float, s_z: float, s_off: float,
        t_x: float, t_y: float, t_z: float, t_off: float,
        miptex: int, flags: int,
    ) -> 'TexInfo':
        return cls((s_x, s_y, s_z), s_off, (t_x, t_y, t_z), t_off, miptex, flags)


@attrs.frozen
class Face:
    """A rendered face.

    ``first_edge`` and ``num_edges`` index into the surfedges, ``lightofs`` is an offset into the
    lighting lump, or -1 if unlit.
    """
    ST: ClassVar[Struct] = Struct('<hhihh4Bi')

    plane_index: int
    side: int  # 0 front, 1 back.
    first_edge: int
    num_edges: int
    texinfo: int
    styles: Tuple[int, int, int, int]
    lightofs: int

    @classmethod
    def from_fields(
        cls, plane: int, side: int, first_edge: int, num_edges: int, texinfo: int,
        style_a: int, style_b: int, style_c: int, style_d: int,
        lightofs: int,
    ) -> 'Face':
        return cls(
            plane, side, first_edge, num_edges, texinfo,
            (style_a, style_b, style_c, style_d), lightofs,
        )


@attrs.frozen
class ClipNode:
    """A node in a collision hull. Negative children are contents values."""
    ST: ClassVar[Struct] = Struct('<i2h')

    plane_index: int
    children: Tuple[int, int]

    @classmethod
    def from_fields(cls, plane: int, front: int, back: int) -> 'ClipNode':
        return cls(plane, (front, back))


@attrs.frozen
class Leaf:
    """A leaf in the rendering BSP tree."""
    ST: ClassVar[Struct] = Struct('<i6h2H4b')

    contents: int
    mins: ShortVec3
    maxs: ShortVec3
    first_face: int  # Index into the facelists.
    num_faces: int
    ambient_level: Tuple[int, int, int, int]

    @classmethod
    def from_fields(
        cls, contents: int,
        min_x: int, min_y: int, min_z: int,
        max_x: int, max_y: int, max_z: int,
        first_face: int, num_faces: int,
        amb_a: int, amb_b: int, amb_c: int, amb_d: int,
    ) -> 'Leaf':
        return cls(
            contents,
            (min_x, min_y, min_z), (max_x, max_y, max_z),
            first_face, num_faces,
            (amb_a, amb_b, amb_c, amb_d),
        )

    @property
    def contents_type(self) -> Optional[Contents]:
        """The contents as an enum, or ``None`` if the stored value is unknown."""
        return _enum_or_none(Contents, self.contents)


@attrs.frozen
class Edge:
    """A pair of vertex indexes."""
    ST: ClassVar[Struct] = Struct('<2H')

    a: int
    b: int

    @classmethod
    def from_fields(cls, a: int, b: int) -> 'Edge':
        return cls(a, b)


@attrs.frozen
class Model:
    """A brush model. The first is the world, the others are used by brush entities."""
    ST: ClassVar[Struct] = Struct('<9f4i2i')

    mins: Vec3
    maxs: Vec3
    origin: Vec3
    headnode: Tuple[int, int, int, int]  # Rendering tree, then the three clip hulls.
    first_face: int
    num_faces: int

    @classmethod
    def from_fields(
        cls,
        min_x: float, min_y: float, min_z: float,
        max_x: float, max_y: float, max_z: float,
        org_x: float, org_y: float, org_z: float,
        head_a: int, head_b: int, head_c: int, head_d: int,
        first_face: int, num_faces: int,
    ) -> 'Model':
        return cls(
            (min_x, min_y, min_z), (max_x, max_y, max_z), (org_x, org_y, org_z),
            (head_a, head_b, head_c, head_d),
            first_face, num_faces,
        )


def identity(x: T) -> T:
    """Identity function."""
    return x


class RecordArray(Sequence[T], Generic[T]):
    """A read-only view of the packed records in a lump buffer.

    Records are unpacked each time they are accessed.
    """
    def __init__(
        self,
        buffer: Optional[bytearray],
        fmt: Struct,
        factory: Callable[..., T],
        count: int,
    ) -> None:
        if count and (buffer is None or count * fmt.size > len(buffer)):
            raise ValueError(f'{count} records of {fmt.size} bytes do not fit in the buffer!')
        self._buffer = buffer
        self._fmt = fmt
        self._factory = factory
        self._count = count

    def __repr__(self) -> str:
        return f'<RecordArray {self._fmt.format!r} x {self._count}>'

    def __len__(self) -> int:
        return self._count

    def _unpack(self, index: int) -> T:
        assert self._buffer is not None
        if len(self._fmt.format) == 2:
            # Single value, no need to splat.
            return self._factory(self._fmt.unpack_from(self._buffer, index * self._fmt.size)[0])
        return self._factory(*self._fmt.unpack_from(self._buffer, index * self._fmt.size))

    @overload
    def __getitem__(self, index: int) -> T: ...
    @overload
    def __getitem__(self, index: slice) -> List[T]: ...

    def __getitem__(self, index: Union[int, slice]) -> Union[T, List[T]]:
        if isinstance(index, slice):
            return [self._unpack(i) for i in range(*index.indices(self._count))]
        if index < 0:
            index += self._count
        if not 0 <= index < self._count:
            raise IndexError('Record index out of range')
        return self._unpack(index)

    def __iter__(self) -> Iterator[T]:
        for i in range(self._count):
            yield self._unpack(i)

    def get(self, index: int) -> Optional[T]:
        """Return the record at this index, or ``None`` if out of range."""
        if 0 <= index < self._count:
            return self._unpack(index)
        return None


EMPTY_BUFFER = memoryview(b'')


class RecordLump(Generic[T]):
    """Exposes a fixed-record lump on :py:class:`BSP` as a :py:class:`RecordArray`.

    Declaring one on the class also registers the lump for decoding during loads.
    """
    lump: BSP_LUMPS
    __name__: str

    def __init__(self, lump: BSP_LUMPS, fmt: Struct, factory: Callable[..., T]) -> None:
        self.lump = lump
        self.fmt = fmt
        self.factory = factory
        self.__name__ = ''
        self._empty: RecordArray[T] = RecordArray(None, fmt, factory, 0)

    def __set_name__(self, owner: Type['BSP'], name: str) -> None:
        self.__name__ = name
        self.__objclass__ = owner
        # noinspection PyProtectedMember
        owner._record_lumps[self.lump] = self

    def __repr__(self) -> str:
        return f'<q1bsp.BSP.{self.__name__} member>'

    @overload
    def __get__(self, instance: None, owner: Optional[type] = None) -> 'RecordLump[T]': ...
    @overload
    def __get__(self, instance: 'BSP', owner: Optional[type] = None) -> RecordArray[T]: ...

    def __get__(self, instance: Optional['BSP'], owner: Optional[type] = None) -> Union['RecordLump[T]', RecordArray[T]]:
        if instance is None:  # Accessed on the class.
            return self
        # noinspection PyProtectedMember
        data = instance._data
        if data is None:
            return self._empty
        try:
            return data.records[self.lump]
        except KeyError:
            return self._empty

    def __set__(self, instance: 'BSP', value: object) -> None:
        raise AttributeError(f'{self.__name__} is read-only!')


@attrs.define(eq=False)
class _LoadedLumps:
    """Everything produced by a load, and the owner of every buffer in it."""
    alloc: Allocator
    header: Header
    # Every buffer to release, in the order they were allocated.
    owned: List[bytearray] = attrs.Factory(list)
    entities: Optional[GrowableArray[Entity]] = None
    # Frozen copy handed out to callers.
    entity_list: Tuple[Entity, ...] = ()
    records: Dict[BSP_LUMPS, RecordArray[Any]] = attrs.Factory(dict)
    blobs: Dict[BSP_LUMPS, bytearray] = attrs.Factory(dict)
    miptex: Optional[MipTexDirectory] = None

    def own(self, buffer: Optional[bytearray]) -> None:
        """Record that this buffer must be released during teardown."""
        if buffer is not None:
            self.owned.append(buffer)

    def release(self) -> None:
        """Release everything. Calling this again does nothing."""
        if self.entities is not None:
            for i, ent in enumerate(self.entities):
                LOGGER.debug('Freeing properties of entity {}', i)
                ent.release(self.alloc)
            LOGGER.debug('Freeing entities')
            self.entities.release()
        self.entities = None
        self.entity_list = ()
        for buffer in self.owned:
            self.alloc.release(buffer)
        self.owned.clear()
        self.records.clear()
        self.blobs.clear()
        self.miptex = None


def read_header(file: IO[bytes]) -> Header:
    """Read and validate the header, at the current position."""
    LOGGER.debug('Reading header...')
    try:
        version, *locations = struct_read(HEADER, file)
    except BSPReadError as exc:
        if exc.__cause__ is not None:  # The stream itself failed.
            raise
        raise BSPFormatError('File is too short to be a BSP file!') from exc
    if version != BSP_VERSION:
        raise BSPFormatError(f'Unsupported BSP version: {version} (expected {BSP_VERSION})!')
    lumps = {
        lump: LumpInfo(locations[2 * lump.value], locations[2 * lump.value + 1])
        for lump in BSP_LUMPS
    }
    LOGGER.debug('Header OK: version={}', version)
    return Header(version, lumps)


class BSP:
    """A Quake 1 BSP file.

    Construct with an optional allocate/release pair, then call :py:meth:`load`. Every buffer
    the map uses is requested from the allocator and given back by :py:meth:`destroy`. If a load
    fails, everything allocated so far is released before the exception propagates.

    Accessors never fail: out of range indexes, or a map which is not loaded, give ``None`` or
    ``0``.
    """
    _record_lumps: ClassVar[Dict[BSP_LUMPS, 'RecordLump[Any]']] = {}

    def __init__(
        self,
        allocate: Optional[AllocateFunc] = None,
        release: Optional[ReleaseFunc] = None,
    ) -> None:
        self.allocator = Allocator(allocate, release)
        self._data: Optional[_LoadedLumps] = None

    planes: RecordLump[Plane] = RecordLump(BSP_LUMPS.PLANES, Plane.ST, Plane.from_fields)
    vertices: RecordLump[Vertex] = RecordLump(BSP_LUMPS.VERTICES, Vertex.ST, Vertex.from_fields)
    nodes: RecordLump[Node] = RecordLump(BSP_LUMPS.NODES, Node.ST, Node.from_fields)
    texinfo: RecordLump[TexInfo] = RecordLump(BSP_LUMPS.TEXINFO, TexInfo.ST, TexInfo.from_fields)
    faces: RecordLump[Face] = RecordLump(BSP_LUMPS.FACES, Face.ST, Face.from_fields)
    clipnodes: RecordLump[ClipNode] = RecordLump(BSP_LUMPS.CLIPNODES, ClipNode.ST, ClipNode.from_fields)
    leaves: RecordLump[Leaf] = RecordLump(BSP_LUMPS.LEAVES, Leaf.ST, Leaf.from_fields)
    # Indexes into the faces, used by leaves.
    facelists: RecordLump[int] = RecordLump(BSP_LUMPS.FACELISTS, Struct('<h'), identity)
    edges: RecordLump[Edge] = RecordLump(BSP_LUMPS.EDGES, Edge.ST, Edge.from_fields)
    # Negative values use the edge in reverse.
    surfedges: RecordLump[int] = RecordLump(BSP_LUMPS.SURFEDGES, Struct('<i'), identity)
    models: RecordLump[Model] = RecordLump(BSP_LUMPS.MODELS, Model.ST, Model.from_fields)

    @classmethod
    def read(
        cls,
        filename: StringPath,
        allocate: Optional[AllocateFunc] = None,
        release: Optional[ReleaseFunc] = None,
    ) -> 'BSP':
        """Open and load the given file."""
        bsp = cls(allocate, release)
        with open(filename, 'rb') as file:
            bsp.load(file)
        return bsp

    def __repr__(self) -> str:
        if self._data is None:
            return '<BSP (not loaded)>'
        return (
            f'<BSP v{self._data.header.version}: {self.num_entities} entities, '
            f'{self.num_faces} faces, {self.num_models} models>'
        )

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        self.destroy()

    @property
    def is_loaded(self) -> bool:
        """If a map is currently loaded."""
        return self._data is not None

    def destroy(self) -> None:
        """Release everything. This is safe to call repeatedly, or before any load."""
        if self._data is not None:
            data, self._data = self._data, None
            data.release()

    @contextlib.contextmanager
    def _rollback_on_error(self, data: _LoadedLumps) -> Generator[_LoadedLumps, None, None]:
        """Release everything in the staged data if the block fails."""
        try:
            yield data
        except BaseException:
            LOGGER.debug('Load failed, releasing {} buffers', len(data.owned))
            data.release()
            raise

    def load(self, file: IO[bytes]) -> None:
        """Load a BSP from a seekable binary file, replacing any previously loaded map.

        :raises BSPFormatError: If the file is not a version 29 BSP, or the miptex directory is invalid.
        :raises BSPReadError: If seeking or reading a lump fails.
        :raises BSPAllocationError: If the allocator fails to provide a buffer.
        """
        self.destroy()
        name = str(getattr(file, 'name', '<stream>'))
        with logger.context(name):
            LOGGER.debug('Starting BSP file load...')
            seek_to(file, 0)
            header = read_header(file)

            with self._rollback_on_error(_LoadedLumps(self.allocator, header)) as data:
                for lump in LUMP_LOAD_ORDER:
                    info = header.lumps[lump]
                    if lump is BSP_LUMPS.ENTITIES:
                        self._read_entities(file, info, data)
                    elif lump is BSP_LUMPS.MIPTEX:
                        self._read_miptex(file, info, data)
                    elif lump in BLOB_LUMPS:
                        self._read_blob(file, lump, info, data)
                    else:
                        self._read_records(file, lump, info, data)
            self._data = data
            self._log_summary()

    def _read_blob(self, file: IO[bytes], lump: BSP_LUMPS, info: LumpInfo, data: _LoadedLumps) -> None:
        """Read a lump as opaque bytes."""
        LOGGER.debug('Reading {} lump (offset={}, length={})...', lump.name, info.offset, info.length)
        if info.length <= 0:
            return
        seek_to(file, info.offset)
        buffer = self.allocator.zeroed_allocate(info.length, 1)
        if buffer is None:
            raise BSPAllocationError(f'Could not allocate {info.length} bytes for {lump.name}')
        data.own(buffer)
        read_into(file, buffer, info.length)
        data.blobs[lump] = buffer

    def _read_records(self, file: IO[bytes], lump: BSP_LUMPS, info: LumpInfo, data: _LoadedLumps) -> None:
        """Read a lump of fixed-size records. Partial trailing records are ignored."""
        LOGGER.debug('Reading {} lump (offset={}, length={})...', lump.name, info.offset, info.length)
        if info.length <= 0:
            return
        seek_to(file, info.offset)
        decoder = self._record_lumps[lump]
        size = decoder.fmt.size
        count = info.length // size
        buffer: Optional[bytearray] = None
        if count:
            LOGGER.debug('Allocating {} {} records...', count, lump.name)
            buffer = self.allocator.zeroed_allocate(count, size)
            if buffer is None:
                raise BSPAllocationError(f'Could not allocate {count} {lump.name} records')
            data.own(buffer)
            read_into(file, buffer, count * size)
        data.records[lump] = RecordArray(buffer, decoder.fmt, decoder.factory, count)
        LOGGER.debug('{} loaded: {} records', lump.name, count)

    def _read_miptex(self, file: IO[bytes], info: LumpInfo, data: _LoadedLumps) -> None:
        """Read the miptex lump, then resolve its directory."""
        self._read_blob(file, BSP_LUMPS.MIPTEX, info, data)
        try:
            raw = data.blobs[BSP_LUMPS.MIPTEX]
        except KeyError:
            return
        data.miptex = directory = resolve_directory(self.allocator, raw)
        data.own(directory.offsets_buffer)
        LOGGER.debug('Miptex lump loaded: {} textures', directory.count)

    def _read_entities(self, file: IO[bytes], info: LumpInfo, data: _LoadedLumps) -> None:
        """Read the entity lump text, then parse it."""
        LOGGER.debug('Reading entities lump (offset={}, length={})...', info.offset, info.length)
        if info.length <= 0:
            LOGGER.debug('Entities lump empty')
            return
        seek_to(file, info.offset)
        # One more byte, for the null terminator.
        text = self.allocator.allocate(info.length + 1)
        if text is None:
            raise BSPAllocationError(f'Could not allocate {info.length + 1} bytes for entity text')
        try:
            read_into(file, text, info.length)
            text[info.length] = 0
            data.entities = parse_entities(self.allocator, text)
            data.entity_list = tuple(data.entities)
        finally:
            self.allocator.release(text)
        LOGGER.debug('Entities loaded: {} entities', len(data.entities))

    def _log_summary(self) -> None:
        LOGGER.debug(
            'BSP loaded:\n'
            'Entities: {}\nPlanes: {}\nMiptex: {}\nVertices: {}\nVisdata: {} bytes\n'
            'Nodes: {}\nTexinfo: {}\nFaces: {}\nLighting: {} bytes\nClipnodes: {}\n'
            'Leaves: {}\nFacelists: {}\nEdges: {}\nSurfedges: {}\nModels: {}',
            self.num_entities, self.num_planes, self.miptex_count, self.num_vertices,
            self.visdata_size, len(self.nodes), len(self.texinfo), self.num_faces,
            self.lighting_size, len(self.clipnodes), len(self.leaves),
            len(self.facelists), self.num_edges, len(self.surfedges), self.num_models,
        )

    # Accessors.
    @property
    def header(self) -> Optional[Header]:
        """The header of the loaded file."""
        return self._data.header if self._data is not None else None

    def lump_info(self, lump: BSP_LUMPS) -> Optional[LumpInfo]:
        """The location of a lump in the loaded file."""
        if self._data is None:
            return None
        return self._data.header.lumps[lump]

    def count(self, lump: BSP_LUMPS) -> int:
        """The number of items in a lump: records, bytes for blobs, or entities/textures."""
        if self._data is None:
            return 0
        if lump is BSP_LUMPS.ENTITIES:
            return self.num_entities
        if lump is BSP_LUMPS.MIPTEX:
            return self.miptex_count
        if lump in BLOB_LUMPS:
            return len(self._data.blobs.get(lump, b''))
        return len(self._record_lumps[lump].__get__(self))

    @property
    def entities(self) -> Sequence[Entity]:
        """The entities, in file order."""
        if self._data is None:
            return ()
        return self._data.entity_list

    @property
    def num_entities(self) -> int:
        return len(self.entities)

    def get_entity(self, ent_index: int) -> Optional[Entity]:
        """Return the entity at this index, or ``None``."""
        ents = self.entities
        if 0 <= ent_index < len(ents):
            return ents[ent_index]
        return None

    def entity_num_properties(self, ent_index: int) -> int:
        """The number of properties in an entity, or ``0`` if the index is out of range."""
        ent = self.get_entity(ent_index)
        return len(ent) if ent is not None else 0

    def _get_prop(self, ent_index: int, prop_index: int) -> Optional[Property]:
        ent = self.get_entity(ent_index)
        return ent.get_property(prop_index) if ent is not None else None

    def entity_property_key(self, ent_index: int, prop_index: int) -> Optional[str]:
        """The key of a property, or ``None`` if either index is out of range."""
        prop = self._get_prop(ent_index, prop_index)
        return prop.key if prop is not None else None

    def entity_property_value(self, ent_index: int, prop_index: int) -> Optional[str]:
        """The value of a property, or ``None`` if either index is out of range."""
        prop = self._get_prop(ent_index, prop_index)
        return prop.value if prop is not None else None

    def entity_get_property(self, ent_index: int, key: Optional[str]) -> Optional[str]:
        """The value of the first property with this exact key, or ``None``."""
        if key is None:
            return None
        ent = self.get_entity(ent_index)
        return ent.get(key) if ent is not None else None

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)

    @property
    def num_planes(self) -> int:
        return len(self.planes)

    @property
    def num_faces(self) -> int:
        return len(self.faces)

    @property
    def num_edges(self) -> int:
        return len(self.edges)

    @property
    def num_models(self) -> int:
        return len(self.models)

    def _blob(self, lump: BSP_LUMPS) -> memoryview:
        if self._data is None:
            return EMPTY_BUFFER
        try:
            return memoryview(self._data.blobs[lump]).toreadonly()
        except KeyError:
            return EMPTY_BUFFER

    @property
    def visdata(self) -> memoryview:
        """The compressed visibility data, read-only."""
        return self._blob(BSP_LUMPS.VISDATA)

    @property
    def lighting(self) -> memoryview:
        """The lightmap data, read-only."""
        return self._blob(BSP_LUMPS.LIGHTING)

    @property
    def visdata_size(self) -> int:
        return self.count(BSP_LUMPS.VISDATA)

    @property
    def lighting_size(self) -> int:
        return self.count(BSP_LUMPS.LIGHTING)

    @property
    def miptex(self) -> Sequence[Optional[MipTex]]:
        """Each slot in the miptex directory: a texture header, or ``None`` if invalid."""
        if self._data is None or self._data.miptex is None:
            return ()
        return self._data.miptex.textures

    @property
    def miptex_count(self) -> int:
        return len(self.miptex)

    def get_miptex(self, index: int) -> Optional[MipTex]:
        """Return the texture header in this directory slot, or ``None``."""
        textures = self.miptex
        if 0 <= index < len(textures):
            return textures[index]
        return None

    def find_entities(self, key: str, value: str) -> Iterator[Entity]:
        """Iterate over entities where the first property named ``key`` equals ``value``."""
        try:
            raw = value.encode(ENCODING, 'surrogateescape')
        except UnicodeEncodeError:  # No stored value can match.
            return
        for ent in self.entities:
            found = ent.get(key)
            if found is not None and found.encode(ENCODING, 'surrogateescape') == raw:
                yield ent
