"""Parse the entity lump.

The lump is plain text, a series of blocks like::

    {
    "classname" "light"
    "origin" "128 64 32"
    }

Strings have no escapes, and anything outside a block other than ``{`` is ignored. A block
whose value string is unterminated is cut short at that point, keeping the properties already
read, instead of failing the whole map.
"""
from typing import Iterator, KeysView, List, Optional, Tuple, TypeVar, Union, overload

import attrs

from q1bsp import BSPAllocationError, logger
from q1bsp.allocator import Allocator, GrowableArray


__all__ = ['Property', 'Entity', 'parse_entities', 'ENCODING']

LOGGER = logger.get_logger('entities')
T = TypeVar('T')

# Used to convert between the raw bytes and str, preserving bytes > 127.
ENCODING = 'ascii'
# Initial capacities, both double when full.
ENTITY_CAPACITY = 16
PROPERTY_CAPACITY = 8
# Bytes reserved per slot: a pointer and a count, or two pointers.
ENTITY_SLOT_SIZE = 16
PROPERTY_SLOT_SIZE = 16

WHITESPACE = b' \t\n\r\x0b\x0c'
QUOTE = ord('"')
BRACE_OPEN = ord('{')
BRACE_CLOSE = ord('}')


def _decode(text: bytearray) -> str:
    """Convert an owned, null-terminated text buffer to a string."""
    return bytes(text[:-1]).decode(ENCODING, 'surrogateescape')


@attrs.frozen(eq=False)
class Property:
    """A single key/value pair, both stored in owned null-terminated buffers."""
    key_buffer: bytearray = attrs.field(repr=False)
    value_buffer: bytearray = attrs.field(repr=False)

    def __repr__(self) -> str:
        return f'Property({self.key!r}, {self.value!r})'

    @property
    def key(self) -> str:
        return _decode(self.key_buffer)

    @property
    def value(self) -> str:
        return _decode(self.value_buffer)

    def matches(self, key: bytes) -> bool:
        """Check if the key is exactly equal to these bytes."""
        return self.key_buffer[:-1] == key


class Entity:
    """An entity definition: an ordered sequence of properties.

    Keys may repeat; lookups by key return the first match, comparing bytes exactly.
    """
    def __init__(self, properties: GrowableArray[Property]) -> None:
        self._props = properties

    def __repr__(self) -> str:
        return f'Entity({list(self.items())!r})'

    def __len__(self) -> int:
        return len(self._props)

    def __iter__(self) -> Iterator[Property]:
        return iter(self._props)

    @property
    def properties(self) -> Tuple[Property, ...]:
        """The properties, in the order they appear in the lump."""
        return tuple(self._props)

    def get_property(self, index: int) -> Optional[Property]:
        """Return the property at this index, or ``None`` if out of range."""
        if 0 <= index < len(self._props):
            return self._props[index]
        return None

    def _find(self, key: str) -> Optional[Property]:
        try:
            raw = key.encode(ENCODING, 'surrogateescape')
        except UnicodeEncodeError:  # Can never match the stored bytes.
            return None
        for prop in self._props:
            if prop.matches(raw):
                return prop
        return None

    @overload
    def get(self, key: str) -> Optional[str]: ...
    @overload
    def get(self, key: str, default: T) -> Union[str, T]: ...

    def get(self, key: str, default: object = None) -> object:
        """Return the value of the first property with this key, or the default."""
        prop = self._find(key)
        return default if prop is None else prop.value

    def __getitem__(self, key: str) -> str:
        prop = self._find(key)
        if prop is None:
            raise KeyError(key)
        return prop.value

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._find(key) is not None

    def keys(self) -> KeysView[str]:
        """The keys in the entity. Duplicates only appear once."""
        return dict.fromkeys(prop.key for prop in self._props).keys()

    def items(self) -> Iterator[Tuple[str, str]]:
        """Iterate over every key/value pair, including duplicates."""
        for prop in self._props:
            yield prop.key, prop.value

    def release(self, alloc: Allocator) -> None:
        """Release every key and value, then the property storage."""
        for i, prop in enumerate(self._props):
            LOGGER.debug('Freeing property {} key {!r}', i, prop.key)
            alloc.release(prop.key_buffer)
            alloc.release(prop.value_buffer)
        self._props.release()


def _skip_whitespace(text: bytearray, pos: int, size: int) -> int:
    while pos < size and text[pos] in WHITESPACE:
        pos += 1
    return pos


def _parse_string(alloc: Allocator, text: bytearray, pos: int, size: int) -> Tuple[Optional[bytearray], int]:
    """Parse a quoted string, after any whitespace.

    Returns the owned null-terminated buffer and the position after the closing quote. If no
    complete string is present, ``None`` and the position where parsing stopped are returned.
    """
    pos = _skip_whitespace(text, pos, size)
    if pos >= size or text[pos] != QUOTE:
        return None, pos
    end = text.find(b'"', pos + 1, size)
    if end == -1:
        return None, size
    length = end - pos - 1
    buffer = alloc.allocate(length + 1)
    if buffer is None:
        raise BSPAllocationError(f'Could not allocate a {length}-byte entity string')
    with memoryview(text) as view:
        buffer[:length] = view[pos + 1:end]
    buffer[length] = 0
    return buffer, end + 1


def _parse_block(
    alloc: Allocator,
    text: bytearray, pos: int, size: int,
    props: GrowableArray[Property],
) -> int:
    """Read key/value pairs into the property array, returning the position after the block."""
    while pos < size and text[pos] != BRACE_CLOSE:
        key, pos = _parse_string(alloc, text, pos, size)
        if key is None:
            break
        try:
            value, pos = _parse_string(alloc, text, pos, size)
        except BSPAllocationError:
            alloc.release(key)
            raise
        if value is None:
            LOGGER.warning(
                'Entity truncated: no value for key "{}" at byte {}',
                _decode(key), pos,
            )
            alloc.release(key)
            break
        try:
            props.append(Property(key, value))
        except BSPAllocationError:
            alloc.release(key)
            alloc.release(value)
            raise
        pos = _skip_whitespace(text, pos, size)
    if pos < size and text[pos] == BRACE_CLOSE:
        pos += 1
    return pos


def parse_entities(alloc: Allocator, text: bytearray) -> GrowableArray[Entity]:
    """Parse entity blocks from a null-terminated text buffer.

    The text is scanned in place up to the first null byte. Everything allocated is released
    again if an allocation fails, before :py:class:`~q1bsp.BSPAllocationError` propagates.
    """
    size = text.find(b'\0')
    if size == -1:
        size = len(text)

    entities: GrowableArray[Entity] = GrowableArray(alloc, ENTITY_CAPACITY, ENTITY_SLOT_SIZE)
    pending: List[Entity] = []
    try:
        pos = 0
        while pos < size:
            pos = _skip_whitespace(text, pos, size)
            if pos >= size:
                break
            if text[pos] != BRACE_OPEN:
                # Stray content between blocks.
                pos += 1
                continue
            pos += 1
            props: GrowableArray[Property] = GrowableArray(alloc, PROPERTY_CAPACITY, PROPERTY_SLOT_SIZE)
            ent = Entity(props)
            pending.append(ent)
            entities.append(ent)
            pending.clear()
            pos = _parse_block(alloc, text, pos, size, props)
    except BSPAllocationError:
        for ent in [*entities, *pending]:
            ent.release(alloc)
        entities.release()
        raise
    return entities
