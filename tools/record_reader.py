#!/usr/bin/env python3
"""
record_reader.py - Cursor-based decoder engine for packed asset records

Decodes fixed-layout, 1-byte aligned binary records from an untrusted byte
buffer. A record is described by an ordered list of (field name, decoder)
pairs; one generic RecordDecoder walks that list, so no record type needs
hand-written parsing code.

Every decoder has the same shape:

    value, cursor = decoder.decode(cursor)

The cursor is an immutable (buffer, offset) pair threaded through the calls.
Reads are bounds-checked before any bytes are touched; a short buffer raises
OutOfBounds, an implausible element count raises InvalidCount, and a failure
inside a record, array or tag map is wrapped in NestedFailure so the caller
gets the full field path down to the failing byte offset.

Usage:
    from record_reader import Cursor, RecordDecoder, VariableArrayDecoder, U32

    decoder = RecordDecoder('Pair', [
        ('values', VariableArrayDecoder(U32)),
        ('flags', U32),
    ])
    record, end = decoder.read(payload_bytes)
"""

import struct
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, NamedTuple, Optional, Sequence, Tuple


class Endian(Enum):
    BIG = 'big'
    LITTLE = 'little'


# =============================================================================
# Errors
# =============================================================================

class DecodeError(ValueError):
    """Structural decode failure at a byte offset."""

    def __init__(self, message: str, offset: int):
        super().__init__(message)
        self.offset = offset


class OutOfBounds(DecodeError):
    """A read would consume bytes past the end of the buffer."""

    def __init__(self, offset: int, needed: int, available: int):
        super().__init__(
            f"Buffer too short: need {needed} bytes at pos {offset}, "
            f"{available} available", offset)
        self.needed = needed
        self.available = available


class InvalidCount(OutOfBounds):
    """
    A count field promises more elements than the buffer can hold, or more
    than the configured limit. Raised before any element is read.
    """

    def __init__(self, offset: int, count: int, min_size: int,
                 remaining: int, limit: Optional[int] = None):
        if limit is not None and count > limit:
            message = f"Count {count} at pos {offset} exceeds limit {limit}"
        else:
            message = (f"Count {count} at pos {offset} needs at least "
                       f"{count * min_size} bytes, {remaining} remain")
        DecodeError.__init__(self, message, offset)
        self.needed = count * min_size
        self.available = remaining
        self.count = count
        self.min_size = min_size
        self.remaining = remaining
        self.limit = limit


class UnknownTypeId(DecodeError):
    """A polymorphic array element names a type id with no registered record."""

    def __init__(self, offset: int, type_id: int):
        super().__init__(f"Unknown polymorphic type id {type_id} at pos {offset}", offset)
        self.type_id = type_id


class NestedFailure(DecodeError):
    """
    A field, element or entry decoder failed.

    `segment` is this level's piece of the path: `.name` for a record field,
    `[3]` for an array element, `[3]` plus `tag` for a tag map entry. Chained
    failures render as `SkillKitDefinition.arNodes[1].vPosition`.
    """

    def __init__(self, segment: str, cause: DecodeError,
                 record: Optional[str] = None, index: Optional[int] = None,
                 tag: Optional[int] = None):
        self.segment = segment
        self.cause = cause
        self.record = record
        self.index = index
        self.tag = tag
        super().__init__(f"{self.path}: {self.root_cause}", self.root_cause.offset)

    @property
    def field(self) -> Optional[str]:
        if self.segment.startswith('.'):
            return self.segment[1:]
        return None

    @property
    def path(self) -> str:
        parts = [self.segment]
        err = self.cause
        while isinstance(err, NestedFailure):
            parts.append(err.segment)
            err = err.cause
        return (self.record or '') + ''.join(parts)

    @property
    def root_cause(self) -> DecodeError:
        err = self.cause
        while isinstance(err, NestedFailure):
            err = err.cause
        return err


# =============================================================================
# Cursor
# =============================================================================

class Cursor(NamedTuple):
    """Read position into a byte buffer. Never mutated; reads return a new one."""
    buf: memoryview
    offset: int = 0

    @classmethod
    def over(cls, buffer, offset: int = 0) -> 'Cursor':
        """Start a cursor over any bytes-like buffer without copying it."""
        view = memoryview(buffer)
        if view.ndim != 1 or view.format != 'B':
            view = view.cast('B')
        if offset < 0 or offset > len(view):
            raise OutOfBounds(offset, 0, len(view))
        return cls(view, offset)

    @property
    def remaining(self) -> int:
        return len(self.buf) - self.offset

    def require(self, size: int) -> None:
        if size > self.remaining:
            raise OutOfBounds(self.offset, size, self.remaining)

    def advance(self, size: int) -> 'Cursor':
        self.require(size)
        return Cursor(self.buf, self.offset + size)

    def unpack(self, codec: struct.Struct) -> Tuple[tuple, 'Cursor']:
        self.require(codec.size)
        values = codec.unpack_from(self.buf, self.offset)
        return values, Cursor(self.buf, self.offset + codec.size)

    def take(self, size: int) -> Tuple[bytes, 'Cursor']:
        self.require(size)
        end = self.offset + size
        return self.buf[self.offset:end].tobytes(), Cursor(self.buf, end)


# =============================================================================
# Decoded value types
# =============================================================================

class Vector2D(NamedTuple):
    x: float
    y: float


class Vector3D(NamedTuple):
    x: float
    y: float
    z: float


class Vector4D(NamedTuple):
    x: float
    y: float
    z: float
    w: float


class Color(NamedTuple):
    r: int
    g: int
    b: int
    a: int


class Range(NamedTuple):
    start: Any
    end: Any


class OptionalValue(NamedTuple):
    flag: int
    value: Any


class StringFormula(NamedTuple):
    """Formula source text and its compiled byte form."""
    value: str
    formula: bytes


@dataclass(frozen=True)
class TypedRef:
    """
    Opaque handle to an asset of a named category.

    The category comes from the schema, not the stream. Handles compare and
    hash by raw identifier only; resolving them is the asset registry's job.
    """
    category: str = field(compare=False)
    raw_id: int
    is_null: bool = field(default=False, compare=False)


@dataclass(frozen=True)
class Record:
    """
    A fully decoded record: its type name and a read-only field mapping.

    Fields are also attributes (`record.dwNextID`), except those named
    `type_name`, `fields`, `get` or `keys`, which only item access
    (`record['keys']`) reaches. Records compare by value but are
    unhashable, since field values include tag maps.
    """
    type_name: str
    fields: Mapping[str, Any]

    __hash__ = None

    def __getitem__(self, name: str) -> Any:
        return self.fields[name]

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __getattr__(self, name: str) -> Any:
        fields = self.__dict__.get('fields')
        if fields is not None and name in fields:
            return fields[name]
        raise AttributeError(f"Record has no field '{name}'")

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)

    def keys(self) -> Iterable[str]:
        return self.fields.keys()


# =============================================================================
# Decoders
# =============================================================================

class Decoder:
    """
    Something that can be decoded at a cursor.

    `min_size` is the fewest bytes any encoding of the value can occupy; it
    lets count-prefixed containers reject impossible counts up front.
    """
    min_size = 0

    def decode(self, cursor: Cursor) -> Tuple[Any, Cursor]:
        raise NotImplementedError

    def read(self, buffer, offset: int = 0) -> Tuple[Any, int]:
        """Decode one value from `buffer` at `offset`; return it and the end offset."""
        value, cursor = self.decode(Cursor.over(buffer, offset))
        return value, cursor.offset


# name -> (struct format, value builder)
PRIMITIVES: Dict[str, Tuple[str, Any]] = {
    'u8': ('B', None),
    's8': ('b', None),
    'u16': ('H', None),
    's16': ('h', None),
    'u32': ('I', None),
    's32': ('i', None),
    'u64': ('Q', None),
    's64': ('q', None),
    'f32': ('f', None),
    'f64': ('d', None),
    'bool': ('?', None),
    'vec2': ('ff', Vector2D),
    'vec3': ('fff', Vector3D),
    'vec4': ('ffff', Vector4D),
    'rgba': ('BBBB', Color),
    'rgba_value': ('IIII', Color),
    'bcvec2i': ('II', tuple),
    'sno_name': ('ii', tuple),
}


class PrimitiveDecoder(Decoder):
    """Fixed-width scalar or small fixed aggregate."""

    def __init__(self, name: str, endian: Endian = Endian.LITTLE):
        if name not in PRIMITIVES:
            raise ValueError(f"Unknown primitive type: {name}")
        fmt, builder = PRIMITIVES[name]
        prefix = '<' if endian == Endian.LITTLE else '>'
        self.name = name
        self.endian = endian
        self.codec = struct.Struct(prefix + fmt)
        self.builder = builder
        self.min_size = self.codec.size

    def decode(self, cursor: Cursor) -> Tuple[Any, Cursor]:
        values, cursor = cursor.unpack(self.codec)
        if self.builder is None:
            return values[0], cursor
        if self.builder is tuple:
            return values, cursor
        return self.builder(*values), cursor

    def __repr__(self) -> str:
        return f"PrimitiveDecoder({self.name!r}, {self.endian.value})"


U32 = PrimitiveDecoder('u32')
S64 = PrimitiveDecoder('s64')
VEC2 = PrimitiveDecoder('vec2')


def read_u32(cursor: Cursor) -> Tuple[int, Cursor]:
    return U32.decode(cursor)


def read_s64(cursor: Cursor) -> Tuple[int, Cursor]:
    return S64.decode(cursor)


def read_vec2(cursor: Cursor) -> Tuple[Vector2D, Cursor]:
    return VEC2.decode(cursor)


class NullDecoder(Decoder):
    """Zero-width placeholder field; always decodes to None."""

    def decode(self, cursor: Cursor) -> Tuple[Any, Cursor]:
        return None, cursor


class PadDecoder(Decoder):
    """Skips `size` reserved bytes."""

    def __init__(self, size: int):
        self.size = size
        self.min_size = size

    def decode(self, cursor: Cursor) -> Tuple[Any, Cursor]:
        return None, cursor.advance(self.size)


class CharArrayDecoder(Decoder):
    """Fixed-length character field, NUL-terminated within its width."""

    def __init__(self, length: int):
        self.length = length
        self.min_size = length

    def decode(self, cursor: Cursor) -> Tuple[str, Cursor]:
        raw, cursor = cursor.take(self.length)
        return raw.split(b'\0', 1)[0].decode('utf-8', errors='replace'), cursor


class ReferenceDecoder(Decoder):
    """
    Fixed-width identifier stamped with a reference category.

    `null_ids` lists the sentinel values that mean "no asset"; by default
    all-bits-zero and all-bits-one.
    """

    def __init__(self, category: str, width: int = 4,
                 null_ids: Optional[Iterable[int]] = None,
                 endian: Endian = Endian.LITTLE):
        if width not in (4, 8):
            raise ValueError(f"Reference width must be 4 or 8, got {width}")
        self.category = category
        self.width = width
        self.id_decoder = PrimitiveDecoder('u32' if width == 4 else 'u64', endian)
        if null_ids is None:
            null_ids = (0, (1 << (8 * width)) - 1)
        self.null_ids = frozenset(null_ids)
        self.min_size = width

    def decode(self, cursor: Cursor) -> Tuple[TypedRef, Cursor]:
        raw_id, cursor = self.id_decoder.decode(cursor)
        return TypedRef(self.category, raw_id, raw_id in self.null_ids), cursor


def _check_count(cursor: Cursor, start: int, count: int, min_size: int,
                 limit: Optional[int]) -> None:
    if limit is not None and count > limit:
        raise InvalidCount(start, count, min_size, cursor.remaining, limit)
    if count * min_size > cursor.remaining:
        raise InvalidCount(start, count, min_size, cursor.remaining)


class BlobDecoder(Decoder):
    """u32 byte length followed by that many raw bytes."""
    min_size = 4

    def __init__(self, endian: Endian = Endian.LITTLE):
        self.length_decoder = PrimitiveDecoder('u32', endian)

    def decode(self, cursor: Cursor) -> Tuple[bytes, Cursor]:
        start = cursor.offset
        length, cursor = self.length_decoder.decode(cursor)
        _check_count(cursor, start, length, 1, None)
        return cursor.take(length)


class StringDecoder(BlobDecoder):
    """Length-prefixed UTF-8 text; anything from the first NUL on is dropped."""

    def decode(self, cursor: Cursor) -> Tuple[str, Cursor]:
        raw, cursor = super().decode(cursor)
        return raw.split(b'\0', 1)[0].decode('utf-8', errors='replace'), cursor


class StringFormulaDecoder(Decoder):
    """Length-prefixed formula text, then its length-prefixed compiled bytes."""
    min_size = 8

    def __init__(self, endian: Endian = Endian.LITTLE):
        self.text = StringDecoder(endian)
        self.formula = BlobDecoder(endian)

    def decode(self, cursor: Cursor) -> Tuple[StringFormula, Cursor]:
        value, cursor = self.text.decode(cursor)
        formula, cursor = self.formula.decode(cursor)
        return StringFormula(value, formula), cursor


class VariableArrayDecoder(Decoder):
    """u32 element count followed by that many elements."""
    min_size = 4

    def __init__(self, element: Decoder, endian: Endian = Endian.LITTLE,
                 max_count: Optional[int] = None):
        # A zero-width element would let a corrupt count spin without consuming input
        if element.min_size <= 0:
            raise ValueError("Array elements must occupy at least one byte")
        self.element = element
        self.count_decoder = PrimitiveDecoder('u32', endian)
        self.max_count = max_count

    def decode(self, cursor: Cursor) -> Tuple[tuple, Cursor]:
        start = cursor.offset
        count, cursor = self.count_decoder.decode(cursor)
        _check_count(cursor, start, count, self.element.min_size, self.max_count)

        items = []
        for index in range(count):
            try:
                item, cursor = self.element.decode(cursor)
            except DecodeError as e:
                raise NestedFailure(f"[{index}]", e, index=index) from e
            items.append(item)
        return tuple(items), cursor


class FixedArrayDecoder(Decoder):
    """Schema-fixed number of consecutive elements, no count field."""

    def __init__(self, element: Decoder, count: int):
        self.element = element
        self.count = count
        self.min_size = element.min_size * count

    def decode(self, cursor: Cursor) -> Tuple[tuple, Cursor]:
        cursor.require(self.min_size)
        items = []
        for index in range(self.count):
            try:
                item, cursor = self.element.decode(cursor)
            except DecodeError as e:
                raise NestedFailure(f"[{index}]", e, index=index) from e
            items.append(item)
        return tuple(items), cursor


class TagMapDecoder(Decoder):
    """
    u32 entry count, then (u32 tag, value) pairs.

    Tags are not unique in the stream; a repeated tag overwrites the earlier
    value but keeps the position of its first occurrence.
    """
    min_size = 4

    def __init__(self, value: Decoder, endian: Endian = Endian.LITTLE,
                 max_count: Optional[int] = None):
        self.value = value
        self.count_decoder = PrimitiveDecoder('u32', endian)
        self.tag_decoder = self.count_decoder
        self.max_count = max_count

    def decode(self, cursor: Cursor) -> Tuple[Mapping[int, Any], Cursor]:
        start = cursor.offset
        count, cursor = self.count_decoder.decode(cursor)
        entry_size = self.tag_decoder.min_size + self.value.min_size
        _check_count(cursor, start, count, entry_size, self.max_count)

        entries: Dict[int, Any] = {}
        for index in range(count):
            tag = None
            try:
                tag, cursor = self.tag_decoder.decode(cursor)
                value, cursor = self.value.decode(cursor)
            except DecodeError as e:
                raise NestedFailure(f"[{index}]", e, index=index, tag=tag) from e
            entries[tag] = value
        return MappingProxyType(entries), cursor


class PolymorphicArrayDecoder(Decoder):
    """
    u32 element count, then per element a u32 type id followed by the
    record registered for that id. Elements of one array may differ in type.
    """
    min_size = 4

    def __init__(self, types: Mapping[int, Decoder], endian: Endian = Endian.LITTLE,
                 max_count: Optional[int] = None):
        if not types:
            raise ValueError("Polymorphic arrays need at least one registered type")
        self.types = MappingProxyType(dict(types))
        self.count_decoder = PrimitiveDecoder('u32', endian)
        self.type_decoder = self.count_decoder
        self.max_count = max_count
        self.element_size = (self.type_decoder.min_size
                             + min(d.min_size for d in self.types.values()))

    def decode(self, cursor: Cursor) -> Tuple[tuple, Cursor]:
        start = cursor.offset
        count, cursor = self.count_decoder.decode(cursor)
        _check_count(cursor, start, count, self.element_size, self.max_count)

        items = []
        for index in range(count):
            try:
                type_offset = cursor.offset
                type_id, cursor = self.type_decoder.decode(cursor)
                element = self.types.get(type_id)
                if element is None:
                    raise UnknownTypeId(type_offset, type_id)
                item, cursor = element.decode(cursor)
            except DecodeError as e:
                raise NestedFailure(f"[{index}]", e, index=index) from e
            items.append(item)
        return tuple(items), cursor


class OptionalDecoder(Decoder):
    """s32 flag word followed by the value."""

    def __init__(self, inner: Decoder, endian: Endian = Endian.LITTLE):
        self.inner = inner
        self.flag_decoder = PrimitiveDecoder('s32', endian)
        self.min_size = 4 + inner.min_size

    def decode(self, cursor: Cursor) -> Tuple[OptionalValue, Cursor]:
        flag, cursor = self.flag_decoder.decode(cursor)
        value, cursor = self.inner.decode(cursor)
        return OptionalValue(flag, value), cursor


class RangeDecoder(Decoder):
    """Two consecutive values of one type: start, end."""

    def __init__(self, inner: Decoder):
        self.inner = inner
        self.min_size = 2 * inner.min_size

    def decode(self, cursor: Cursor) -> Tuple[Range, Cursor]:
        start, cursor = self.inner.decode(cursor)
        end, cursor = self.inner.decode(cursor)
        return Range(start, end), cursor


class RecordDecoder(Decoder):
    """
    Decodes a record from its ordered field list.

    Fields are read in declaration order with no padding and no length
    prefix; the record's size is whatever its fields consume. Field names
    starting with '_' are read but left out of the result.
    """

    def __init__(self, name: str, fields: Sequence[Tuple[str, Decoder]]):
        self.name = name
        self.fields = tuple(fields)
        self.min_size = sum(decoder.min_size for _, decoder in self.fields)

    def decode(self, cursor: Cursor) -> Tuple[Record, Cursor]:
        values: Dict[str, Any] = {}
        for index, (name, decoder) in enumerate(self.fields):
            try:
                value, cursor = decoder.decode(cursor)
            except DecodeError as e:
                raise NestedFailure(f".{name}", e, record=self.name, index=index) from e
            if not name.startswith('_'):
                values[name] = value
        return Record(self.name, MappingProxyType(values)), cursor

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.fields)

    def __repr__(self) -> str:
        return f"RecordDecoder({self.name!r}, {len(self.fields)} fields)"
