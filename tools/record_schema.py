#!/usr/bin/env python3
"""
record_schema.py - Record catalogue: field lists as data

Builds RecordDecoders from a catalogue document instead of per-type code.
Catalogues are usually YAML:

    endian: little
    max_count: 65536
    references:
      Power: {width: 4, null: [0, 0xFFFFFFFF]}
    records:
      SkillKitDefinition:
        fields:
          - {name: arNodes, type: "DT_VARIABLEARRAY<SkillTreeNode>"}
          - {name: dwNextID, type: DT_UINT}
          - {name: vNodeMinPositions, type: DT_VECTOR2D}
      UIScrollbarStyle:
        inherits: UIStyle
        fields:
          - {name: unk_171f018, type: "DT_TAGMAP<DT_INT>"}

Type expressions:
    u8 s8 u16 s16 u32 s32 u64 s64 f32 f64 bool
    vec2 vec3 vec4 rgba rgba_value bcvec2i sno_name null
    cstring  formula
    array<T>  tagmap<T>  ref<Category>  fixed<T, n>
    optional<T>  range<T>  chars<n>  pad<n>  polymorphic<Base>
    <RecordName>

polymorphic<Base> elements carry a u32 type id that selects a record from
the catalogue's `polymorphic` map (`{type id: record name}`). When Base is
a catalogue record, only records inheriting from it are eligible.

The generated definitions' DT_* spellings (DT_UINT, DT_INT64,
DT_VARIABLEARRAY<T>, DT_SNO<SnoGroup::Power>, ...) are accepted as aliases.

Usage:
    from record_schema import load_catalogue

    catalogue = load_catalogue('schemas/skill_kit.yaml')
    record, end = catalogue.decoder('SkillKitDefinition').read(buf)
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from record_reader import (
    CharArrayDecoder, Decoder, Endian, FixedArrayDecoder, NullDecoder,
    OptionalDecoder, PadDecoder, PrimitiveDecoder, PRIMITIVES, RangeDecoder,
    PolymorphicArrayDecoder, RecordDecoder, ReferenceDecoder, StringDecoder,
    StringFormulaDecoder, TagMapDecoder, VariableArrayDecoder,
)

logger = logging.getLogger(__name__)


class SchemaError(ValueError):
    """Catalogue document is malformed or inconsistent."""


TYPE_ALIASES = {
    # Common spellings
    'i8': 's8',
    'i16': 's16',
    'i32': 's32',
    'i64': 's64',
    'uint8': 'u8',
    'int8': 's8',
    'uint16': 'u16',
    'int16': 's16',
    'uint32': 'u32',
    'int32': 's32',
    'uint64': 'u64',
    'int64': 's64',
    'float': 'f32',
    'double': 'f64',
    # Generated definition names
    'DT_BYTE': 'u8',
    'DT_CHAR': 's8',
    'DT_WORD': 's16',
    'DT_UINT': 'u32',
    'DT_INT': 's32',
    'DT_ENUM': 's32',
    'DT_GBID': 's32',
    'DT_STARTLOC_NAME': 'u32',
    'DT_UINT64': 'u64',
    'DT_INT64': 's64',
    'DT_ACD_NETWORK_NAME': 'u64',
    'DT_SHARED_SERVER_DATA_ID': 'u64',
    'DT_FLOAT': 'f32',
    'DT_VECTOR2D': 'vec2',
    'DT_VECTOR3D': 'vec3',
    'DT_VECTOR4D': 'vec4',
    'DT_RGBACOLOR': 'rgba',
    'DT_RGBACOLORVALUE': 'rgba_value',
    'DT_BCVEC2I': 'bcvec2i',
    'DT_SNO_NAME': 'sno_name',
    'DT_NULL': 'null',
    'DT_VARIABLEARRAY': 'array',
    'DT_FIXEDARRAY': 'fixed',
    'DT_TAGMAP': 'tagmap',
    'DT_SNO': 'ref',
    'DT_OPTIONAL': 'optional',
    'DT_RANGE': 'range',
    'DT_CHARARRAY': 'chars',
    'DT_CSTRING': 'cstring',
    'DT_STRING_FORMULA': 'formula',
    'DT_POLYMORPHIC_VARIABLEARRAY': 'polymorphic',
}

# template name -> argument kinds ('type' or 'int')
TEMPLATES = {
    'array': ('type',),
    'tagmap': ('type',),
    'ref': ('type',),
    'fixed': ('type', 'int'),
    'optional': ('type',),
    'range': ('type',),
    'chars': ('int',),
    'pad': ('int',),
    'polymorphic': ('type',),
}

# Built-in names that are neither primitives nor templates
SPECIAL_TYPES = ('null', 'cstring', 'formula')


# =============================================================================
# Type expressions
# =============================================================================

@dataclass(frozen=True)
class TypeExpr:
    """Parsed type expression: a name and optional template arguments."""
    name: str
    args: Tuple[Union['TypeExpr', int], ...] = ()

    def __str__(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}<{', '.join(str(a) for a in self.args)}>"


_TOKEN_RE = re.compile(
    r'\s*(?:(?P<int>0[xX][0-9a-fA-F]+|\d+)'
    r'|(?P<name>[A-Za-z_]\w*(?:::[A-Za-z_]\w*)*)'
    r'|(?P<punct>[<>,]))')


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise SchemaError(f"Invalid character in type '{text}' at {pos}")
        kind = match.lastgroup
        tokens.append((kind, match.group(kind)))
        pos = match.end()
    return tokens


def parse_type(text: str) -> TypeExpr:
    """
    Parse a type expression such as 'DT_TAGMAP<DT_INT>' or 'fixed<vec2, 4>'.

    Raises:
        SchemaError: if the expression is empty or malformed
    """
    if not isinstance(text, str):
        raise SchemaError(f"Type must be a string, got {type(text).__name__}")
    tokens = _tokenize(text)
    if not tokens:
        raise SchemaError("Empty type expression")

    def parse_arg(pos: int) -> Tuple[Union[TypeExpr, int], int]:
        if pos >= len(tokens):
            raise SchemaError(f"Unexpected end of type '{text}'")
        kind, value = tokens[pos]
        if kind == 'int':
            return int(value, 16 if value[:2].lower() == '0x' else 10), pos + 1
        return parse_expr(pos)

    def parse_expr(pos: int) -> Tuple[TypeExpr, int]:
        kind, value = tokens[pos]
        if kind != 'name':
            raise SchemaError(f"Expected type name in '{text}', got '{value}'")
        pos += 1
        if pos >= len(tokens) or tokens[pos] != ('punct', '<'):
            return TypeExpr(value), pos

        args = []
        pos += 1
        while True:
            arg, pos = parse_arg(pos)
            args.append(arg)
            if pos >= len(tokens):
                raise SchemaError(f"Unclosed '<' in type '{text}'")
            if tokens[pos] == ('punct', ','):
                pos += 1
                continue
            if tokens[pos] == ('punct', '>'):
                return TypeExpr(value, tuple(args)), pos + 1
            raise SchemaError(f"Expected ',' or '>' in type '{text}', got '{tokens[pos][1]}'")

    expr, pos = parse_expr(0)
    if pos != len(tokens):
        raise SchemaError(f"Trailing input in type '{text}': '{tokens[pos][1]}'")
    return expr


# =============================================================================
# Catalogue
# =============================================================================

@dataclass(frozen=True)
class ReferenceCategory:
    """Identifier width and null sentinels for one reference category."""
    name: str
    width: int = 4
    null_ids: Optional[Tuple[int, ...]] = None


class RecordCatalogue:
    """
    Named record decoders built from a catalogue document.

    Every record is built once at construction, dependencies first, so a
    finished catalogue is immutable and can be shared between threads.
    Cycles (a record containing or inheriting from itself, directly or not)
    are rejected: decoding recursion is bounded by schema depth.
    """

    def __init__(self, records: Dict[str, Any], endian: str = 'little',
                 max_count: Optional[int] = None,
                 references: Optional[Dict[str, Any]] = None,
                 name: str = 'catalogue',
                 polymorphic: Optional[Dict[int, str]] = None):
        self.name = name
        self.endian = _parse_endian(endian, f"Catalogue {name}")
        if max_count is not None and (not isinstance(max_count, int) or max_count < 0):
            raise SchemaError(f"max_count must be a non-negative integer, got {max_count!r}")
        self.max_count = max_count
        self.references = self._load_references(references or {})

        if not isinstance(records, dict):
            raise SchemaError(f"Catalogue {name}: records must be a mapping")
        self._definitions = dict(records)
        for record_name in self._definitions:
            if not isinstance(record_name, str):
                raise SchemaError(f"Record name must be a string, got {record_name!r}")
            builtin = TYPE_ALIASES.get(record_name, record_name)
            if builtin in PRIMITIVES or builtin in TEMPLATES or builtin in SPECIAL_TYPES:
                raise SchemaError(f"Record name '{record_name}' shadows a built-in type")
        self.polymorphic = self._load_polymorphic(polymorphic or {})

        self._decoders: Dict[str, RecordDecoder] = {}
        self._building: List[str] = []
        for record_name in self._definitions:
            self._build_record(record_name)

        logger.debug("Built catalogue %s: %d records, endian=%s",
                     self.name, len(self._decoders), self.endian.value)

    @classmethod
    def from_dict(cls, doc: Dict[str, Any], name: str = 'catalogue') -> 'RecordCatalogue':
        """Build a catalogue from a parsed document (YAML/JSON shape)."""
        if not isinstance(doc, dict):
            raise SchemaError(f"Catalogue {name} must be a mapping")
        records = doc.get('records')
        if not isinstance(records, dict):
            raise SchemaError(f"Catalogue {name} has no 'records' mapping")
        return cls(records,
                   endian=doc.get('endian', 'little'),
                   max_count=doc.get('max_count'),
                   references=doc.get('references'),
                   name=doc.get('name', name),
                   polymorphic=doc.get('polymorphic'))

    def decoder(self, name: str) -> RecordDecoder:
        if name not in self._decoders:
            raise SchemaError(f"Unknown record type: {name}")
        return self._decoders[name]

    def names(self) -> List[str]:
        return list(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._decoders

    def build(self, type_text: str, endian: Optional[str] = None) -> Decoder:
        """Build a standalone decoder for a type expression, e.g. 'array<u32>'."""
        field_endian = _parse_endian(endian, f"type {type_text}") if endian else self.endian
        return self._build_type(parse_type(type_text), field_endian)

    def _load_references(self, references: Any) -> Dict[str, ReferenceCategory]:
        if not isinstance(references, dict):
            raise SchemaError(f"Catalogue {self.name}: references must be a mapping")
        categories = {}
        for category, options in references.items():
            if options is None:
                options = {}
            if not isinstance(options, dict):
                raise SchemaError(f"Reference {category}: options must be a mapping, got {options!r}")
            width = options.get('width', 4)
            if width not in (4, 8):
                raise SchemaError(f"Reference {category}: width must be 4 or 8, got {width}")
            null_ids = options.get('null')
            if null_ids is not None:
                if isinstance(null_ids, int):
                    null_ids = [null_ids]
                if not isinstance(null_ids, list) or not all(isinstance(i, int) for i in null_ids):
                    raise SchemaError(f"Reference {category}: null must be an id or a list of ids")
                null_ids = tuple(null_ids)
            categories[category] = ReferenceCategory(category, width, null_ids)
        return categories

    def _load_polymorphic(self, polymorphic: Any) -> Dict[int, str]:
        if not isinstance(polymorphic, dict):
            raise SchemaError(f"Catalogue {self.name}: polymorphic must map type ids to records")
        for type_id, record in polymorphic.items():
            if not isinstance(type_id, int) or isinstance(type_id, bool) or type_id < 0:
                raise SchemaError(f"Polymorphic type id must be a non-negative integer, got {type_id!r}")
            if not isinstance(record, str) or record not in self._definitions:
                raise SchemaError(f"Polymorphic type id {type_id}: unknown record {record!r}")
        return dict(polymorphic)

    def _build_record(self, name: str) -> RecordDecoder:
        if name in self._decoders:
            return self._decoders[name]
        if name in self._building:
            chain = ' -> '.join(self._building[self._building.index(name):] + [name])
            raise SchemaError(f"Cyclic record definition: {chain}")

        definition = self._definitions[name]
        if isinstance(definition, list):
            definition = {'fields': definition}
        if not isinstance(definition, dict):
            raise SchemaError(f"Record {name}: definition must be a mapping or field list")
        parent = definition.get('inherits')
        if parent is not None and not isinstance(parent, str):
            raise SchemaError(f"Record {name}: inherits must be a record name, got {parent!r}")
        field_defs = definition.get('fields') or []
        if not isinstance(field_defs, list):
            raise SchemaError(f"Record {name}: fields must be a list")

        self._building.append(name)
        try:
            fields: List[Tuple[str, Decoder]] = []
            if parent is not None:
                if parent not in self._definitions:
                    raise SchemaError(f"Record {name}: unknown parent type {parent}")
                fields.extend(self._build_record(parent).fields)

            seen = {field_name for field_name, _ in fields}
            for field_def in field_defs:
                field_name, decoder = self._build_field(name, field_def)
                if field_name in seen:
                    raise SchemaError(f"Record {name}: duplicate field '{field_name}'")
                seen.add(field_name)
                fields.append((field_name, decoder))
        finally:
            self._building.pop()

        decoder = RecordDecoder(name, fields)
        self._decoders[name] = decoder
        return decoder

    def _build_field(self, record: str, field_def: Any) -> Tuple[str, Decoder]:
        if not isinstance(field_def, dict) or 'name' not in field_def or 'type' not in field_def:
            raise SchemaError(f"Record {record}: field needs 'name' and 'type': {field_def!r}")
        field_name = str(field_def['name'])
        endian = self.endian
        if 'endian' in field_def:
            endian = _parse_endian(field_def['endian'], f"Record {record}.{field_name}")
        try:
            return field_name, self._build_type(parse_type(field_def['type']), endian)
        except SchemaError as e:
            if str(e).startswith('Cyclic'):
                raise
            raise SchemaError(f"Record {record}.{field_name}: {e}") from e

    def _build_type(self, expr: TypeExpr, endian: Endian) -> Decoder:
        name = TYPE_ALIASES.get(expr.name, expr.name)

        if name in TEMPLATES:
            kinds = TEMPLATES[name]
            if len(expr.args) != len(kinds):
                raise SchemaError(f"{expr.name} takes {len(kinds)} parameter(s), got {len(expr.args)}")
            for kind, arg in zip(kinds, expr.args):
                if kind == 'int' and not isinstance(arg, int):
                    raise SchemaError(f"{expr.name} expects an integer, got '{arg}'")
                if kind == 'type' and not isinstance(arg, TypeExpr):
                    raise SchemaError(f"{expr.name} expects a type, got {arg}")
            return self._build_template(name, expr.args, endian)

        if expr.args:
            raise SchemaError(f"Type {expr.name} takes no parameters")
        if name in PRIMITIVES:
            return PrimitiveDecoder(name, endian)
        if name == 'null':
            return NullDecoder()
        if name == 'cstring':
            return StringDecoder(endian)
        if name == 'formula':
            return StringFormulaDecoder(endian)
        if name in self._definitions:
            return self._build_record(name)
        raise SchemaError(f"Unknown type: {expr.name}")

    def _build_template(self, name: str, args: Tuple[Any, ...], endian: Endian) -> Decoder:
        if name == 'ref':
            return self._build_reference(args[0], endian)
        if name == 'polymorphic':
            return self._build_polymorphic(args[0], endian)
        if name == 'chars':
            return CharArrayDecoder(args[0])
        if name == 'pad':
            return PadDecoder(args[0])

        inner = self._build_type(args[0], endian)
        if name == 'array':
            if inner.min_size <= 0:
                raise SchemaError(f"array<{args[0]}>: elements must occupy at least one byte")
            return VariableArrayDecoder(inner, endian, self.max_count)
        if name == 'tagmap':
            return TagMapDecoder(inner, endian, self.max_count)
        if name == 'fixed':
            return FixedArrayDecoder(inner, args[1])
        if name == 'optional':
            return OptionalDecoder(inner, endian)
        return RangeDecoder(inner)

    def _build_reference(self, arg: TypeExpr, endian: Endian) -> ReferenceDecoder:
        if arg.args:
            raise SchemaError(f"Reference category must be a plain name, got '{arg}'")
        category = arg.name.split('::')[-1]
        options = self.references.get(category, ReferenceCategory(category))
        return ReferenceDecoder(category, options.width, options.null_ids, endian)

    def _build_polymorphic(self, base: TypeExpr, endian: Endian) -> PolymorphicArrayDecoder:
        if base.args:
            raise SchemaError(f"Polymorphic base must be a plain name, got '{base}'")
        types = {}
        for type_id, record in self.polymorphic.items():
            decoder = self._build_record(record)
            if base.name not in self._definitions or self._inherits_from(record, base.name):
                types[type_id] = decoder
        if not types:
            raise SchemaError(f"polymorphic<{base}>: no type ids in the catalogue's polymorphic map")
        return PolymorphicArrayDecoder(types, endian, self.max_count)

    def _inherits_from(self, record: str, base: str) -> bool:
        # Only called on built records, so the parent chain is acyclic
        while record is not None:
            if record == base:
                return True
            definition = self._definitions[record]
            record = definition.get('inherits') if isinstance(definition, dict) else None
        return False


def _parse_endian(value: Any, where: str) -> Endian:
    try:
        return Endian(value)
    except (ValueError, TypeError):
        raise SchemaError(f"{where}: unknown endian '{value}'") from None


def load_catalogue(path: Union[str, Path]) -> RecordCatalogue:
    """Load a catalogue from a YAML file."""
    path = Path(path)
    with open(path, 'r') as f:
        doc = yaml.safe_load(f)
    logger.debug("Loaded catalogue document %s", path)
    return RecordCatalogue.from_dict(doc, name=path.stem)
