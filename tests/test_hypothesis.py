"""
test_hypothesis.py - Property-based testing with Hypothesis

Provides systematic coverage-guided fuzzing that's more thorough than
random fuzzing, discovering edge cases through shrinking.

Properties covered:
- Decoding arbitrary bytes never raises anything but DecodeError
- Short and truncated buffers always fail with OutOfBounds at the root
- Decoding is deterministic and position independent
- Variable arrays and tag maps agree with a plain list/dict model
- Null reference sentinels are recognised for every catalogue width
- Random type expressions and catalogues fail with SchemaError only

Run with:
    pytest tests/test_hypothesis.py -v
    pytest tests/test_hypothesis.py -v --hypothesis-show-statistics
"""

import pytest
from hypothesis import given, settings, assume, HealthCheck
from hypothesis import strategies as st
import struct
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'tools'))
from record_interpreter import RecordInterpreter
from record_reader import (
    DecodeError, OutOfBounds, TagMapDecoder, VariableArrayDecoder,
    PrimitiveDecoder, ReferenceDecoder, U32,
)
from record_schema import RecordCatalogue, SchemaError, TypeExpr, load_catalogue, parse_type
from conftest import FIXTURES_DIR, u32s, skill_kit_payload, item_button_payload


SKILL_KIT = load_catalogue(FIXTURES_DIR / 'skill_kit.yaml')
UI_STYLES = load_catalogue(FIXTURES_DIR / 'ui_styles.yaml')


# =============================================================================
# Strategies for generating test data
# =============================================================================

bytes_strategy = st.binary(min_size=0, max_size=512)
u32_values = st.integers(min_value=0, max_value=2**32 - 1)
s32_values = st.integers(min_value=-2**31, max_value=2**31 - 1)

# Tag lists with plenty of repeats
tag_entries = st.lists(
    st.tuples(st.integers(min_value=0, max_value=8), s32_values),
    max_size=20,
)

RECORD_NAMES = ['Alpha', 'Beta', 'Gamma', 'Delta']
FIELD_TYPES = [
    'u8', 'u32', 's64', 'f32', 'vec2', 'rgba', 'null', 'array<u16>',
    'tagmap<s32>', 'ref<Power>', 'ref<Actor>', 'fixed<u8, 3>', 'optional<u32>',
    'range<f32>', 'chars<4>', 'pad<2>', 'array<null>', 'Missing',
    'cstring', 'formula', 'polymorphic<Base>', 'polymorphic<Alpha>',
] + RECORD_NAMES + [f'array<{name}>' for name in RECORD_NAMES]

field_lists = st.lists(
    st.fixed_dictionaries({
        'name': st.sampled_from(['a', 'b', 'c', '_skip']),
        'type': st.sampled_from(FIELD_TYPES),
    }),
    max_size=4,
)

# List shorthand, or a mapping that may inherit (sometimes from junk)
record_definitions = st.one_of(
    field_lists,
    st.fixed_dictionaries(
        {'fields': field_lists},
        optional={'inherits': st.sampled_from(RECORD_NAMES + ['Missing', ['Alpha'], 5])},
    ),
)

reference_options = st.sampled_from([
    None, {'width': 4}, {'width': 8, 'null': [1]}, {'null': 7},
    {'width': 2}, {'null': 'zero'}, 4, ['width'],
])

random_catalogues = st.fixed_dictionaries(
    {
        'records': st.dictionaries(st.sampled_from(RECORD_NAMES), record_definitions, max_size=4),
        'max_count': st.just(64),
    },
    optional={
        'references': st.one_of(
            st.dictionaries(st.sampled_from(['Power', 'Actor']), reference_options, max_size=2),
            st.sampled_from([['Power'], 'Power']),
        ),
        'polymorphic': st.one_of(
            st.dictionaries(
                st.sampled_from([0, 1, 2, -1, 'one']),
                st.sampled_from(RECORD_NAMES + ['Missing', 3]),
                max_size=3,
            ),
            st.sampled_from([['Alpha'], None]),
        ),
    },
)


# =============================================================================
# Property Tests: Decoder Safety
# =============================================================================

class TestDecoderSafety:
    """Test that decoding handles all inputs safely."""

    @given(bytes_strategy, st.sampled_from([
        (SKILL_KIT, 'SkillKitDefinition'),
        (SKILL_KIT, 'SkillTreeNode'),
        (UI_STYLES, 'UIItemButtonStyle'),
        (UI_STYLES, 'UIListBoxStyle'),
    ]))
    @settings(max_examples=1000, suppress_health_check=[HealthCheck.too_slow])
    def test_never_crashes_on_random_bytes(self, data, target):
        """Arbitrary bytes decode or fail with a DecodeError; nothing else escapes."""
        catalogue, type_name = target
        result = RecordInterpreter(catalogue).decode(type_name, data)
        if result.success:
            assert result.bytes_consumed <= len(data)
        else:
            assert result.record is None
            assert isinstance(result.error, DecodeError)
            assert isinstance(result.error.root_cause, OutOfBounds)

    @given(st.binary(max_size=51))
    @settings(max_examples=500)
    def test_below_minimum_size_fails(self, data):
        """SkillKitDefinition needs at least 52 bytes."""
        result = RecordInterpreter(SKILL_KIT).decode('SkillKitDefinition', data)
        assert not result.success
        assert isinstance(result.error.root_cause, OutOfBounds)

    @given(st.data())
    @settings(max_examples=300)
    def test_truncated_payloads_fail(self, data):
        """Every strict prefix of a valid encoding is rejected."""
        payload = data.draw(st.sampled_from([
            ('SkillKitDefinition', SKILL_KIT, skill_kit_payload()),
            ('UIItemButtonStyle', UI_STYLES, item_button_payload()),
        ]))
        type_name, catalogue, full = payload
        cut = data.draw(st.integers(min_value=0, max_value=len(full) - 1))

        result = RecordInterpreter(catalogue).decode(type_name, full[:cut])

        assert not result.success
        assert result.offset == 0
        assert isinstance(result.error.root_cause, OutOfBounds)

    @given(u32_values, st.binary(max_size=64))
    @settings(max_examples=300)
    def test_huge_counts_rejected_without_reading(self, count, tail):
        """A count beyond the remaining bytes fails at the count's offset."""
        assume(count * 4 > len(tail))
        decoder = VariableArrayDecoder(U32)
        with pytest.raises(OutOfBounds) as exc_info:
            decoder.read(u32s(count) + tail)
        assert exc_info.value.offset == 0


# =============================================================================
# Property Tests: Determinism
# =============================================================================

class TestDeterminism:
    """Decoding depends only on the bytes at the offset."""

    @given(bytes_strategy)
    @settings(max_examples=300)
    def test_same_input_same_result(self, data):
        interpreter = RecordInterpreter(UI_STYLES)
        first = interpreter.decode('UIThumbButtonStyle', data)
        second = interpreter.decode('UIThumbButtonStyle', data)
        # repr so NaN fields still compare equal
        assert repr(first) == repr(second)

    @given(st.binary(max_size=64), st.binary(max_size=16))
    @settings(max_examples=300)
    def test_position_independent(self, prefix, suffix):
        payload = skill_kit_payload()
        interpreter = RecordInterpreter(SKILL_KIT)

        alone = interpreter.decode('SkillKitDefinition', payload)
        embedded = interpreter.decode('SkillKitDefinition', prefix + payload + suffix, len(prefix))

        assert embedded.success
        assert embedded.record == alone.record
        assert embedded.bytes_consumed == len(payload)


# =============================================================================
# Property Tests: Container Models
# =============================================================================

class TestContainerModels:
    """Containers agree with plain Python list/dict semantics."""

    @given(st.lists(u32_values, max_size=50), st.binary(max_size=8))
    @settings(max_examples=500)
    def test_variable_array_matches_list(self, values, tail):
        buf = u32s(len(values), *values) + tail
        decoded, end = VariableArrayDecoder(U32).read(buf)
        assert decoded == tuple(values)
        assert end == 4 + 4 * len(values)

    @given(st.lists(st.integers(min_value=0, max_value=2**16 - 1), max_size=30))
    @settings(max_examples=300)
    def test_big_endian_array(self, values):
        buf = struct.pack(f'>I{len(values)}H', len(values), *values)
        decoder = SKILL_KIT.build('array<u16>', endian='big')
        assert decoder.read(buf) == (tuple(values), len(buf))

    @given(tag_entries)
    @settings(max_examples=500)
    def test_tag_map_last_write_wins(self, entries):
        buf = u32s(len(entries)) + b''.join(struct.pack('<Ii', t, v) for t, v in entries)

        decoded, end = TagMapDecoder(PrimitiveDecoder('s32')).read(buf)

        model = {}
        for tag, value in entries:
            model[tag] = value
        assert dict(decoded) == model
        assert list(decoded) == list(model)
        assert end == len(buf)

    @given(tag_entries)
    @settings(max_examples=200)
    def test_tag_map_read_only(self, entries):
        buf = u32s(len(entries)) + b''.join(struct.pack('<Ii', t, v) for t, v in entries)
        decoded, _ = TagMapDecoder(PrimitiveDecoder('s32')).read(buf)
        with pytest.raises(TypeError):
            decoded[0] = 1


# =============================================================================
# Property Tests: References
# =============================================================================

class TestReferences:
    """Null sentinel handling."""

    @given(st.sampled_from([4, 8]), st.booleans())
    def test_default_null_sentinels(self, width, all_ones):
        raw = (1 << (8 * width)) - 1 if all_ones else 0
        buf = raw.to_bytes(width, 'little')
        ref, end = ReferenceDecoder('Actor', width).read(buf)
        assert ref.is_null
        assert ref.raw_id == raw
        assert end == width

    @given(st.integers(min_value=1, max_value=2**32 - 2))
    def test_other_ids_not_null(self, raw):
        ref, _ = SKILL_KIT.build('DT_SNO<SnoGroup::Power>').read(u32s(raw))
        assert not ref.is_null
        assert ref.category == 'Power'

    @given(u32_values)
    def test_equality_by_raw_id(self, raw):
        a, _ = ReferenceDecoder('Power').read(u32s(raw))
        b, _ = ReferenceDecoder('Texture').read(u32s(raw))
        assert a == b
        assert hash(a) == hash(b)


# =============================================================================
# Property Tests: Schema Safety
# =============================================================================

class TestSchemaSafety:
    """Malformed catalogues fail with SchemaError, never a crash."""

    @given(st.text(max_size=40))
    @settings(max_examples=500)
    def test_random_type_text(self, text):
        try:
            expr = parse_type(text)
        except SchemaError:
            return
        assert isinstance(expr, TypeExpr)

    @given(random_catalogues, bytes_strategy)
    @settings(max_examples=300, suppress_health_check=[HealthCheck.too_slow])
    def test_random_catalogues(self, doc, data):
        """Documents with junk inherits, references or type maps never crash."""
        try:
            catalogue = RecordCatalogue.from_dict(doc)
        except SchemaError:
            return
        for name in catalogue.names():
            try:
                record, end = catalogue.decoder(name).read(data)
            except DecodeError:
                continue
            assert end <= len(data)
            assert '_skip' not in record
