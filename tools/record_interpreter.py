#!/usr/bin/env python3
"""
record_interpreter.py - Top-level record decoding against a catalogue

Wraps a RecordCatalogue for callers that load assets: decode a named record
type from a buffer and get back a DecodeResult instead of an exception.
Failed decodes are logged with their field path; the record is never
partially returned.

Usage:
    from record_schema import load_catalogue
    from record_interpreter import RecordInterpreter, record_to_dict

    interpreter = RecordInterpreter(load_catalogue('skill_kit.yaml'))
    result = interpreter.decode('SkillKitDefinition', buf, offset=16)
    if result.success:
        print(record_to_dict(result.record))
    else:
        print(result.error)

    # Or raise on failure
    record, end = decode_record(catalogue, 'SkillKitDefinition', buf)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from record_reader import DecodeError, NestedFailure, Record, StringFormula, TypedRef
from record_schema import RecordCatalogue

logger = logging.getLogger(__name__)


@dataclass
class DecodeResult:
    """Result of decoding one top-level record."""
    record: Optional[Record]
    offset: int
    bytes_consumed: int = 0
    error: Optional[DecodeError] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def errors(self) -> List[str]:
        return [] if self.error is None else [str(self.error)]

    @property
    def error_path(self) -> Optional[str]:
        if isinstance(self.error, NestedFailure):
            return self.error.path
        return None


class RecordInterpreter:
    """Decodes named record types from buffers using one catalogue."""

    def __init__(self, catalogue: RecordCatalogue):
        self.catalogue = catalogue

    def decode(self, type_name: str, buffer, offset: int = 0) -> DecodeResult:
        """
        Decode `type_name` from `buffer` starting at `offset`.

        Args:
            type_name: Record type registered in the catalogue
            buffer: Any bytes-like object; it is read, never copied or kept
            offset: Byte offset of the record's first field

        Returns:
            DecodeResult; on failure `record` is None, `offset` is the start
            offset and `error` holds the DecodeError chain

        Raises:
            SchemaError: if `type_name` is not in the catalogue
        """
        decoder = self.catalogue.decoder(type_name)
        try:
            record, end = decoder.read(buffer, offset)
        except DecodeError as e:
            logger.warning("Failed to decode %s at offset %d: %s", type_name, offset, e)
            return DecodeResult(record=None, offset=offset, error=e)

        logger.debug("Decoded %s: %d bytes from offset %d", type_name, end - offset, offset)
        return DecodeResult(record=record, offset=end, bytes_consumed=end - offset)


def decode_record(catalogue: RecordCatalogue, type_name: str, buffer,
                  offset: int = 0) -> Tuple[Record, int]:
    """Convenience function: decode or raise the DecodeError."""
    return catalogue.decoder(type_name).read(buffer, offset)


def _round_float(value: float, precision: Optional[int]) -> float:
    if precision is None or value != value or value in (float('inf'), float('-inf')):
        return value
    return float(f"{value:.{precision}g}")


def record_to_dict(value: Any, float_precision: Optional[int] = 7) -> Any:
    """
    Convert a decoded value tree to JSON-compatible builtins.

    Records become dicts, references their raw id, string formulas their
    source text, vectors/colors/ranges dicts of their components, tuples
    lists. Floats are rounded to `float_precision` significant digits
    (single-precision values carry about 7); pass None to keep them as
    decoded.
    """
    if isinstance(value, Record):
        return {name: record_to_dict(v, float_precision) for name, v in value.fields.items()}
    if isinstance(value, TypedRef):
        return value.raw_id
    if isinstance(value, StringFormula):
        return value.value
    if isinstance(value, bool):
        return value
    if isinstance(value, float):
        return _round_float(value, float_precision)
    if isinstance(value, tuple) and hasattr(value, '_asdict'):
        return {k: record_to_dict(v, float_precision) for k, v in value._asdict().items()}
    if isinstance(value, (tuple, list)):
        return [record_to_dict(v, float_precision) for v in value]
    if isinstance(value, Mapping):
        result: Dict[Any, Any] = {}
        for k, v in value.items():
            result[k] = record_to_dict(v, float_precision)
        return result
    if isinstance(value, bytes):
        return value.hex()
    return value
