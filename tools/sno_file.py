#!/usr/bin/env python3
"""
sno_file.py - SNO asset container header

SNO files start with a 16-byte header followed by the packed payload record:

    0x00  u32  signature (0xDEADBEEF)
    0x04  u32  SNO group / type
    0x08  s32  reserved
    0x0C  s32  name hash
    0x10  s32  SNO id  (first word of the payload region)

The payload record is decoded from offset 0x10. The SNO id lives in the
first word of that region, so it is reported in the header but also read by
the payload schema if the schema declares it.

The caller supplies the file contents; locating and reading files belongs to
the asset loader.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Optional

from record_reader import Cursor, DecodeError, Record
from record_schema import RecordCatalogue

logger = logging.getLogger(__name__)

SNO_SIGNATURE = 0xDEADBEEF
SNO_HEADER_SIZE = 0x10

_HEADER = struct.Struct('<IIiii')


class InvalidSignature(DecodeError):
    """Buffer does not start with the SNO signature."""

    def __init__(self, signature: int):
        super().__init__(f"Invalid SNO signature 0x{signature:08X}", 0)
        self.signature = signature


@dataclass(frozen=True)
class SnoHeader:
    sno_type: int
    reserved: int
    name_hash: int
    sno_id: int


@dataclass(frozen=True)
class SnoFile:
    header: SnoHeader
    record: Record
    bytes_consumed: int
    name: Optional[str] = None


def read_sno_header(buffer) -> SnoHeader:
    """
    Validate and read the container header.

    Raises:
        OutOfBounds: buffer shorter than the header plus the SNO id word
        InvalidSignature: first word is not 0xDEADBEEF
    """
    values, _ = Cursor.over(buffer).unpack(_HEADER)
    signature, sno_type, reserved, name_hash, sno_id = values
    if signature != SNO_SIGNATURE:
        raise InvalidSignature(signature)
    return SnoHeader(sno_type, reserved, name_hash, sno_id)


def decode_sno(catalogue: RecordCatalogue, type_name: str, buffer,
               name: Optional[str] = None) -> SnoFile:
    """Read the header, then decode `type_name` from the payload region."""
    header = read_sno_header(buffer)
    record, end = catalogue.decoder(type_name).read(buffer, SNO_HEADER_SIZE)
    logger.debug("Decoded SNO %s (%s, id %d): %d payload bytes",
                 name or type_name, type_name, header.sno_id, end - SNO_HEADER_SIZE)
    return SnoFile(header, record, end - SNO_HEADER_SIZE, name)
