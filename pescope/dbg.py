from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.config import Limits
from pescope.constants import SECTION_HEADER_SIZE
from pescope.debug import DEBUG_DIRECTORY_SIZE, DebugDirectoryEntry, decode_debug_entries
from pescope.image import RawImage, err
from pescope.sections import Section, parse_section_table
from pescope.subdecoders import DEFAULT_SUBDECODERS, SubDecoders

SEPARATE_DEBUG_HEADER_SIZE = 48
_SEPARATE_DEBUG_FMT = "<4H8I2I"


@dataclass(frozen=True)
class SeparateDebugHeader:
    signature: int
    flags: int
    machine: int
    characteristics: int
    time_date_stamp: int
    checksum: int
    image_base: int
    size_of_image: int
    number_of_sections: int
    exported_names_size: int
    debug_directory_size: int
    section_alignment: int

    @property
    def debug_directory_offset(self) -> int:
        return (
            SEPARATE_DEBUG_HEADER_SIZE
            + self.number_of_sections * SECTION_HEADER_SIZE
            + self.exported_names_size
        )

    @property
    def debug_directory_count(self) -> int:
        return self.debug_directory_size // DEBUG_DIRECTORY_SIZE


@dataclass(frozen=True)
class DbgDump:
    header: SeparateDebugHeader
    # None when the section table or debug directory could not be read.
    sections: Optional[List[Section]] = None
    debug_entries: Optional[List[DebugDirectoryEntry]] = None


def parse_separate_debug_header(image: RawImage) -> Optional[SeparateDebugHeader]:
    raw = image.read(0, SEPARATE_DEBUG_HEADER_SIZE)
    if raw is None:
        return None
    fields = struct.unpack_from(_SEPARATE_DEBUG_FMT, raw, 0)
    return SeparateDebugHeader(*fields[:12])


def decode_dbg(
    image: RawImage,
    *,
    limits: Optional[Limits] = None,
    subdecoders: SubDecoders = DEFAULT_SUBDECODERS,
) -> Tuple[Optional[DbgDump], List[Dict[str, Any]]]:
    limits = limits or Limits()
    errors: List[Dict[str, Any]] = []

    header = parse_separate_debug_header(image)
    if header is None:
        errors.append(err("E_DBG_HEADER_TRUNCATED", "Can't grab the separate header, aborting."))
        return None, errors

    if image.read(SEPARATE_DEBUG_HEADER_SIZE, header.number_of_sections * SECTION_HEADER_SIZE) is None:
        errors.append(err("E_DBG_SECTIONS_UNREADABLE", "Can't get the sections, aborting."))
        return DbgDump(header=header), errors
    sections, sect_errors = parse_section_table(
        image, SEPARATE_DEBUG_HEADER_SIZE, header.number_of_sections, max_sections=limits.max_sections
    )
    errors.extend(sect_errors)

    raw = image.read(header.debug_directory_offset, header.debug_directory_count * DEBUG_DIRECTORY_SIZE)
    if raw is None:
        errors.append(err("E_DBG_DEBUG_DIR_UNREADABLE", "Couldn't get the debug directory info, aborting."))
        return DbgDump(header=header, sections=sections), errors

    entries, dbg_errors = decode_debug_entries(image, raw, sections=sections, subdecoders=subdecoders)
    errors.extend(dbg_errors)
    return DbgDump(header=header, sections=sections, debug_entries=entries), errors
