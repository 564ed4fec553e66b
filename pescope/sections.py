from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import (
    COFF_SYMBOL_SIZE,
    SECTION_FLAGS_HIGH,
    SECTION_FLAGS_LOW,
    SECTION_HEADER_SIZE,
    flag_names,
    section_alignment_name,
)
from pescope.headers import FileHeader
from pescope.image import RawImage, c_string, err

_SECTION_FMT = "<8sIIIIIIHHI"


@dataclass(frozen=True)
class StringTable:
    """COFF string table; the leading u32 is its total size in bytes."""

    data: bytes

    @property
    def size(self) -> int:
        return struct.unpack_from("<I", self.data, 0)[0] if len(self.data) >= 4 else 0

    def lookup(self, offset: int) -> Optional[str]:
        if offset < 4 or offset >= self.size:
            return None
        return c_string(self.data, offset, max_len=self.size - offset)


@dataclass(frozen=True)
class Section:
    index: int
    raw_name: bytes
    name: str
    long_name: Optional[str]
    virtual_size: int
    virtual_address: int
    raw_size: int
    raw_ptr: int
    relocations_ptr: int
    linenumbers_ptr: int
    number_of_relocations: int
    number_of_linenumbers: int
    characteristics: int

    @property
    def display_name(self) -> str:
        return self.long_name or self.name

    @property
    def flags(self) -> List[str]:
        out = flag_names(self.characteristics, SECTION_FLAGS_LOW)
        align = section_alignment_name(self.characteristics)
        if align:
            out.append(align)
        out.extend(flag_names(self.characteristics, SECTION_FLAGS_HIGH))
        return out

    def contains(self, rva: int, length: int) -> bool:
        return self.virtual_address <= rva and rva + length <= self.virtual_address + self.raw_size


def load_string_table(image: RawImage, file_header: FileHeader) -> Optional[StringTable]:
    if not file_header.pointer_to_symbol_table or not file_header.number_of_symbols:
        return None
    off = file_header.pointer_to_symbol_table + file_header.number_of_symbols * COFF_SYMBOL_SIZE
    size = image.u32(off)
    if size is None:
        return None
    blob = image.read(off, size) if size >= 4 else None
    if blob is None:
        blob = image.data[off:]
    return StringTable(blob)


def _long_name(raw_name: bytes, strtable: Optional[StringTable]) -> Optional[str]:
    if strtable is None or not raw_name.startswith(b"/"):
        return None
    digits = raw_name[1:].split(b"\x00", 1)[0]
    if not digits.isdigit():
        return None
    return strtable.lookup(int(digits))


def parse_section_header(raw: bytes, index: int, strtable: Optional[StringTable] = None) -> Section:
    (
        raw_name,
        virtual_size,
        virtual_address,
        raw_size,
        raw_ptr,
        relocations_ptr,
        linenumbers_ptr,
        n_relocs,
        n_lines,
        characteristics,
    ) = struct.unpack_from(_SECTION_FMT, raw, 0)
    return Section(
        index=index,
        raw_name=raw_name,
        name=raw_name.split(b"\x00", 1)[0].decode("ascii", errors="replace"),
        long_name=_long_name(raw_name, strtable),
        virtual_size=virtual_size,
        virtual_address=virtual_address,
        raw_size=raw_size,
        raw_ptr=raw_ptr,
        relocations_ptr=relocations_ptr,
        linenumbers_ptr=linenumbers_ptr,
        number_of_relocations=n_relocs,
        number_of_linenumbers=n_lines,
        characteristics=characteristics,
    )


def parse_section_table(
    image: RawImage,
    offset: int,
    count: int,
    *,
    strtable: Optional[StringTable] = None,
    max_sections: int = 1024,
) -> Tuple[List[Section], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    if count > max_sections:
        errors.append(
            err(
                "E_PE_SECTION_COUNT_CLAMPED",
                f"Section count too large; clamped to max_sections={max_sections}.",
                number_of_sections=count,
                max_sections=max_sections,
            )
        )
        count = max_sections

    sections: List[Section] = []
    for i in range(count):
        sh_off = offset + i * SECTION_HEADER_SIZE
        raw = image.read(sh_off, SECTION_HEADER_SIZE)
        if raw is None:
            errors.append(err("E_PE_SECTION_HEADER_TRUNCATED", "Can't grab section header.", section_index=i, sh_off=sh_off))
            break
        sections.append(parse_section_header(raw, i, strtable))
    return sections, errors


def section_raw_data(image: RawImage, section: Section) -> Optional[bytes]:
    if not section.raw_size:
        return b""
    return image.read(section.raw_ptr, section.raw_size)
