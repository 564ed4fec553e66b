from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pescope.config import Limits
from pescope.constants import MAX_DATA_DIRECTORIES
from pescope.headers import DEFAULT_PLACEHOLDER_SIGNATURE, ImageHeader, parse_headers
from pescope.image import RawImage
from pescope.sections import Section, StringTable, load_string_table, parse_section_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryView:
    index: int
    rva: int
    size: int
    offset: int
    data: bytes


@dataclass
class PeContext:
    """
    Everything one file's decoders need: the image, its header and section table.
    Built once per file and passed explicitly to every decoder.
    """

    image: RawImage
    header: ImageHeader
    sections: List[Section]
    strtable: Optional[StringTable] = None
    placeholder: bool = False
    limits: Limits = field(default_factory=Limits)

    @property
    def is_pe32_plus(self) -> bool:
        return self.header.optional.is_pe32_plus

    @property
    def pointer_size(self) -> int:
        return self.header.optional.pointer_size

    @property
    def image_base(self) -> int:
        return self.header.optional.image_base

    @property
    def machine(self) -> int:
        return self.header.file_header.machine

    def section_for(self, rva: int, length: int = 1) -> Optional[Section]:
        # Later sections win when virtual ranges overlap.
        for s in reversed(self.sections):
            if s.contains(rva, length):
                return s
        return None

    def resolve_offset(self, rva: int, length: int) -> Optional[int]:
        if rva == 0 or rva < 0 or length < 0:
            return None
        s = self.section_for(rva, length)
        if s is None:
            return None
        return s.raw_ptr + (rva - s.virtual_address)

    def resolve(self, rva: int, length: int) -> Optional[bytes]:
        off = self.resolve_offset(rva, length)
        if off is None:
            return None
        return self.image.read(off, length)

    def u16_at(self, rva: int) -> Optional[int]:
        raw = self.resolve(rva, 2)
        return None if raw is None else int.from_bytes(raw, "little")

    def u32_at(self, rva: int) -> Optional[int]:
        raw = self.resolve(rva, 4)
        return None if raw is None else int.from_bytes(raw, "little")

    def pointer_at(self, rva: int) -> Optional[int]:
        raw = self.resolve(rva, self.pointer_size)
        return None if raw is None else int.from_bytes(raw, "little")

    def cstring(self, rva: int) -> Optional[str]:
        """
        NUL-terminated string at rva, bounded by the raw data of the section
        holding it. A string running into the section end is returned as is.
        """
        if rva <= 0:
            return None
        s = self.section_for(rva, 1)
        if s is None:
            return None
        off = s.raw_ptr + (rva - s.virtual_address)
        end = min(len(self.image), s.raw_ptr + s.raw_size)
        if off >= end:
            return None
        chunk = self.image.data[off:end]
        nul = chunk.find(b"\x00")
        if nul != -1:
            chunk = chunk[:nul]
        return chunk.decode("ascii", errors="replace")

    def directory_entry(self, index: int) -> Optional[Tuple[int, int]]:
        opt = self.header.optional
        if index < 0 or index >= MAX_DATA_DIRECTORIES or index >= opt.number_of_rva_and_sizes:
            return None
        d = opt.data_directories[index]
        return d.rva, d.size

    def directory(self, index: int) -> Optional[DirectoryView]:
        entry = self.directory_entry(index)
        if entry is None:
            return None
        rva, size = entry
        off = self.resolve_offset(rva, size)
        if off is None:
            return None
        data = self.image.read(off, size)
        if data is None:
            return None
        return DirectoryView(index=index, rva=rva, size=size, offset=off, data=data)


def open_pe(
    image: RawImage,
    *,
    limits: Optional[Limits] = None,
    placeholder_signature: bytes = DEFAULT_PLACEHOLDER_SIGNATURE,
) -> Tuple[Optional[PeContext], List[Dict[str, Any]]]:
    limits = limits or Limits()
    hdr = parse_headers(image, placeholder_signature=placeholder_signature)
    errors = list(hdr.errors)
    if hdr.header is None:
        return None, errors

    header = hdr.header
    strtable = load_string_table(image, header.file_header)
    sections, sect_errors = parse_section_table(
        image,
        header.section_table_offset,
        header.file_header.number_of_sections,
        strtable=strtable,
        max_sections=limits.max_sections,
    )
    errors.extend(sect_errors)
    logger.debug("parsed %d section headers", len(sections))
    return (
        PeContext(
            image=image,
            header=header,
            sections=sections,
            strtable=strtable,
            placeholder=hdr.placeholder,
            limits=limits,
        ),
        errors,
    )
