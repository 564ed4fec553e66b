from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from pescope.constants import (
    DOS_HEADER_SIZE,
    FILE_HEADER_SIZE,
    IMAGE_DOS_SIGNATURE,
    IMAGE_NT_SIGNATURE,
    IMAGE_OS2_SIGNATURE,
    IMAGE_SEPARATE_DEBUG_SIGNATURE,
    IMAGE_VXD_SIGNATURE,
    MAX_DATA_DIRECTORIES,
    PE32_MAGIC,
    PE32P_MAGIC,
)
from pescope.image import RawImage, err

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER_SIGNATURE = b"Wine placeholder DLL\x00"

_FILE_HEADER_FMT = "<HHIIIHH"

# Fixed prefix of each optional header layout; 16 data directories follow.
_OPT32_FMT = "<HBB9I6H4I2H6I"
_OPT64_FMT = "<HBB5IQ2I6H4I2H4Q2I"
_OPT32_PREFIX = struct.calcsize(_OPT32_FMT)  # 0x60
_OPT64_PREFIX = struct.calcsize(_OPT64_FMT)  # 0x70
OPT32_SIZE = _OPT32_PREFIX + MAX_DATA_DIRECTORIES * 8
OPT64_SIZE = _OPT64_PREFIX + MAX_DATA_DIRECTORIES * 8


@dataclass(frozen=True)
class DataDirectory:
    rva: int
    size: int


@dataclass(frozen=True)
class FileHeader:
    machine: int
    number_of_sections: int
    time_date_stamp: int
    pointer_to_symbol_table: int
    number_of_symbols: int
    size_of_optional_header: int
    characteristics: int

    @classmethod
    def unpack(cls, raw: bytes) -> "FileHeader":
        return cls(*struct.unpack_from(_FILE_HEADER_FMT, raw, 0))


@dataclass(frozen=True)
class OptionalHeader32:
    magic: int
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    base_of_data: int
    image_base: int
    section_alignment: int
    file_alignment: int
    major_os_version: int
    minor_os_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]


@dataclass(frozen=True)
class OptionalHeader64:
    magic: int
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    image_base: int
    section_alignment: int
    file_alignment: int
    major_os_version: int
    minor_os_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]


RawOptionalHeader = Union[OptionalHeader32, OptionalHeader64]


@dataclass(frozen=True)
class OptionalHeader:
    """Superset view of both optional header layouts used by every decoder."""

    magic: int
    is_pe32_plus: bool
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    base_of_data: Optional[int]
    image_base: int
    section_alignment: int
    file_alignment: int
    major_os_version: int
    minor_os_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int
    data_directories: Tuple[DataDirectory, ...]

    @property
    def pointer_size(self) -> int:
        return 8 if self.is_pe32_plus else 4

    @property
    def known_magic(self) -> bool:
        return self.magic in (PE32_MAGIC, PE32P_MAGIC)


def _unpack_optional(raw: bytes, fmt: str, prefix: int, cls):
    fields = struct.unpack_from(fmt, raw, 0)
    dirs = tuple(
        DataDirectory(*struct.unpack_from("<II", raw, prefix + i * 8))
        for i in range(MAX_DATA_DIRECTORIES)
    )
    return cls(*fields, dirs)


def parse_optional_header(raw: bytes, declared_size: int) -> RawOptionalHeader:
    """
    Parse an optional header from at most declared_size bytes of raw.
    Fields past the declared size read as zero. Anything but PE32+ uses the 32-bit layout.
    """
    magic = struct.unpack_from("<H", raw.ljust(2, b"\x00"), 0)[0] if declared_size >= 2 else 0
    if magic == PE32P_MAGIC:
        size, fmt, prefix, cls = OPT64_SIZE, _OPT64_FMT, _OPT64_PREFIX, OptionalHeader64
    else:
        size, fmt, prefix, cls = OPT32_SIZE, _OPT32_FMT, _OPT32_PREFIX, OptionalHeader32
    body = raw[: max(0, min(declared_size, size))].ljust(size, b"\x00")
    return _unpack_optional(body, fmt, prefix, cls)


def normalize_optional_header(opt: RawOptionalHeader) -> OptionalHeader:
    is_plus = isinstance(opt, OptionalHeader64)
    return OptionalHeader(
        magic=opt.magic,
        is_pe32_plus=is_plus,
        major_linker_version=opt.major_linker_version,
        minor_linker_version=opt.minor_linker_version,
        size_of_code=opt.size_of_code,
        size_of_initialized_data=opt.size_of_initialized_data,
        size_of_uninitialized_data=opt.size_of_uninitialized_data,
        address_of_entry_point=opt.address_of_entry_point,
        base_of_code=opt.base_of_code,
        base_of_data=None if is_plus else opt.base_of_data,
        image_base=opt.image_base,
        section_alignment=opt.section_alignment,
        file_alignment=opt.file_alignment,
        major_os_version=opt.major_os_version,
        minor_os_version=opt.minor_os_version,
        major_image_version=opt.major_image_version,
        minor_image_version=opt.minor_image_version,
        major_subsystem_version=opt.major_subsystem_version,
        minor_subsystem_version=opt.minor_subsystem_version,
        win32_version_value=opt.win32_version_value,
        size_of_image=opt.size_of_image,
        size_of_headers=opt.size_of_headers,
        checksum=opt.checksum,
        subsystem=opt.subsystem,
        dll_characteristics=opt.dll_characteristics,
        size_of_stack_reserve=opt.size_of_stack_reserve,
        size_of_stack_commit=opt.size_of_stack_commit,
        size_of_heap_reserve=opt.size_of_heap_reserve,
        size_of_heap_commit=opt.size_of_heap_commit,
        loader_flags=opt.loader_flags,
        number_of_rva_and_sizes=opt.number_of_rva_and_sizes,
        data_directories=opt.data_directories,
    )


@dataclass(frozen=True)
class ImageHeader:
    e_lfanew: int
    file_header: FileHeader
    optional: OptionalHeader

    @property
    def nt_offset(self) -> int:
        return self.e_lfanew

    @property
    def section_table_offset(self) -> int:
        return self.e_lfanew + 4 + FILE_HEADER_SIZE + self.file_header.size_of_optional_header


@dataclass(frozen=True)
class HeaderParseResult:
    header: Optional[ImageHeader]
    placeholder: bool
    errors: List[Dict[str, Any]]


def is_placeholder_image(image: RawImage, signature: bytes = DEFAULT_PLACEHOLDER_SIGNATURE) -> bool:
    dos = image.read(0, DOS_HEADER_SIZE + len(signature))
    if dos is None:
        return False
    e_lfanew = struct.unpack_from("<I", dos, 0x3C)[0]
    return e_lfanew >= DOS_HEADER_SIZE + len(signature) and dos[DOS_HEADER_SIZE:] == signature


def detect_kind(image: RawImage) -> str:
    sig = image.read(0, 2)
    if sig is None:
        return "UNKNOWN"
    if sig == IMAGE_SEPARATE_DEBUG_SIGNATURE:
        return "DBG"
    if sig != IMAGE_DOS_SIGNATURE:
        return "UNKNOWN"
    e_lfanew = image.u32(0x3C)
    if e_lfanew is None:
        return "UNKNOWN"
    nt_sig = image.read(e_lfanew, 4)
    if nt_sig is None:
        return "UNKNOWN"
    if nt_sig == IMAGE_NT_SIGNATURE:
        return "PE"
    if nt_sig[:2] == IMAGE_OS2_SIGNATURE:
        return "NE"
    if nt_sig[:2] == IMAGE_VXD_SIGNATURE:
        return "LE"
    return "DOS"


def parse_headers(
    image: RawImage,
    *,
    placeholder_signature: bytes = DEFAULT_PLACEHOLDER_SIGNATURE,
) -> HeaderParseResult:
    errors: List[Dict[str, Any]] = []
    placeholder = is_placeholder_image(image, placeholder_signature)

    dos = image.read(0, DOS_HEADER_SIZE)
    if dos is None:
        return HeaderParseResult(None, placeholder, [err("E_PE_DOS_TRUNCATED", "Can't grab DOS header.")])
    e_lfanew = struct.unpack_from("<I", dos, 0x3C)[0]

    nt = image.read(e_lfanew, 4 + FILE_HEADER_SIZE)
    if nt is None:
        return HeaderParseResult(
            None, placeholder, [err("E_PE_NT_TRUNCATED", "Can't grab NT headers.", e_lfanew=e_lfanew)]
        )
    if nt[:4] != IMAGE_NT_SIGNATURE:
        errors.append(err("E_PE_BAD_NT_SIGNATURE", "Missing PE\\0\\0 signature.", e_lfanew=e_lfanew))

    file_header = FileHeader.unpack(nt[4:])
    opt_off = e_lfanew + 4 + FILE_HEADER_SIZE
    declared = file_header.size_of_optional_header

    raw_opt = image.read(opt_off, declared)
    if raw_opt is None:
        errors.append(
            err(
                "E_PE_OPT_TRUNCATED",
                "Optional header truncated or size exceeds file.",
                opt_off=opt_off,
                size_of_optional_header=declared,
            )
        )
        raw_opt = image.data[opt_off : opt_off + declared]

    opt = normalize_optional_header(parse_optional_header(raw_opt, len(raw_opt)))
    if not opt.known_magic:
        errors.append(err("E_PE_OPT_UNKNOWN_MAGIC", f"Unknown optional header magic: 0x{opt.magic:X}", magic=opt.magic))

    logger.debug(
        "nt header at 0x%x, %d sections, optional header magic 0x%x",
        e_lfanew,
        file_header.number_of_sections,
        opt.magic,
    )
    return HeaderParseResult(ImageHeader(e_lfanew, file_header, opt), placeholder, errors)
