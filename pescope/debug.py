from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pescope.constants import DIR_DEBUG
from pescope.context import PeContext
from pescope.image import RawImage, c_string, err, utf16_string
from pescope.sections import Section
from pescope.subdecoders import DEFAULT_SUBDECODERS, SubDecoders

DEBUG_DIRECTORY_SIZE = 28
_DEBUG_DIR_FMT = "<IIHHIIII"

IMAGE_DEBUG_TYPE_UNKNOWN = 0
IMAGE_DEBUG_TYPE_COFF = 1
IMAGE_DEBUG_TYPE_CODEVIEW = 2
IMAGE_DEBUG_TYPE_FPO = 3
IMAGE_DEBUG_TYPE_MISC = 4

IMAGE_DEBUG_MISC_EXENAME = 1
_MISC_HEADER_SIZE = 12

DEBUG_TYPE_NAMES = {
    0: "UNKNOWN",
    1: "COFF",
    2: "CODEVIEW",
    3: "FPO",
    4: "MISC",
    5: "EXCEPTION",
    6: "FIXUP",
    7: "OMAP_TO_SRC",
    8: "OMAP_FROM_SRC",
    9: "BORLAND",
    10: "RESERVED10",
    11: "CLSID",
    12: "VC_FEATURE",
    13: "POGO",
    14: "ILTCG",
    16: "REPRO",
}


@dataclass(frozen=True)
class MiscDebugInfo:
    data_type: int
    length: int
    unicode: bool
    data: str

    @property
    def data_type_name(self) -> str:
        return "Exe name" if self.data_type == IMAGE_DEBUG_MISC_EXENAME else "Unknown"


@dataclass(frozen=True)
class DebugDirectoryEntry:
    index: int
    characteristics: int
    time_date_stamp: int
    major_version: int
    minor_version: int
    type: int
    size_of_data: int
    address_of_raw_data: int
    pointer_to_raw_data: int
    misc: Optional[MiscDebugInfo] = None
    # Lines produced by a formatted sub-decoder (COFF, CodeView, FPO).
    payload: Tuple[str, ...] = ()
    payload_unreadable: bool = False

    @property
    def type_name(self) -> str:
        return DEBUG_TYPE_NAMES.get(self.type, "UNKNOWN")


def decode_misc(image: RawImage, offset: int, size: int) -> Optional[MiscDebugInfo]:
    raw = image.read(offset, size)
    if raw is None or len(raw) < _MISC_HEADER_SIZE:
        return None
    data_type, length, unicode_flag = struct.unpack_from("<IIB", raw, 0)
    if unicode_flag:
        text = utf16_string(raw, _MISC_HEADER_SIZE, max_chars=len(raw)) or ""
    else:
        text = c_string(raw, _MISC_HEADER_SIZE, max_len=len(raw)) or ""
    # length is the on-disk record length in bytes, reported as stored.
    return MiscDebugInfo(data_type=data_type, length=length, unicode=bool(unicode_flag), data=text)


def decode_debug_entries(
    image: RawImage,
    raw: bytes,
    *,
    sections: Sequence[Section] = (),
    subdecoders: SubDecoders = DEFAULT_SUBDECODERS,
) -> Tuple[List[DebugDirectoryEntry], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    entries: List[DebugDirectoryEntry] = []

    for idx in range(len(raw) // DEBUG_DIRECTORY_SIZE):
        fields = struct.unpack_from(_DEBUG_DIR_FMT, raw, idx * DEBUG_DIRECTORY_SIZE)
        chars, stamp, major, minor, dtype, size, addr, ptr = fields
        misc = None
        payload: List[str] = []
        unreadable = False

        if dtype == IMAGE_DEBUG_TYPE_COFF:
            payload = subdecoders.coff(image, ptr, size, sections)
        elif dtype == IMAGE_DEBUG_TYPE_CODEVIEW:
            payload = subdecoders.codeview(image, ptr, size)
        elif dtype == IMAGE_DEBUG_TYPE_FPO:
            payload = subdecoders.fpo(image, ptr, size)
        elif dtype == IMAGE_DEBUG_TYPE_MISC:
            misc = decode_misc(image, ptr, size)
            if misc is None:
                unreadable = True
                errors.append(err("E_DEBUG_MISC_UNREADABLE", "Can't get misc debug information.", pointer_to_raw_data=ptr))

        entries.append(
            DebugDirectoryEntry(
                index=idx,
                characteristics=chars,
                time_date_stamp=stamp,
                major_version=major,
                minor_version=minor,
                type=dtype,
                size_of_data=size,
                address_of_raw_data=addr,
                pointer_to_raw_data=ptr,
                misc=misc,
                payload=tuple(payload),
                payload_unreadable=unreadable,
            )
        )
    return entries, errors


def decode_debug_directory(
    ctx: PeContext, *, subdecoders: SubDecoders = DEFAULT_SUBDECODERS
) -> Tuple[Optional[List[DebugDirectoryEntry]], List[Dict[str, Any]]]:
    view = ctx.directory(DIR_DEBUG)
    if view is None:
        return None, []
    return decode_debug_entries(ctx.image, view.data, sections=ctx.sections, subdecoders=subdecoders)
