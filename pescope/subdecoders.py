"""
Default formatted dumpers for payloads the core only locates: COFF symbol
tables, CodeView records, frame-pointer-omission records and STABS streams.

Each dumper takes the raw image plus an (offset, size) pair and returns report
lines. Replace any of them through SubDecoders to plug in a richer dumper.
"""

from __future__ import annotations

import struct
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from pescope.constants import COFF_SYMBOL_SIZE
from pescope.image import RawImage, c_string
from pescope.sections import Section

FPO_RECORD_SIZE = 16
STAB_ENTRY_SIZE = 12

_FRAME_TYPES = ("FPO", "TRAP", "TSS", "NONFPO")

_STORAGE_CLASSES = {
    0: "NULL",
    1: "AUTOMATIC",
    2: "EXTERNAL",
    3: "STATIC",
    4: "REGISTER",
    5: "EXTERNAL_DEF",
    6: "LABEL",
    101: "FUNCTION",
    103: "FILE",
    104: "SECTION",
    105: "WEAK_EXTERNAL",
}


def _symbol_name(raw: bytes, strtable: Optional[bytes]) -> str:
    if raw[:4] == b"\x00\x00\x00\x00":
        offset = struct.unpack_from("<I", raw, 4)[0]
        if strtable is not None:
            name = c_string(strtable, offset)
            if name is not None:
                return name
        return f"<strtab+0x{offset:x}>"
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="replace")


def dump_coff_symbols(
    image: RawImage, offset: int, size: int, sections: Sequence[Section] = ()
) -> List[str]:
    """size is in bytes; the string table, when present, directly follows the symbols."""
    count = size // COFF_SYMBOL_SIZE
    raw = image.read(offset, count * COFF_SYMBOL_SIZE)
    if raw is None:
        return ["Can't grab COFF symbol table"]

    strtable = None
    str_off = offset + count * COFF_SYMBOL_SIZE
    str_size = image.u32(str_off)
    if str_size is not None:
        strtable = image.read(str_off, str_size) or image.data[str_off:]

    lines = [f"COFF Symbol Table ({count} records)"]
    i = 0
    while i < count:
        rec = raw[i * COFF_SYMBOL_SIZE : (i + 1) * COFF_SYMBOL_SIZE]
        value, section_number, sym_type, storage, n_aux = struct.unpack_from("<IhHBB", rec, 8)
        if 0 < section_number <= len(sections):
            where = sections[section_number - 1].display_name
        elif section_number == 0:
            where = "UNDEF"
        elif section_number == -1:
            where = "ABS"
        else:
            where = f"sect{section_number}"
        lines.append(
            f"  [{i:4d}] {_symbol_name(rec[:8], strtable):<24} value {value:08x}  {where:<8}"
            f" type {sym_type:04x}  {_STORAGE_CLASSES.get(storage, str(storage))}"
        )
        i += 1 + n_aux
    return lines


def dump_codeview(image: RawImage, offset: int, size: int) -> List[str]:
    raw = image.read(offset, size)
    if raw is None or len(raw) < 4:
        return ["Can't grab CodeView data"]
    sig = raw[:4]
    if sig == b"RSDS" and len(raw) >= 24:
        guid = uuid.UUID(bytes_le=raw[4:20])
        age = struct.unpack_from("<I", raw, 20)[0]
        pdb = c_string(raw, 24, max_len=len(raw) - 24) or ""
        return [
            "    CodeView signature: RSDS",
            f"    GUID:              {{{str(guid).upper()}}}",
            f"    Age:               {age}",
            f"    PDB:               {pdb}",
        ]
    if sig == b"NB10" and len(raw) >= 16:
        cv_offset, signature, age = struct.unpack_from("<III", raw, 4)
        pdb = c_string(raw, 16, max_len=len(raw) - 16) or ""
        return [
            "    CodeView signature: NB10",
            f"    Offset:            {cv_offset:08x}",
            f"    Signature:         {signature:08x}",
            f"    Age:               {age}",
            f"    PDB:               {pdb}",
        ]
    return [f"    CodeView signature: {sig.decode('ascii', errors='replace')}"]


def dump_fpo(image: RawImage, offset: int, size: int) -> List[str]:
    count = size // FPO_RECORD_SIZE
    raw = image.read(offset, count * FPO_RECORD_SIZE)
    if raw is None:
        return ["Can't grab FPO data"]
    lines = [f"    FPO data ({count} records)", "      start    size     locals params prolog regs seh bp frame"]
    for i in range(count):
        start, proc_size, locals_dw, params, prolog, bits = struct.unpack_from("<IIIHBB", raw, i * FPO_RECORD_SIZE)
        regs = bits & 7
        has_seh = (bits >> 3) & 1
        use_bp = (bits >> 4) & 1
        frame = _FRAME_TYPES[(bits >> 6) & 3]
        lines.append(
            f"      {start:08x} {proc_size:08x} {locals_dw:6d} {params:6d} {prolog:6d} {regs:4d} {has_seh:3d} {use_bp:2d} {frame}"
        )
    return lines


def dump_stabs(image: RawImage, offset: int, size: int, str_offset: int, str_size: int) -> List[str]:
    count = size // STAB_ENTRY_SIZE
    raw = image.read(offset, count * STAB_ENTRY_SIZE)
    strtab = image.read(str_offset, str_size)
    if raw is None or strtab is None:
        return ["Can't grab STABS data"]
    lines = [f"Stabs ({count} entries)", "  index  type other desc  value    string"]
    for i in range(count):
        strx, n_type, n_other, n_desc, n_value = struct.unpack_from("<IBBHI", raw, i * STAB_ENTRY_SIZE)
        text = c_string(strtab, strx, max_len=4096) or ""
        lines.append(f"  {i:5d}  {n_type:02x}   {n_other:02x}    {n_desc:04x} {n_value:08x} {text}")
    return lines


@dataclass(frozen=True)
class SubDecoders:
    coff: Callable[..., List[str]] = dump_coff_symbols
    codeview: Callable[..., List[str]] = dump_codeview
    fpo: Callable[..., List[str]] = dump_fpo
    stabs: Callable[..., List[str]] = dump_stabs


DEFAULT_SUBDECODERS = SubDecoders()
