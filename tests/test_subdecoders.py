from __future__ import annotations

import struct

from pe_builder import SectionSpec, build_pe

from pescope.config import DumpConfig
from pescope.dumper import dump_image
from pescope.image import RawImage
from pescope.subdecoders import dump_codeview, dump_coff_symbols, dump_fpo


def test_fpo_records():
    rec = struct.pack("<IIIHBB", 0x1000, 0x20, 2, 1, 3, 0x12)
    lines = dump_fpo(RawImage(b"\x00" * 8 + rec), 8, len(rec))
    assert lines[0] == "    FPO data (1 records)"
    row = lines[2].split()
    assert row == ["00001000", "00000020", "2", "1", "3", "2", "0", "1", "FPO"]


def test_fpo_unreadable():
    assert dump_fpo(RawImage(b"\x00" * 4), 0, 16) == ["Can't grab FPO data"]


def test_codeview_nb10():
    raw = b"NB10" + struct.pack("<III", 0, 0x3C5A0B12, 2) + b"app.pdb\x00"
    lines = dump_codeview(RawImage(raw), 0, len(raw))
    assert lines[0] == "    CodeView signature: NB10"
    assert "    Signature:         3c5a0b12" in lines
    assert "    PDB:               app.pdb" in lines


def test_codeview_unknown_signature():
    assert dump_codeview(RawImage(b"NB09\x00\x00\x00\x00"), 0, 8) == ["    CodeView signature: NB09"]


def test_coff_symbols_long_name_and_aux_records():
    strtab = struct.pack("<I", 4 + 17) + b"a_very_long_name\x00"
    symbols = struct.pack("<IIIhHBB", 0, 4, 0x20, -1, 0, 3, 1)
    symbols += b"\x00" * 18  # aux record
    symbols += struct.pack("<8sIhHBB", b"short", 0x40, 0, 0, 2, 0)
    lines = dump_coff_symbols(RawImage(symbols + strtab), 0, len(symbols))
    assert lines[0] == "COFF Symbol Table (3 records)"
    assert len(lines) == 3
    assert "a_very_long_name" in lines[1] and "ABS" in lines[1] and "STATIC" in lines[1]
    assert lines[2].startswith("  [   2] short")
    assert "UNDEF" in lines[2]


def test_stabs_dumped_from_stab_sections():
    stab = struct.pack("<IBBHI", 1, 0x64, 0, 0, 0x1000)
    stabstr = b"\x00main.c\x00"
    built = build_pe(
        [
            SectionSpec(b".text", 0x1000, b"\xc3"),
            SectionSpec(b".stab", 0x2000, stab),
            SectionSpec(b".stabstr", 0x3000, stabstr),
        ]
    )
    result = dump_image(RawImage(built.data), DumpConfig(sections=["tls"], debug_stabs=True))
    assert "Stabs (1 entries)" in result.lines
    assert "      0  64   00    0000 00001000 main.c" in result.lines
