from __future__ import annotations

import struct

from pe_builder import SectionSpec, build_pe, dos_header, put

import pescope.dumper as dumper_mod
from pescope.config import DumpConfig
from pescope.dumper import dump_image
from pescope.image import RawImage
from pescope.reporters.text import PLACEHOLDER_BANNER


def _image(**kw) -> RawImage:
    rdata = bytearray(0x100)
    struct.pack_into("<6I", rdata, 0, 0x10003000, 0x10003004, 0x10002100, 0, 0, 0)
    put(rdata, 0x40, struct.pack("<II", 0x1000, 10) + struct.pack("<H", 0x3010))
    built = build_pe(
        [SectionSpec(b".text", 0x1000, b"\xc3"), SectionSpec(b".rdata", 0x2000, bytes(rdata))],
        directories={9: (0x2000, 24), 5: (0x2040, 10)},
        **kw,
    )
    return RawImage(built.data)


def test_no_selection_prints_headers_only():
    result = dump_image(_image(), DumpConfig())
    assert result.kind == "PE"
    assert result.lines[0] == "File Header"
    assert any(l.startswith("Optional Header (32bit)") for l in result.lines)
    assert "Section Table" not in result.lines
    assert "Thread Local Storage" not in result.lines
    assert result.findings["kind"] == "PE"
    assert result.findings["header"]["optional"]["magic"] == 0x10B


def test_header_flag_adds_section_table():
    result = dump_image(_image(), DumpConfig(dump_header=True))
    assert "Section Table" in result.lines


def test_selection_without_header_skips_headers():
    result = dump_image(_image(), DumpConfig(sections=["tls"]))
    assert "File Header" not in result.lines
    assert result.lines[0] == "Thread Local Storage"
    assert "relocations" not in result.findings


def test_all_selector_runs_directories_in_fixed_order():
    result = dump_image(_image(), DumpConfig(sections=["ALL"]))
    tls = result.lines.index("Thread Local Storage")
    relocs = result.lines.index("Relocations")
    assert tls < relocs
    for key in ("imports", "exports", "debug", "resources", "tls", "clr", "relocations", "exceptions"):
        assert key in result.findings
    assert result.findings["imports"] is None
    assert result.findings["relocations"][0]["page_rva"] == 0x1000


def test_placeholder_banner_comes_first():
    result = dump_image(_image(dos_stub=b"Wine placeholder DLL\x00"), DumpConfig())
    assert result.lines[0] == PLACEHOLDER_BANNER
    assert result.findings["placeholder"] is True


def test_decoder_failure_is_contained(monkeypatch):
    def boom(ctx):
        raise ValueError("bad tls")

    monkeypatch.setattr(dumper_mod, "decode_tls", boom)
    result = dump_image(_image(), DumpConfig(sections=["tls", "reloc"]))
    assert result.findings["tls"] is None
    assert result.errors[0]["code"] == "E_DECODER_FAILED"
    assert result.errors[0]["decoder"] == "tls"
    assert "Relocations" in result.lines


def test_unsupported_kind():
    result = dump_image(RawImage(dos_header() + b"NE" + b"\x00" * 62), DumpConfig())
    assert result.kind == "NE"
    assert result.errors[0]["code"] == "E_UNSUPPORTED_KIND"
    assert result.lines == ["Unsupported file kind: NE"]


def test_coff_symbol_table_dump():
    symbols = struct.pack("<8sIhHBB", b"_main", 0x10, 1, 0x20, 2, 0)
    strtab = struct.pack("<I", 4)
    image = _image(coff_symbols=symbols, number_of_symbols=1, string_table=strtab)
    result = dump_image(image, DumpConfig(sections=["tls"], symbol_table=True))
    assert "COFF Symbol Table (1 records)" in result.lines
    line = next(l for l in result.lines if l.startswith("  [   0]"))
    assert "_main" in line
    assert ".text" in line
    assert "EXTERNAL" in line
