from __future__ import annotations

from pe_builder import SectionSpec, build_pe, export_table

from pescope.config import DumpConfig
from pescope.context import open_pe
from pescope.dumper import dump_image
from pescope.image import RawImage
from pescope.symbols import open_export_symbols


def _build_pe64_dll():
    # One .text section at 0x1000 holding code stubs and the export directory at 0x1100.
    text = bytearray(0x400)
    text[:0x30] = b"\xc3" * 0x30
    exports = export_table(0x1100, b"sample64.dll", 1, [0x1000, 0x1010, 0x1020], [(b"Start", 0), (b"Stop", 2)], size=0x200)
    text[0x100:0x300] = exports
    return build_pe(
        [SectionSpec(b".text", 0x1000, bytes(text))],
        pe32_plus=True,
        directories={0: (0x1100, 0x28)},
    )


def test_pe64_headers_and_directory_bytes():
    built = _build_pe64_dll()
    ctx, errors = open_pe(RawImage(built.data))
    assert errors == []
    assert ctx.header.optional.magic == 0x20B
    assert ctx.pointer_size == 8
    assert [s.name for s in ctx.sections] == [".text"]

    view = ctx.directory(0)
    start = built.raw_ptrs[0] + 0x100
    assert view.offset == start
    assert view.data == built.data[start : start + 0x28]


def test_pe64_export_dump_and_symbols():
    built = _build_pe64_dll()
    result = dump_image(RawImage(built.data), DumpConfig(sections=["export"]))
    assert result.kind == "PE"
    assert result.errors == []

    exports = result.findings["exports"]
    assert exports["dll_name"] == "sample64.dll"
    assert [(e["ordinal"], e["name"]) for e in exports["entries"]] == [(1, "Start"), (2, None), (3, "Stop")]
    assert "  00001010     2 <by ordinal>" in result.lines

    cursor, _ = open_export_symbols(built.data, "sample64")
    assert [(s.ordinal, s.name) for s in cursor] == [(1, "Start"), (2, "SAMPLE64_2"), (3, "Stop")]
