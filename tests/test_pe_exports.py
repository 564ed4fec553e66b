from __future__ import annotations

import struct

from pe_builder import SectionSpec, build_pe, export_table, put

from pescope.context import open_pe
from pescope.exports import decode_exports
from pescope.image import RawImage
from pescope.reporters.text import render_exports


def _build_pe32_with_exports(functions, names, *, dir_size: int = 0x40, forwarder: bytes = b""):
    # .rdata at RVA 0x2000 holds the export directory; a forwarder string,
    # when given, sits inside the directory range at 0x2030.
    rdata = export_table(0x2000, b"demo.dll", 1, functions, names)
    if forwarder:
        put(rdata, 0x30, forwarder + b"\x00")
    built = build_pe([SectionSpec(b".rdata", 0x2000, bytes(rdata))], directories={0: (0x2000, dir_size)})
    ctx, errors = open_pe(RawImage(built.data))
    assert ctx is not None, errors
    return ctx


def test_pe_exports_parsed():
    ctx = _build_pe32_with_exports([0x1000, 0x1010], [(b"Alpha", 0), (b"Beta", 1)])
    exp, errors = decode_exports(ctx)
    assert errors == []
    assert exp.dll_name == "demo.dll"
    assert exp.ordinal_base == 1
    assert exp.number_of_functions == 2
    assert exp.number_of_names == 2
    assert [(e.ordinal, e.name, e.address) for e in exp.entries] == [(1, "Alpha", 0x1000), (2, "Beta", 0x1010)]


def test_zero_address_skipped_and_forwarder_detected():
    ctx = _build_pe32_with_exports(
        [0x1000, 0, 0x2030, 0x1010],
        [(b"Alpha", 0), (b"Forwarded", 2)],
        forwarder=b"NTDLL.RtlFoo",
    )
    exp, errors = decode_exports(ctx)
    assert errors == []
    assert [e.ordinal for e in exp.entries] == [1, 3, 4]
    fwd = exp.entries[1]
    assert fwd.name == "Forwarded"
    assert fwd.forwarder == "NTDLL.RtlFoo"
    assert exp.entries[2].name is None
    assert exp.entries[0].forwarder is None

    lines = render_exports(exp)
    assert lines[0] == "Exports table:"
    assert "  Name:            demo.dll" in lines
    assert "  00001000     1 Alpha" in lines
    assert "  00002030     3 Forwarded (-> NTDLL.RtlFoo)" in lines
    assert "  00001010     4 <by ordinal>" in lines


def test_unreadable_function_table_reports_and_keeps_header():
    rdata = export_table(0x2000, b"demo.dll", 1, [0x1000], [(b"Alpha", 0)])
    # AddressOfFunctions -> unmapped RVA
    struct.pack_into("<I", rdata, 0x1C, 0x9000)
    built = build_pe([SectionSpec(b".rdata", 0x2000, bytes(rdata))], directories={0: (0x2000, 0x28)})
    ctx, _ = open_pe(RawImage(built.data))

    exp, errors = decode_exports(ctx)
    assert exp is not None
    assert exp.entries is None
    assert errors[0]["code"] == "E_PE_EXPORT_FUNCS_UNMAPPABLE"
    assert render_exports(exp)[-1] == "Can't grab functions' address table"


def test_no_export_directory():
    built = build_pe([SectionSpec(b".text", 0x1000, b"\x90")])
    ctx, _ = open_pe(RawImage(built.data))
    assert decode_exports(ctx) == (None, [])


def test_long_mangled_name_is_read_in_full():
    long_name = b"?" + b"A" * 700
    rdata = export_table(0x2000, b"demo.dll", 1, [0x1000], [(long_name, 0)], size=0x800)
    built = build_pe([SectionSpec(b".rdata", 0x2000, bytes(rdata))], directories={0: (0x2000, 0x28)})
    ctx, _ = open_pe(RawImage(built.data))

    exp, errors = decode_exports(ctx)
    assert errors == []
    assert exp.entries[0].name == long_name.decode()
    assert f"  00001000     1 {long_name.decode()}" in render_exports(exp)


def test_unreadable_name_is_not_shown_as_ordinal_only():
    rdata = export_table(0x2000, b"demo.dll", 1, [0x1000], [(b"Alpha", 0)])
    # name pointer -> unmapped RVA
    names_rva = struct.unpack_from("<I", rdata, 0x20)[0]
    struct.pack_into("<I", rdata, names_rva - 0x2000, 0x9000)
    built = build_pe([SectionSpec(b".rdata", 0x2000, bytes(rdata))], directories={0: (0x2000, 0x28)})
    ctx, _ = open_pe(RawImage(built.data))

    exp, errors = decode_exports(ctx)
    assert [e["code"] for e in errors] == ["E_PE_EXPORT_NAME_UNREADABLE"]
    assert exp.entries[0].name is None
    assert exp.entries[0].name_rva == 0x9000
    assert "  00001000     1 <unreadable name @ 00009000>" in render_exports(exp)
