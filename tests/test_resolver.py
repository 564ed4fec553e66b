from __future__ import annotations

from pe_builder import SectionSpec, build_pe

from pescope.context import open_pe
from pescope.image import RawImage


def _ctx(sections, **kw):
    built = build_pe(sections, **kw)
    ctx, errors = open_pe(RawImage(built.data))
    assert ctx is not None, errors
    return ctx, built


def test_resolve_returns_exact_bytes():
    payload = bytes(range(256)) * 2
    ctx, built = _ctx([SectionSpec(b".text", 0x1000, payload)])
    assert ctx.resolve(0x1010, 4) == payload[0x10:0x14]
    assert ctx.resolve_offset(0x1010, 4) == built.raw_ptrs[0] + 0x10


def test_rva_zero_never_resolves():
    ctx, _ = _ctx([SectionSpec(b".text", 0, b"\xcc" * 0x200)])
    assert ctx.resolve(0, 1) is None
    assert ctx.u32_at(0) is None


def test_range_outside_every_section_is_none():
    ctx, _ = _ctx([SectionSpec(b".text", 0x1000, b"\x90" * 0x10)])
    assert ctx.resolve(0x5000, 4) is None
    # Straddles the end of the raw data.
    assert ctx.resolve(0x11FE, 4) is None


def test_overlapping_sections_later_one_wins():
    ctx, _ = _ctx(
        [
            SectionSpec(b".a", 0x1000, b"A" * 0x200),
            SectionSpec(b".b", 0x1100, b"B" * 0x200),
        ]
    )
    assert ctx.resolve(0x1180, 4) == b"BBBB"
    assert ctx.resolve(0x1010, 4) == b"AAAA"


def test_cstring_reads_nul_terminated_name():
    data = b"\x00" * 0x20 + b"KERNEL32.dll\x00"
    ctx, _ = _ctx([SectionSpec(b".rdata", 0x2000, data)])
    assert ctx.cstring(0x2020) == "KERNEL32.dll"


def test_directory_beyond_declared_count_is_absent():
    ctx, _ = _ctx(
        [SectionSpec(b".rdata", 0x2000, b"\x01" * 0x40)],
        directories={9: (0x2000, 0x18)},
        number_of_rva_and_sizes=6,
    )
    assert ctx.directory_entry(9) is None
    assert ctx.directory(9) is None


def test_directory_view_carries_offset_and_bytes():
    ctx, built = _ctx(
        [SectionSpec(b".rdata", 0x2000, b"\x01" * 0x40)],
        directories={6: (0x2000, 0x1C)},
    )
    view = ctx.directory(6)
    assert view is not None
    assert view.offset == built.raw_ptrs[0]
    assert view.data == b"\x01" * 0x1C
