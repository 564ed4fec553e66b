from __future__ import annotations

from pescope.strings import escape_ascii, escape_unicode, hex_dump, utf16_units


def test_escape_ascii_controls_and_backslash():
    assert escape_ascii(b"line\r\n") == "line\\r\\n"
    assert escape_ascii(b"a\\b") == "a\\\\b"
    assert escape_ascii(b"\x1b[0m") == "\\e[0m"
    assert escape_ascii(b"\xff") == "\\xff"


def test_escape_ascii_octal_padding_before_digit():
    assert escape_ascii(b"\x01x") == "\\1x"
    assert escape_ascii(b"\x017") == "\\0017"


def test_escape_ascii_nul_handling():
    assert escape_ascii(b"ab\x00") == "ab"
    assert escape_ascii(b"a\x00b") == "a\\0b"


def test_escape_unicode_wide_characters():
    assert escape_unicode([0x263A, ord("z")]) == "\\x263az"
    # A following hex digit forces the full four-digit form.
    assert escape_unicode([0xE9, ord("A")]) == "\\x00e9A"
    assert escape_unicode([ord("h"), ord("i"), 0]) == "hi"


def test_utf16_units_ignores_odd_trailing_byte():
    assert utf16_units(b"A\x00B\x00C") == [0x41, 0x42]


def test_hex_dump_layout():
    lines = list(hex_dump(bytes(range(0x41, 0x41 + 18)), "  "))
    assert len(lines) == 2
    assert lines[0] == "  00000000: 41 42 43 44 45 46 47 48 49 4a 4b 4c 4d 4e 4f 50  ABCDEFGHIJKLMNOP"
    assert lines[1].startswith("  00000010: 51 52 ")
    assert lines[1].endswith("  QR")
    assert list(hex_dump(b"")) == []
