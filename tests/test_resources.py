from __future__ import annotations

import struct

from pe_builder import SectionSpec, build_pe, put

from pescope.config import Limits
from pescope.context import open_pe
from pescope.image import RawImage
from pescope.reporters.text import render_resources
from pescope.resources import ResourceName, decode_message_table, decode_resources, decode_string_block

RSRC_VA = 0x5000


def _resource_section(va, tree):
    """
    tree: [(type_key, [(name_key, [(lang, data), ...]), ...]), ...]; keys are
    int ids or str names. Lays out directories breadth-first, then data
    entries, name strings and data. Returns (bytes, data entry offsets).
    """
    pos = 16 + 8 * len(tree)
    type_offs = []
    for _, names in tree:
        type_offs.append(pos)
        pos += 16 + 8 * len(names)
    name_offs = []
    for _, names in tree:
        row = []
        for _, langs in names:
            row.append(pos)
            pos += 16 + 8 * len(langs)
        name_offs.append(row)
    leaf_offs = []
    for _, names in tree:
        for _, langs in names:
            for _ in langs:
                leaf_offs.append(pos)
                pos += 16
    strings = {}
    for type_key, names in tree:
        for key in [type_key] + [n for n, _ in names]:
            if isinstance(key, str) and key not in strings:
                strings[key] = pos
                pos += 2 + 2 * len(key)
    blobs = []
    for _, names in tree:
        for _, langs in names:
            for _, data in langs:
                pos = (pos + 3) & ~3
                blobs.append(pos)
                pos += len(data)

    buf = bytearray(pos)

    def key_value(key):
        return 0x80000000 | strings[key] if isinstance(key, str) else key

    def write_dir(off, entries):
        named = sum(1 for k, _ in entries if isinstance(k, str))
        struct.pack_into("<IIHHHH", buf, off, 0, 0, 0, 0, named, len(entries) - named)
        for i, (key, target) in enumerate(entries):
            struct.pack_into("<II", buf, off + 16 + 8 * i, key_value(key), target)

    write_dir(0, [(k, 0x80000000 | type_offs[i]) for i, (k, _) in enumerate(tree)])
    leaf_iter = iter(zip(leaf_offs, blobs))
    for t, (_, names) in enumerate(tree):
        write_dir(type_offs[t], [(k, 0x80000000 | name_offs[t][n]) for n, (k, _) in enumerate(names)])
        for n, (_, langs) in enumerate(names):
            lang_entries = []
            for lang, data in langs:
                leaf_off, blob_off = next(leaf_iter)
                struct.pack_into("<4I", buf, leaf_off, va + blob_off, len(data), 0, 0)
                put(buf, blob_off, data)
                lang_entries.append((lang, leaf_off))
            write_dir(name_offs[t][n], lang_entries)
    for key, off in strings.items():
        put(buf, off, struct.pack("<H", len(key)) + key.encode("utf-16le"))
    return bytes(buf), leaf_offs


def _string_block(*texts: str) -> bytes:
    slots = list(texts) + [""] * (16 - len(texts))
    return b"".join(struct.pack("<H", len(t)) + t.encode("utf-16le") for t in slots)


def _message_table(low: int, entries) -> bytes:
    body = b""
    for unicode, text in entries:
        raw = text.encode("utf-16le") + b"\x00\x00" if unicode else text.encode("ascii") + b"\x00"
        raw = raw.ljust((len(raw) + 3) & ~3, b"\x00")
        body += struct.pack("<HH", 4 + len(raw), 1 if unicode else 0) + raw
    return struct.pack("<IIII", 1, low, low + len(entries) - 1, 16) + body


def _ctx(tree):
    data, leaf_offs = _resource_section(RSRC_VA, tree)
    built = build_pe([SectionSpec(b".rsrc", RSRC_VA, data)], directories={2: (RSRC_VA, len(data))})
    ctx, errors = open_pe(RawImage(built.data))
    assert ctx is not None, errors
    return ctx, built, leaf_offs


TREE = [
    ("MYTYPE", [("CONFIG", [(0, b"abc")])]),
    (6, [(1, [(0x409, _string_block("Hello", "", "Tab\there"))]), (2, [(0x409, _string_block("Second"))])]),
    (11, [(1, [(0x409, _message_table(1, [(True, "Uni\r\n"), (False, "Ansi msg")]))])]),
]


def test_string_block_ids_follow_block_number():
    entries = decode_string_block(_string_block("Hello", "", "Tab\there"), 1)
    assert [(e.id, e.text) for e in entries] == [(0, "Hello"), (2, "Tab\\there")]
    entries = decode_string_block(_string_block("x"), 3)
    assert entries[0].id == 32


def test_string_block_overlong_length_is_clamped():
    raw = struct.pack("<3H", 5, ord("a"), ord("b"))
    entries = decode_string_block(raw, 1)
    assert [(e.id, e.text) for e in entries] == [(0, "ab")]


def test_message_table_unicode_and_ansi():
    msgs, errors = decode_message_table(_message_table(0x100, [(True, "Uni\r\n"), (False, "Ansi msg")]))
    assert errors == []
    assert [(m.id, m.unicode, m.text) for m in msgs] == [(0x100, True, "Uni\\r\\n"), (0x101, False, "Ansi msg")]


def test_message_table_truncated_block_array():
    msgs, errors = decode_message_table(struct.pack("<I", 3) + b"\x00" * 4)
    assert msgs == []
    assert errors[0]["code"] == "E_RES_MSGTABLE_TRUNCATED"


def test_resource_tree_decoded():
    ctx, _, _ = _ctx(TREE)
    tree, errors = decode_resources(ctx)
    assert errors == []
    leaves = list(tree.leaves())
    assert len(leaves) == 4

    type_name, name, lang, leaf = leaves[0]
    assert type_name.name == "MYTYPE"
    assert name.name == "CONFIG"
    assert lang.id == 0
    assert leaf.kind == "raw"
    assert leaf.data == b"abc"

    strings = [leaf for t, _, _, leaf in leaves if t.id == 6]
    assert [s.id for s in strings[0].strings] == [0, 2]
    assert [(s.id, s.text) for s in strings[1].strings] == [(16, "Second")]

    message = leaves[3][3]
    assert message.kind == "message"
    assert [m.id for m in message.messages] == [1, 2]


def test_resource_report_lines():
    ctx, _, _ = _ctx(TREE)
    tree, _ = decode_resources(ctx)
    lines = render_resources(tree)
    assert lines[0] == "Resources:"
    assert '  L"MYTYPE" Name=L"CONFIG" Language=0000:' in lines
    assert "  STRING Name=0001 Language=0409:" in lines
    assert '    0000 "Hello"' in lines
    assert '    0002 "Tab\\there"' in lines
    assert "  MESSAGETABLE Name=0001 Language=0409:" in lines
    assert '    00000001 L"Uni\\r\\n"' in lines
    assert '    00000002 "Ansi msg"' in lines
    assert any(l.startswith("    00000000: 61 62 63") for l in lines)


def test_unmappable_resource_data_is_reported_in_place():
    data, leaf_offs = _resource_section(RSRC_VA, [(10, [(1, [(0, b"payload")])])])
    buf = bytearray(data)
    struct.pack_into("<I", buf, leaf_offs[0], 0x9000)
    built = build_pe([SectionSpec(b".rsrc", RSRC_VA, bytes(buf))], directories={2: (RSRC_VA, len(buf))})
    ctx, _ = open_pe(RawImage(built.data))

    tree, errors = decode_resources(ctx)
    leaf = next(tree.leaves())[3]
    assert leaf.unreadable is True
    assert errors[0]["message"] == "Can't grab resource data."
    assert "    Can't grab resource data" in render_resources(tree)


def test_resource_name_labels():
    assert ResourceName(id=3).label(type_level=True) == "ICON"
    assert ResourceName(id=3).label() == "0003"
    assert ResourceName(id=0x99).label(type_level=True) == "0099"
    assert ResourceName(name="X").label() == 'L"X"'


def _shared_directory_tree(n_types: int, n_names: int) -> bytes:
    # Every type entry points at one name directory whose entries all point
    # at one empty language directory.
    name_dir = 16 + 8 * n_types
    lang_dir = name_dir + 16 + 8 * n_names
    buf = bytearray(lang_dir + 16)
    struct.pack_into("<IIHHHH", buf, 0, 0, 0, 0, 0, 0, n_types)
    for i in range(n_types):
        struct.pack_into("<II", buf, 16 + 8 * i, i + 1, 0x80000000 | name_dir)
    struct.pack_into("<IIHHHH", buf, name_dir, 0, 0, 0, 0, 0, n_names)
    for i in range(n_names):
        struct.pack_into("<II", buf, name_dir + 16 + 8 * i, i + 1, 0x80000000 | lang_dir)
    return bytes(buf)


def test_entry_budget_covers_every_directory_level():
    data = _shared_directory_tree(200, 200)
    built = build_pe([SectionSpec(b".rsrc", RSRC_VA, data)], directories={2: (RSRC_VA, len(data))})
    ctx, _ = open_pe(RawImage(built.data), limits=Limits(max_resource_entries=300))

    tree, errors = decode_resources(ctx)
    visited = len(tree.types) + sum(len(t.children) for t in tree.types)
    assert visited <= 300
    assert [e["code"] for e in errors] == ["E_RES_TOO_MANY"]


def test_shared_directories_within_budget_decode():
    data = _shared_directory_tree(3, 4)
    built = build_pe([SectionSpec(b".rsrc", RSRC_VA, data)], directories={2: (RSRC_VA, len(data))})
    ctx, _ = open_pe(RawImage(built.data))

    tree, errors = decode_resources(ctx)
    assert errors == []
    assert [len(t.children) for t in tree.types] == [4, 4, 4]
    assert list(tree.leaves()) == []


def test_string_named_language_prints_low_bits():
    data, _ = _resource_section(RSRC_VA, [("T", [(1, [(0x409, b"x")])])])
    buf = bytearray(data)
    # Reuse the type's name string for the language entry.
    type_name_value = struct.unpack_from("<I", buf, 16)[0]
    lang_entry = 16 + 8 + 16 + 8 + 16
    struct.pack_into("<I", buf, lang_entry, type_name_value)
    built = build_pe([SectionSpec(b".rsrc", RSRC_VA, bytes(buf))], directories={2: (RSRC_VA, len(buf))})
    ctx, _ = open_pe(RawImage(built.data))

    tree, errors = decode_resources(ctx)
    assert errors == []
    assert f'  L"T" Name=0001 Language={type_name_value & 0xFFFF:04x}:' in render_resources(tree)
