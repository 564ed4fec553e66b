from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pescope.constants import DIR_RESOURCE
from pescope.context import PeContext
from pescope.image import err, u16, u32
from pescope.strings import escape_ascii, escape_unicode, utf16_units

RESOURCE_DIRECTORY_SIZE = 16
RESOURCE_ENTRY_SIZE = 8
RESOURCE_DATA_ENTRY_SIZE = 16
MESSAGE_BLOCK_SIZE = 12

RT_STRING = 6
RT_MESSAGETABLE = 11

MESSAGE_RESOURCE_UNICODE = 0x1

_HIGH_BIT = 0x80000000

RESOURCE_TYPE_NAMES = {
    1: "CURSOR",
    2: "BITMAP",
    3: "ICON",
    4: "MENU",
    5: "DIALOG",
    6: "STRING",
    7: "FONTDIR",
    8: "FONT",
    9: "ACCELERATOR",
    10: "RCDATA",
    11: "MESSAGETABLE",
    12: "GROUP_CURSOR",
    14: "GROUP_ICON",
    16: "VERSION",
    17: "DLGINCLUDE",
    19: "PLUGPLAY",
    20: "VXD",
    21: "ANICURSOR",
    22: "ANIICON",
    23: "HTML",
    24: "RT_MANIFEST",
}


@dataclass(frozen=True)
class ResourceName:
    """A directory entry name: either a numeric id or a length-prefixed UTF-16 string."""

    id: Optional[int] = None
    name: Optional[str] = None
    # Low 16 bits of the entry name field, kept for string names too.
    raw_id: int = 0

    @property
    def is_string(self) -> bool:
        return self.name is not None

    def label(self, *, type_level: bool = False) -> str:
        if self.name is not None:
            return f'L"{self.name}"'
        ident = self.id or 0
        if type_level and ident in RESOURCE_TYPE_NAMES:
            return RESOURCE_TYPE_NAMES[ident]
        return f"{ident:04x}"


@dataclass(frozen=True)
class StringTableEntry:
    id: int
    text: str


@dataclass(frozen=True)
class MessageEntry:
    id: int
    unicode: bool
    text: str


@dataclass(frozen=True)
class ResourceLeaf:
    data_rva: int
    size: int
    code_page: int
    kind: str  # "string", "message" or "raw"
    strings: Optional[List[StringTableEntry]] = None
    messages: Optional[List[MessageEntry]] = None
    data: Optional[bytes] = None
    # Data RVA could not be mapped to file bytes.
    unreadable: bool = False


@dataclass
class ResourceNode:
    name: ResourceName
    children: List["ResourceNode"] = field(default_factory=list)
    leaf: Optional[ResourceLeaf] = None


@dataclass
class ResourceTree:
    types: List[ResourceNode]

    def leaves(self) -> Iterator[Tuple[ResourceName, ResourceName, ResourceName, ResourceLeaf]]:
        for t in self.types:
            for n in t.children:
                for lang in n.children:
                    if lang.leaf is not None:
                        yield t.name, n.name, lang.name, lang.leaf


def decode_string_block(raw: bytes, name_id: int) -> List[StringTableEntry]:
    """
    A string block packs 16 length-prefixed UTF-16 strings. size counts WCHARs;
    a length running past the block is clamped to what remains.
    """
    units = utf16_units(raw)
    size = len(units)
    pos = 0
    out: List[StringTableEntry] = []
    for i in range(16):
        if not size:
            break
        length = units[pos]
        pos += 1
        if length >= size:
            length = size
            size = 0
        else:
            size -= length + 1
        if length:
            ident = ((name_id - 1) * 16 + i) & 0xFFFF
            out.append(StringTableEntry(id=ident, text=escape_unicode(units[pos : pos + length])))
            pos += length
    return out


def decode_message_table(
    raw: bytes, *, max_entries: int = 65536
) -> Tuple[List[MessageEntry], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    out: List[MessageEntry] = []
    n_blocks = u32(raw, 0)
    if n_blocks is None:
        errors.append(err("E_RES_MSGTABLE_TRUNCATED", "Message table header truncated."))
        return out, errors

    for b in range(n_blocks):
        boff = 4 + b * MESSAGE_BLOCK_SIZE
        if boff + MESSAGE_BLOCK_SIZE > len(raw):
            errors.append(err("E_RES_MSGTABLE_TRUNCATED", "Message table block array truncated.", block=b))
            break
        low, high, entry_off = struct.unpack_from("<III", raw, boff)
        for ident in range(low, high + 1):
            if len(out) >= max_entries:
                errors.append(err("E_RES_MSGTABLE_TOO_MANY", f"Message count exceeded max_entries={max_entries}."))
                return out, errors
            length = u16(raw, entry_off)
            flags = u16(raw, entry_off + 2)
            if length is None or flags is None:
                errors.append(err("E_RES_MSGTABLE_TRUNCATED", "Message entry out of bounds.", id=ident))
                break
            text_off = entry_off + 4
            if flags & MESSAGE_RESOURCE_UNICODE:
                units: List[int] = []
                pos = text_off
                while pos + 1 < len(raw):
                    c = raw[pos] | (raw[pos + 1] << 8)
                    if c == 0:
                        break
                    units.append(c)
                    pos += 2
                out.append(MessageEntry(id=ident, unicode=True, text=escape_unicode(units)))
            else:
                end = raw.find(b"\x00", text_off)
                text = raw[text_off : end if end != -1 else len(raw)]
                out.append(MessageEntry(id=ident, unicode=False, text=escape_ascii(text)))
            # Entries advance by their own length.
            entry_off += length
    return out, errors


def _read_name(root: bytes, value: int) -> ResourceName:
    if value & _HIGH_BIT:
        off = value & ~_HIGH_BIT
        length = u16(root, off)
        if length is None:
            return ResourceName(name="", raw_id=value & 0xFFFF)
        units = utf16_units(root[off + 2 : off + 2 + length * 2])
        return ResourceName(name=escape_unicode(units), raw_id=value & 0xFFFF)
    return ResourceName(id=value & 0xFFFF, raw_id=value & 0xFFFF)


@dataclass
class _EntryBudget:
    """Directory entries left to visit, shared by all three tree levels."""

    remaining: int

    def take(self) -> bool:
        self.remaining -= 1
        return self.remaining >= 0

    @property
    def exhausted(self) -> bool:
        return self.remaining < 0


def _read_directory(
    root: bytes, offset: int, errors: List[Dict[str, Any]], budget: _EntryBudget
) -> List[Tuple[ResourceName, int]]:
    named = u16(root, offset + 12)
    ids = u16(root, offset + 14)
    if named is None or ids is None:
        errors.append(err("E_RES_DIR_TRUNCATED", "Resource directory out of bounds.", offset=offset))
        return []
    entries = []
    for i in range(named + ids):
        if not budget.take():
            break
        eoff = offset + RESOURCE_DIRECTORY_SIZE + i * RESOURCE_ENTRY_SIZE
        name_value = u32(root, eoff)
        target = u32(root, eoff + 4)
        if name_value is None or target is None:
            errors.append(err("E_RES_ENTRY_TRUNCATED", "Resource directory entry out of bounds.", offset=eoff))
            break
        entries.append((_read_name(root, name_value), target))
    return entries


def _decode_leaf(
    ctx: PeContext, root: bytes, target: int, type_name: ResourceName, name: ResourceName, errors: List[Dict[str, Any]]
) -> Optional[ResourceLeaf]:
    off = target & ~_HIGH_BIT
    if off + RESOURCE_DATA_ENTRY_SIZE > len(root):
        errors.append(err("E_RES_DATA_ENTRY_TRUNCATED", "Resource data entry out of bounds.", offset=off))
        return None
    data_rva, size, code_page, _ = struct.unpack_from("<4I", root, off)
    raw = ctx.resolve(data_rva, size)
    if raw is None:
        errors.append(err("E_RES_DATA_UNMAPPABLE", "Can't grab resource data.", data_rva=data_rva, size=size))
        return ResourceLeaf(data_rva=data_rva, size=size, code_page=code_page, kind="raw", unreadable=True)

    # Leaf interpretation depends only on the numeric type id.
    if not type_name.is_string and type_name.id == RT_STRING:
        strings = decode_string_block(raw, name.id or 0)
        return ResourceLeaf(data_rva=data_rva, size=size, code_page=code_page, kind="string", strings=strings)
    if not type_name.is_string and type_name.id == RT_MESSAGETABLE:
        messages, msg_errors = decode_message_table(raw, max_entries=ctx.limits.max_message_entries)
        errors.extend(msg_errors)
        return ResourceLeaf(data_rva=data_rva, size=size, code_page=code_page, kind="message", messages=messages)
    return ResourceLeaf(data_rva=data_rva, size=size, code_page=code_page, kind="raw", data=raw)


def decode_resources(ctx: PeContext) -> Tuple[Optional[ResourceTree], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    view = ctx.directory(DIR_RESOURCE)
    if view is None:
        return None, errors
    root = view.data
    budget = _EntryBudget(ctx.limits.max_resource_entries)

    types: List[ResourceNode] = []
    for type_name, type_target in _read_directory(root, 0, errors, budget):
        type_node = ResourceNode(name=type_name)
        types.append(type_node)
        for name, name_target in _read_directory(root, type_target & ~_HIGH_BIT, errors, budget):
            name_node = ResourceNode(name=name)
            type_node.children.append(name_node)
            for lang, lang_target in _read_directory(root, name_target & ~_HIGH_BIT, errors, budget):
                leaf = _decode_leaf(ctx, root, lang_target, type_name, name, errors)
                name_node.children.append(ResourceNode(name=lang, leaf=leaf))
    # Once exhausted every further directory read comes back empty.
    if budget.exhausted:
        errors.append(err("E_RES_TOO_MANY", "Resource entry count exceeded max_resource_entries."))
    return ResourceTree(types=types), errors
