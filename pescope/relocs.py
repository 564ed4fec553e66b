from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import DIR_BASERELOC
from pescope.context import PeContext
from pescope.image import err

BLOCK_HEADER_SIZE = 8

RELOCATION_TYPE_NAMES = (
    "BASED_ABSOLUTE",
    "BASED_HIGH",
    "BASED_LOW",
    "BASED_HIGHLOW",
    "BASED_HIGHADJ",
    "BASED_MIPS_JMPADDR",
    "BASED_SECTION",
    "BASED_REL",
    "unknown 8",
    "BASED_IA64_IMM64",
    "BASED_DIR64",
    "BASED_HIGH3ADJ",
    "unknown 12",
    "unknown 13",
    "unknown 14",
    "unknown 15",
)


@dataclass(frozen=True)
class Relocation:
    offset: int
    type: int

    @property
    def type_name(self) -> str:
        return RELOCATION_TYPE_NAMES[self.type]


@dataclass(frozen=True)
class RelocationBlock:
    page_rva: int
    block_size: int
    entries: List[Relocation]


def decode_relocation_blocks(data: bytes) -> Tuple[List[RelocationBlock], List[Dict[str, Any]]]:
    """
    Stream (page rva, block size) headers over data. Stops once a full header
    no longer fits or a block declares zero size. Entries are clamped to data.
    """
    errors: List[Dict[str, Any]] = []
    blocks: List[RelocationBlock] = []
    pos = 0
    end = len(data)
    while pos + BLOCK_HEADER_SIZE <= end:
        page_rva, block_size = struct.unpack_from("<II", data, pos)
        if block_size == 0:
            break
        if block_size < BLOCK_HEADER_SIZE:
            errors.append(err("E_RELOC_BLOCK_MALFORMED", "Relocation block smaller than its header.", page_rva=page_rva))
            break

        count = (block_size - BLOCK_HEADER_SIZE) // 2
        available = (end - pos - BLOCK_HEADER_SIZE) // 2
        if count > available:
            errors.append(err("E_RELOC_BLOCK_TRUNCATED", "Relocation block runs past the directory.", page_rva=page_rva))
            count = available
        values = struct.unpack_from(f"<{count}H", data, pos + BLOCK_HEADER_SIZE)
        entries = [Relocation(offset=v & 0xFFF, type=v >> 12) for v in values]
        blocks.append(RelocationBlock(page_rva=page_rva, block_size=block_size, entries=entries))
        pos += BLOCK_HEADER_SIZE + count * 2
    return blocks, errors


def decode_relocations(ctx: PeContext) -> Tuple[Optional[List[RelocationBlock]], List[Dict[str, Any]]]:
    view = ctx.directory(DIR_BASERELOC)
    if view is None:
        return None, []
    return decode_relocation_blocks(view.data)
