from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import DIR_CLR, flag_names
from pescope.context import PeContext
from pescope.headers import DataDirectory

COR20_HEADER_SIZE = 72

CLR_FLAGS = (
    (0x00000001, "ILONLY"),
    (0x00000002, "32BITREQUIRED"),
    (0x00000004, "IL_LIBRARY"),
    (0x00000008, "STRONGNAMESIGNED"),
    (0x00000010, "NATIVE_ENTRYPOINT"),
    (0x00010000, "TRACKDEBUGDATA"),
)

CLR_DIRECTORY_NAMES = (
    "MetaData",
    "Resources",
    "StrongNameSignature",
    "CodeManagerTable",
    "VTableFixups",
    "ExportAddressTableJumps",
    "ManagedNativeHeader",
)


@dataclass(frozen=True)
class ClrHeader:
    cb: int
    major_runtime_version: int
    minor_runtime_version: int
    flags: int
    entry_point_token: int
    directories: List[Tuple[str, DataDirectory]]

    @property
    def flag_names(self) -> List[str]:
        return flag_names(self.flags, CLR_FLAGS)


def decode_clr(ctx: PeContext) -> Tuple[Optional[ClrHeader], List[Dict[str, Any]]]:
    entry = ctx.directory_entry(DIR_CLR)
    if entry is None:
        return None, []
    raw = ctx.resolve(entry[0], COR20_HEADER_SIZE)
    if raw is None:
        return None, []
    cb, major, minor, md_rva, md_size, flags, token = struct.unpack_from("<IHHIIII", raw, 0)
    dirs = [("MetaData", DataDirectory(rva=md_rva, size=md_size))]
    for i, name in enumerate(CLR_DIRECTORY_NAMES[1:]):
        d_rva, d_size = struct.unpack_from("<II", raw, 24 + i * 8)
        dirs.append((name, DataDirectory(rva=d_rva, size=d_size)))
    return (
        ClrHeader(
            cb=cb,
            major_runtime_version=major,
            minor_runtime_version=minor,
            flags=flags,
            entry_point_token=token,
            directories=dirs,
        ),
        [],
    )
