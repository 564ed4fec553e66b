from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import DIR_EXPORT
from pescope.context import PeContext
from pescope.image import err

EXPORT_DIRECTORY_SIZE = 40
_EXPORT_DIR_FMT = "<IIHHIIIIIII"


@dataclass(frozen=True)
class ExportEntry:
    address: int
    ordinal: int
    name: Optional[str]
    forwarder: Optional[str]
    # Non-zero when the export is named, even if the name cannot be read.
    name_rva: int = 0


@dataclass(frozen=True)
class ExportDirectory:
    rva: int
    size: int
    characteristics: int
    time_date_stamp: int
    major_version: int
    minor_version: int
    name_rva: int
    dll_name: Optional[str]
    ordinal_base: int
    number_of_functions: int
    number_of_names: int
    address_of_functions: int
    address_of_names: int
    address_of_name_ordinals: int
    # None when the function address table cannot be read.
    entries: Optional[List[ExportEntry]]

    def contains(self, rva: int) -> bool:
        return self.rva <= rva < self.rva + self.size


@dataclass(frozen=True)
class ExportTables:
    functions: List[int]
    names: Optional[List[int]]
    ordinals: Optional[List[int]]


def read_export_header(ctx: PeContext) -> Optional[Tuple[int, int, tuple]]:
    entry = ctx.directory_entry(DIR_EXPORT)
    if entry is None:
        return None
    rva, size = entry
    raw = ctx.resolve(rva, EXPORT_DIRECTORY_SIZE)
    if raw is None:
        return None
    return rva, size, struct.unpack_from(_EXPORT_DIR_FMT, raw, 0)


def _u32_table(ctx: PeContext, rva: int, count: int) -> Optional[List[int]]:
    if count == 0:
        return []
    raw = ctx.resolve(rva, count * 4)
    if raw is None:
        return None
    return list(struct.unpack_from(f"<{count}I", raw, 0))


def _u16_table(ctx: PeContext, rva: int, count: int) -> Optional[List[int]]:
    if count == 0:
        return []
    raw = ctx.resolve(rva, count * 2)
    if raw is None:
        return None
    return list(struct.unpack_from(f"<{count}H", raw, 0))


def read_export_tables(ctx: PeContext, fields: tuple) -> Optional[ExportTables]:
    """Returns None when the function address table cannot be read."""
    (_, _, _, _, _, _, n_funcs, n_names, addr_funcs, addr_names, addr_ords) = fields
    functions = _u32_table(ctx, addr_funcs, n_funcs)
    if functions is None:
        return None
    return ExportTables(
        functions=functions,
        names=_u32_table(ctx, addr_names, n_names),
        ordinals=_u16_table(ctx, addr_ords, n_names),
    )


def decode_exports(ctx: PeContext) -> Tuple[Optional[ExportDirectory], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []

    hdr = read_export_header(ctx)
    if hdr is None:
        return None, errors
    rva, size, fields = hdr
    (
        characteristics,
        time_date_stamp,
        major,
        minor,
        name_rva,
        base,
        n_funcs,
        n_names,
        addr_funcs,
        addr_names,
        addr_ords,
    ) = fields

    entries: Optional[List[ExportEntry]] = None
    tables = read_export_tables(ctx, fields)
    if tables is None:
        errors.append(
            err("E_PE_EXPORT_FUNCS_UNMAPPABLE", "Can't grab functions' address table.", address_of_functions=addr_funcs)
        )
    else:
        name_by_index = [0] * n_funcs
        if tables.names is None or tables.ordinals is None:
            errors.append(
                err(
                    "E_PE_EXPORT_TABLES_UNMAPPABLE",
                    "Export names/ordinals tables unmappable.",
                    addr_names_rva=addr_names,
                    addr_ord_rva=addr_ords,
                )
            )
        else:
            for name_ptr, idx in zip(tables.names, tables.ordinals):
                if idx < n_funcs:
                    name_by_index[idx] = name_ptr
                else:
                    errors.append(err("E_PE_EXPORT_ORDINAL_OOB", "Export name ordinal out of range.", ordinal_index=idx))

        entries = []
        for i, address in enumerate(tables.functions):
            if not address:
                continue
            name = None
            if name_by_index[i]:
                name = ctx.cstring(name_by_index[i])
                if name is None:
                    errors.append(err("E_PE_EXPORT_NAME_UNREADABLE", "Export name unreadable.", name_rva=name_by_index[i]))
            forwarder = None
            if rva <= address < rva + size:
                forwarder = ctx.cstring(address)
            entries.append(
                ExportEntry(
                    address=address, ordinal=base + i, name=name, forwarder=forwarder, name_rva=name_by_index[i]
                )
            )

    exp = ExportDirectory(
        rva=rva,
        size=size,
        characteristics=characteristics,
        time_date_stamp=time_date_stamp,
        major_version=major,
        minor_version=minor,
        name_rva=name_rva,
        dll_name=ctx.cstring(name_rva),
        ordinal_base=base,
        number_of_functions=n_funcs,
        number_of_names=n_names,
        address_of_functions=addr_funcs,
        address_of_names=addr_names,
        address_of_name_ordinals=addr_ords,
        entries=entries,
    )
    return exp, errors
