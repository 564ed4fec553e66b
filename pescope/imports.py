from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import DIR_DELAY_IMPORT, DIR_IMPORT
from pescope.context import PeContext
from pescope.image import err

logger = logging.getLogger(__name__)

IMPORT_DESCRIPTOR_SIZE = 20
DELAY_DESCRIPTOR_SIZE = 32

# grAttrs bit 0: pointers are RVAs; clear means they are VAs (image base included).
DLATTR_RVA = 0x1


@dataclass(frozen=True)
class ImportThunk:
    value: int
    ordinal: Optional[int] = None
    hint: Optional[int] = None
    name: Optional[str] = None
    # Hint/name RVA that could not be mapped to the file.
    unresolved: bool = False

    @property
    def by_ordinal(self) -> bool:
        return self.ordinal is not None


@dataclass(frozen=True)
class ImportModule:
    offset: int
    name: Optional[str]
    original_first_thunk: int
    time_date_stamp: int
    forwarder_chain: int
    first_thunk: int
    # None when the thunk array cannot be read at all.
    thunks: Optional[List[ImportThunk]]


@dataclass(frozen=True)
class DelayImportModule:
    offset: int
    attributes: int
    name: Optional[str]
    name_rva: int
    module_handle: int
    iat: int
    int_table: int
    bound_iat: int
    unload_iat: int
    time_date_stamp: int
    thunks: Optional[List[ImportThunk]]

    @property
    def addressing(self) -> str:
        return "rva" if self.attributes & DLATTR_RVA else "va"


def decode_thunks(
    ctx: PeContext,
    thunk_rva: int,
    *,
    bias: int = 0,
    max_entries: Optional[int] = None,
    errors: Optional[List[Dict[str, Any]]] = None,
) -> Optional[List[ImportThunk]]:
    """
    Walk a NUL-terminated thunk array of pointer-sized entries starting at thunk_rva.
    bias is subtracted from every hint/name address before resolution.
    Returns None when the first entry cannot be resolved.
    """
    errors = errors if errors is not None else []
    max_entries = max_entries if max_entries is not None else ctx.limits.max_thunks_per_module
    width = ctx.pointer_size
    ordinal_flag = 1 << (width * 8 - 1)

    thunks: List[ImportThunk] = []
    for idx in range(max_entries):
        value = ctx.pointer_at(thunk_rva + idx * width)
        if value is None:
            if idx == 0:
                return None
            errors.append(err("E_PE_IMPORT_THUNK_TRUNCATED", "Import thunk table truncated.", thunk_rva=thunk_rva))
            break
        if value == 0:
            break

        if value & ordinal_flag:
            thunks.append(ImportThunk(value=value, ordinal=value & 0xFFFF))
            continue

        ibn_rva = (value & 0xFFFFFFFF) - bias
        hint = ctx.u16_at(ibn_rva) if ibn_rva > 0 else None
        name = ctx.cstring(ibn_rva + 2) if hint is not None else None
        if hint is None or name is None:
            errors.append(
                err(
                    "E_PE_IMPORT_BY_NAME_UNMAPPABLE",
                    "Can't grab import by name info, skipping to next ordinal.",
                    ibn_rva=ibn_rva,
                )
            )
            thunks.append(ImportThunk(value=value, unresolved=True))
            continue
        thunks.append(ImportThunk(value=value, hint=hint, name=name))
    else:
        errors.append(
            err("E_PE_IMPORT_TOO_MANY_THUNKS", f"Thunk count exceeded max_entries={max_entries}.", thunk_rva=thunk_rva)
        )
    return thunks


def decode_imports(ctx: PeContext) -> Tuple[Optional[List[ImportModule]], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    view = ctx.directory(DIR_IMPORT)
    if view is None:
        return None, errors

    modules: List[ImportModule] = []
    for i in range(ctx.limits.max_import_modules):
        desc_rva = view.rva + i * IMPORT_DESCRIPTOR_SIZE
        raw = ctx.resolve(desc_rva, IMPORT_DESCRIPTOR_SIZE)
        if raw is None:
            errors.append(err("E_PE_IMPORT_DESC_TRUNCATED", "Import descriptor table truncated.", desc_rva=desc_rva))
            break
        oft, stamp, chain, name_rva, first_thunk = struct.unpack_from("<5I", raw, 0)
        if not name_rva or not first_thunk:
            break

        name = ctx.cstring(name_rva)
        if name is None:
            errors.append(err("E_PE_IMPORT_DLL_NAME_UNREADABLE", "Import DLL name could not be read.", name_rva=name_rva))

        thunks = decode_thunks(ctx, oft or first_thunk, errors=errors)
        if thunks is None:
            errors.append(
                err(
                    "E_PE_IMPORT_THUNK_UNMAPPABLE",
                    "Can't grab thunk data, going to next imported DLL.",
                    thunk_rva=oft or first_thunk,
                    dll=name,
                )
            )
        modules.append(
            ImportModule(
                offset=ctx.resolve_offset(desc_rva, IMPORT_DESCRIPTOR_SIZE) or 0,
                name=name,
                original_first_thunk=oft,
                time_date_stamp=stamp,
                forwarder_chain=chain,
                first_thunk=first_thunk,
                thunks=thunks,
            )
        )
    else:
        errors.append(err("E_PE_IMPORT_TOO_MANY_DLLS", "Import DLL count exceeded max_import_modules."))

    logger.debug("decoded %d import descriptors", len(modules))
    return modules, errors


def decode_delay_imports(ctx: PeContext) -> Tuple[Optional[List[DelayImportModule]], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    view = ctx.directory(DIR_DELAY_IMPORT)
    if view is None:
        return None, errors

    modules: List[DelayImportModule] = []
    for i in range(ctx.limits.max_import_modules):
        desc_rva = view.rva + i * DELAY_DESCRIPTOR_SIZE
        raw = ctx.resolve(desc_rva, DELAY_DESCRIPTOR_SIZE)
        if raw is None:
            errors.append(err("E_PE_DELAY_DESC_TRUNCATED", "Delay import descriptor table truncated.", desc_rva=desc_rva))
            break
        attrs, name_ptr, hmod, iat, int_ptr, bound_iat, unload_iat, stamp = struct.unpack_from("<8I", raw, 0)
        if not name_ptr or not iat or not int_ptr:
            break

        # Every pointer-like field of a VA-mode descriptor carries the image base.
        bias = 0 if attrs & DLATTR_RVA else ctx.image_base
        name = ctx.cstring(name_ptr - bias) if name_ptr > bias else None
        if name is None:
            errors.append(err("E_PE_DELAY_NAME_UNREADABLE", "Delay import DLL name could not be read.", name_ptr=name_ptr))

        thunks = None
        if int_ptr > bias:
            thunks = decode_thunks(ctx, int_ptr - bias, bias=bias, errors=errors)
        if thunks is None:
            errors.append(
                err(
                    "E_PE_DELAY_THUNK_UNMAPPABLE",
                    "Can't grab thunk data, going to next imported DLL.",
                    int_ptr=int_ptr,
                    dll=name,
                )
            )
        modules.append(
            DelayImportModule(
                offset=ctx.resolve_offset(desc_rva, DELAY_DESCRIPTOR_SIZE) or 0,
                attributes=attrs,
                name=name,
                name_rva=name_ptr,
                module_handle=hmod,
                iat=iat,
                int_table=int_ptr,
                bound_iat=bound_iat,
                unload_iat=unload_iat,
                time_date_stamp=stamp,
                thunks=thunks,
            )
        )
    else:
        errors.append(err("E_PE_DELAY_TOO_MANY_DLLS", "Delay import DLL count exceeded max_import_modules."))

    return modules, errors
