from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from pescope.constants import DIR_TLS
from pescope.context import PeContext
from pescope.image import err

TLS_DIRECTORY32_SIZE = 24
TLS_DIRECTORY64_SIZE = 40


@dataclass(frozen=True)
class TlsDirectory:
    """64-bit shaped view; 32-bit images are widened field by field."""

    start_address_of_raw_data: int
    end_address_of_raw_data: int
    address_of_index: int
    address_of_callbacks: int
    size_of_zero_fill: int
    characteristics: int
    callbacks: List[int]

    @property
    def data_size(self) -> int:
        return self.end_address_of_raw_data - self.start_address_of_raw_data


def decode_tls(ctx: PeContext) -> Tuple[Optional[TlsDirectory], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    entry = ctx.directory_entry(DIR_TLS)
    if entry is None:
        return None, errors
    rva, _ = entry

    if ctx.is_pe32_plus:
        raw = ctx.resolve(rva, TLS_DIRECTORY64_SIZE)
        if raw is None:
            return None, errors
        start, end, index, callbacks_va, zero_fill, chars = struct.unpack_from("<4QII", raw, 0)
    else:
        raw = ctx.resolve(rva, TLS_DIRECTORY32_SIZE)
        if raw is None:
            return None, errors
        start, end, index, callbacks_va, zero_fill, chars = struct.unpack_from("<6I", raw, 0)

    callbacks: List[int] = []
    if callbacks_va:
        # Callback pointers are VAs; each slot is pointer-sized.
        addr = callbacks_va - ctx.image_base
        width = ctx.pointer_size
        for _ in range(ctx.limits.max_tls_callbacks):
            value = ctx.pointer_at(addr) if addr > 0 else None
            if not value:
                break
            callbacks.append(value)
            addr += width
        else:
            errors.append(err("E_TLS_TOO_MANY_CALLBACKS", "TLS callback count exceeded max_tls_callbacks."))

    return (
        TlsDirectory(
            start_address_of_raw_data=start,
            end_address_of_raw_data=end,
            address_of_index=index,
            address_of_callbacks=callbacks_va,
            size_of_zero_fill=zero_fill,
            characteristics=chars,
            callbacks=callbacks,
        ),
        errors,
    )
