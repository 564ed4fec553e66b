"""
Ordinal-ordered export symbol table for stub and forwarder generators.

open_export_symbols() builds the table for one module and returns a cursor;
cursors are independent, so any number of modules may be open at once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pescope.config import Limits
from pescope.context import open_pe
from pescope.exports import read_export_header, read_export_tables
from pescope.headers import DEFAULT_PLACEHOLDER_SIGNATURE, detect_kind
from pescope.image import RawImage, err

logger = logging.getLogger(__name__)

UNREADABLE_NAME = "cant_get_function"


class FatalDumpError(Exception):
    """Raised when a dump cannot continue at all (memory exhaustion)."""


@dataclass(frozen=True)
class ExportSymbol:
    ordinal: int
    name: str


class ExportSymbolCursor:
    def __init__(
        self,
        symbols: List[ExportSymbol],
        *,
        number_of_names: int = 0,
        number_of_functions: int = 0,
        ordinal_base: int = 0,
    ) -> None:
        self._symbols = symbols
        self._pos = 0
        self.number_of_names = number_of_names
        self.number_of_functions = number_of_functions
        self.ordinal_base = ordinal_base

    def __len__(self) -> int:
        return len(self._symbols)

    def __iter__(self) -> Iterator[ExportSymbol]:
        while True:
            sym = self.next()
            if sym is None:
                return
            yield sym

    def next(self) -> Optional[ExportSymbol]:
        """Returns the next symbol, or None once the table is exhausted."""
        if self._pos >= len(self._symbols):
            return None
        sym = self._symbols[self._pos]
        self._pos += 1
        return sym

    def reset(self) -> None:
        self._pos = 0

    @property
    def summary(self) -> str:
        return (
            f"{self.number_of_names} named symbols in DLL, {self.number_of_functions} total, "
            f"{len(self._symbols)} unique (ordinal base = {self.ordinal_base})"
        )


def build_symbol_table(
    base: int, functions: List[int], names: List[Optional[str]], ordinals: List[int], module_tag: str
) -> List[ExportSymbol]:
    """
    names[j] pairs with ordinals[j] (an index into functions). Functions with a
    non-zero address and no name get a synthesized upper-case name.
    """
    try:
        named = set()
        symbols: List[ExportSymbol] = []
        for name, idx in zip(names, ordinals):
            named.add(idx)
            symbols.append(ExportSymbol(ordinal=base + idx, name=name if name is not None else UNREADABLE_NAME))
        for i, address in enumerate(functions):
            if address and i not in named:
                symbols.append(ExportSymbol(ordinal=base + i, name=f"{module_tag}_{base + i}".upper()))
        symbols.sort(key=lambda s: s.ordinal)
    except MemoryError as exc:
        raise FatalDumpError("Out of memory while building the export symbol table") from exc
    return symbols


def open_export_symbols(
    data: Union[bytes, RawImage],
    module_tag: str,
    *,
    limits: Optional[Limits] = None,
    placeholder_signature: bytes = DEFAULT_PLACEHOLDER_SIGNATURE,
) -> Tuple[Optional[ExportSymbolCursor], List[Dict[str, Any]]]:
    image = data if isinstance(data, RawImage) else RawImage(bytes(data))
    if detect_kind(image) != "PE":
        return None, [err("E_SYMBOLS_NOT_PE", "Not a PE image.")]

    ctx, errors = open_pe(image, limits=limits, placeholder_signature=placeholder_signature)
    if ctx is None:
        return None, errors

    hdr = read_export_header(ctx)
    if hdr is None:
        # No export directory: an empty table, not a failure.
        return ExportSymbolCursor([]), errors
    _, _, fields = hdr
    base, n_funcs, n_names = fields[5], fields[6], fields[7]

    tables = read_export_tables(ctx, fields)
    if tables is None:
        errors.append(err("E_PE_EXPORT_FUNCS_UNMAPPABLE", "Can't grab functions' address table."))
        return None, errors
    if tables.names is None:
        errors.append(err("E_PE_EXPORT_NAMES_UNMAPPABLE", "Can't grab functions' name table."))
        return None, errors
    if tables.ordinals is None:
        errors.append(err("E_PE_EXPORT_ORDINALS_UNMAPPABLE", "Can't grab functions' ordinal table."))
        return None, errors

    names = [ctx.cstring(rva) for rva in tables.names]
    symbols = build_symbol_table(base, tables.functions, names, tables.ordinals, module_tag)
    logger.debug("%s: %d export symbols", module_tag, len(symbols))
    return (
        ExportSymbolCursor(symbols, number_of_names=n_names, number_of_functions=n_funcs, ordinal_base=base),
        errors,
    )
