"""
x86-64 exception directory: RUNTIME_FUNCTION entries and the UNWIND_INFO
records they point at.

An UNWIND_INFO is a 4-byte header followed by `count` 16-bit opcode slots,
padded to an even number, then either a chained RUNTIME_FUNCTION or a
handler RVA followed by handler data. Some opcodes consume one or two of the
following slots as operands.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pescope.constants import DIR_EXCEPTION, IMAGE_FILE_MACHINE_AMD64
from pescope.context import PeContext
from pescope.image import err

RUNTIME_FUNCTION_SIZE = 12
UNWIND_INFO_HEADER_SIZE = 4

UWOP_PUSH_NONVOL = 0
UWOP_ALLOC_LARGE = 1
UWOP_ALLOC_SMALL = 2
UWOP_SET_FPREG = 3
UWOP_SAVE_NONVOL = 4
UWOP_SAVE_NONVOL_FAR = 5
UWOP_SAVE_XMM128 = 8
UWOP_SAVE_XMM128_FAR = 9
UWOP_PUSH_MACHFRAME = 10

UNW_FLAG_EHANDLER = 1
UNW_FLAG_UHANDLER = 2
UNW_FLAG_CHAININFO = 4

UNWIND_FLAG_NAMES = (
    (UNW_FLAG_EHANDLER, "EHANDLER"),
    (UNW_FLAG_UHANDLER, "UHANDLER"),
    (UNW_FLAG_CHAININFO, "CHAININFO"),
)

REGISTER_NAMES = (
    "rax", "rcx", "rdx", "rbx", "rsp", "rbp", "rsi", "rdi",
    "r8", "r9", "r10", "r11", "r12", "r13", "r14", "r15",
)


@dataclass(frozen=True)
class RuntimeFunction:
    begin: int
    end: int
    unwind_data: int

    @property
    def is_chained(self) -> bool:
        return bool(self.unwind_data & 1)


@dataclass(frozen=True)
class UnwindOp:
    offset: int
    code: int
    info: int
    # Decoded size or stack offset; None for opcodes without one.
    operand: Optional[int] = None
    # Total 16-bit slots this opcode occupies, itself included.
    slots: int = 1


@dataclass(frozen=True)
class UnwindInfo:
    rva: int
    version: int
    flags: int
    prolog: int
    count: int
    frame_reg: int
    frame_offset: int
    ops: List[UnwindOp] = field(default_factory=list)
    chained: Optional[RuntimeFunction] = None
    handler: Optional[int] = None
    handler_data_rva: Optional[int] = None
    # Opcode stream ran past the mapped bytes.
    truncated: bool = False

    @property
    def supported(self) -> bool:
        return self.version == 1


@dataclass(frozen=True)
class UnwindEntry:
    function: RuntimeFunction
    # Target of a chained entry (unwind_data low bit set); never read as UNWIND_INFO.
    chained_to: Optional[RuntimeFunction] = None
    info: Optional[UnwindInfo] = None
    unreadable: bool = False


@dataclass(frozen=True)
class ExceptionTable:
    machine: int
    supported: bool
    functions: List[UnwindEntry]


def _read_runtime_function(ctx: PeContext, rva: int) -> Optional[RuntimeFunction]:
    raw = ctx.resolve(rva, RUNTIME_FUNCTION_SIZE)
    if raw is None:
        return None
    return RuntimeFunction(*struct.unpack_from("<III", raw, 0))


def decode_unwind_ops(
    slot_u16: Callable[[int], Optional[int]], slot_u32: Callable[[int], Optional[int]], count: int
) -> Tuple[List[UnwindOp], bool]:
    """
    Walk `count` opcode slots. slot_u16(i)/slot_u32(i) read slot i (or slots
    i and i+1) and return None when unmapped. Returns (ops, truncated).
    """
    ops: List[UnwindOp] = []
    i = 0
    while i < count:
        raw = slot_u16(i)
        if raw is None:
            return ops, True
        offset = raw & 0xFF
        code = (raw >> 8) & 0x0F
        info = raw >> 12

        operand: Optional[int] = None
        extra = 0
        if code == UWOP_ALLOC_LARGE:
            if info:
                operand, extra = slot_u32(i + 1), 2
            else:
                v = slot_u16(i + 1)
                operand, extra = (None if v is None else v * 8), 1
        elif code == UWOP_ALLOC_SMALL:
            operand = (info + 1) * 8
        elif code == UWOP_SAVE_NONVOL:
            v = slot_u16(i + 1)
            operand, extra = (None if v is None else v * 8), 1
        elif code == UWOP_SAVE_NONVOL_FAR:
            operand, extra = slot_u32(i + 1), 2
        elif code == UWOP_SAVE_XMM128:
            v = slot_u16(i + 1)
            operand, extra = (None if v is None else v * 16), 1
        elif code == UWOP_SAVE_XMM128_FAR:
            operand, extra = slot_u32(i + 1), 2

        if extra and operand is None:
            return ops, True
        ops.append(UnwindOp(offset=offset, code=code, info=info, operand=operand, slots=1 + extra))
        i += 1 + extra
    return ops, False


def decode_unwind_info(ctx: PeContext, rva: int) -> Optional[UnwindInfo]:
    hdr = ctx.resolve(rva, UNWIND_INFO_HEADER_SIZE)
    if hdr is None:
        return None
    b0, prolog, count, b3 = hdr
    version = b0 & 0x7
    flags = b0 >> 3
    frame_reg = b3 & 0xF
    frame_offset = b3 >> 4
    base = dict(rva=rva, version=version, flags=flags, prolog=prolog, count=count,
                frame_reg=frame_reg, frame_offset=frame_offset)
    if version != 1:
        return UnwindInfo(**base)

    slots_rva = rva + UNWIND_INFO_HEADER_SIZE
    ops, truncated = decode_unwind_ops(
        lambda i: ctx.u16_at(slots_rva + 2 * i),
        lambda i: ctx.u32_at(slots_rva + 2 * i),
        count,
    )
    if truncated:
        return UnwindInfo(**base, ops=ops, truncated=True)

    tail_rva = slots_rva + 2 * ((count + 1) & ~1)
    if flags & UNW_FLAG_CHAININFO:
        chained = _read_runtime_function(ctx, tail_rva)
        return UnwindInfo(**base, ops=ops, chained=chained, truncated=chained is None)
    if flags & (UNW_FLAG_EHANDLER | UNW_FLAG_UHANDLER):
        handler = ctx.u32_at(tail_rva)
        return UnwindInfo(
            **base, ops=ops, handler=handler, handler_data_rva=tail_rva + 4, truncated=handler is None
        )
    return UnwindInfo(**base, ops=ops)


def decode_exceptions(ctx: PeContext) -> Tuple[Optional[ExceptionTable], List[Dict[str, Any]]]:
    errors: List[Dict[str, Any]] = []
    view = ctx.directory(DIR_EXCEPTION)
    if view is None:
        return None, errors
    if ctx.machine != IMAGE_FILE_MACHINE_AMD64:
        return ExceptionTable(machine=ctx.machine, supported=False, functions=[]), errors

    entries: List[UnwindEntry] = []
    for i in range(len(view.data) // RUNTIME_FUNCTION_SIZE):
        func = RuntimeFunction(*struct.unpack_from("<III", view.data, i * RUNTIME_FUNCTION_SIZE))
        if func.is_chained:
            target = _read_runtime_function(ctx, func.unwind_data & ~1)
            if target is None:
                errors.append(err("E_UNWIND_CHAIN_UNMAPPABLE", "Can't grab chained function.", rva=func.unwind_data & ~1))
            entries.append(UnwindEntry(function=func, chained_to=target, unreadable=target is None))
            continue

        info = decode_unwind_info(ctx, func.unwind_data)
        if info is None:
            errors.append(err("E_UNWIND_INFO_UNMAPPABLE", "Can't grab unwind info.", rva=func.unwind_data))
        elif not info.supported:
            errors.append(err("E_UNWIND_UNKNOWN_VERSION", f"Unknown unwind info version {info.version}.", rva=func.unwind_data))
        elif info.truncated:
            errors.append(err("E_UNWIND_INFO_TRUNCATED", "Unwind info truncated.", rva=func.unwind_data))
        entries.append(UnwindEntry(function=func, info=info, unreadable=info is None))

    return ExceptionTable(machine=ctx.machine, supported=True, functions=entries), errors
