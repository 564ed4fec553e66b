"""
Line-oriented report renderers. Each render_* function turns one decoded
model into report lines; diagnostics for unreadable pieces are printed at the
position they apply so an empty table can be told apart from a missing one.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from pescope.clr import ClrHeader
from pescope.constants import (
    DIRECTORY_NAMES,
    DLL_CHARACTERISTICS,
    FILE_CHARACTERISTICS,
    MAX_DATA_DIRECTORIES,
    PE32P_MAGIC,
    PE32_MAGIC,
    SUBSYSTEM_NAMES,
    flag_names,
    machine_name,
    magic_name,
)
from pescope.dbg import SeparateDebugHeader
from pescope.debug import DebugDirectoryEntry
from pescope.exports import ExportDirectory
from pescope.headers import FileHeader, OptionalHeader
from pescope.image import RawImage
from pescope.imports import DelayImportModule, ImportModule, ImportThunk
from pescope.relocs import RelocationBlock
from pescope.resources import ResourceTree
from pescope.sections import Section, section_raw_data
from pescope.strings import hex_dump
from pescope.tls import TlsDirectory
from pescope.unwind import (
    REGISTER_NAMES,
    UNWIND_FLAG_NAMES,
    UWOP_ALLOC_LARGE,
    UWOP_ALLOC_SMALL,
    UWOP_PUSH_MACHFRAME,
    UWOP_PUSH_NONVOL,
    UWOP_SAVE_NONVOL,
    UWOP_SAVE_NONVOL_FAR,
    UWOP_SAVE_XMM128,
    UWOP_SAVE_XMM128_FAR,
    UWOP_SET_FPREG,
    ExceptionTable,
    RuntimeFunction,
    UnwindInfo,
    UnwindOp,
)

PLACEHOLDER_BANNER = "*** This is a placeholder DLL ***"


def time_str(stamp: int) -> str:
    if not stamp:
        return "no date"
    dt = datetime.fromtimestamp(stamp, timezone.utc)
    return f"{dt:%a %b} {dt.day:2d} {dt:%H:%M:%S %Y}"


def _word(title: str, value: int) -> str:
    return f"  {title:<34} 0x{value:<4X}         {value}"


def _dword(title: str, value: int) -> str:
    return f"  {title:<34} 0x{value:<8x}     {value}"


def _longlong(title: str, value: int) -> str:
    return f"  {title:<34} 0x{value:x}"


def _ver(title: str, major: int, minor: int) -> str:
    return f"  {title:<34} {major}.{minor:02d}"


def _flags(title: str, value: int, names: Iterable[str]) -> List[str]:
    return [f"  {title:<34} 0x{value:X}"] + [f"    {n}" for n in names]


def render_file_header(fh: FileHeader, e_lfanew: int) -> List[str]:
    stamp_offset = e_lfanew + 4 + 4
    lines = [
        "File Header",
        f"  Machine:                      {fh.machine:04X} ({machine_name(fh.machine)})",
        f"  Number of Sections:           {fh.number_of_sections}",
        f"  TimeDateStamp:                {fh.time_date_stamp:08X} ({time_str(fh.time_date_stamp)}) offset {stamp_offset}",
        f"  PointerToSymbolTable:         {fh.pointer_to_symbol_table:08X}",
        f"  NumberOfSymbols:              {fh.number_of_symbols:08X}",
        f"  SizeOfOptionalHeader:         {fh.size_of_optional_header:04X}",
        f"  Characteristics:              {fh.characteristics:04X}",
    ]
    lines.extend(f"    {n}" for n in flag_names(fh.characteristics, FILE_CHARACTERISTICS))
    lines.append("")
    return lines


def render_optional_header(opt: OptionalHeader) -> List[str]:
    lines = [f"Optional Header ({magic_name(opt.magic)})"]
    if opt.magic not in (PE32_MAGIC, PE32P_MAGIC):
        lines.append(f"  Unknown optional header magic: 0x{opt.magic:<4X}")
        return lines

    wide = _longlong if opt.is_pe32_plus else _dword
    lines.extend(
        [
            _word("Magic", opt.magic),
            _ver("linker version", opt.major_linker_version, opt.minor_linker_version),
            _dword("size of code", opt.size_of_code),
            _dword("size of initialized data", opt.size_of_initialized_data),
            _dword("size of uninitialized data", opt.size_of_uninitialized_data),
            _dword("entrypoint RVA", opt.address_of_entry_point),
            _dword("base of code", opt.base_of_code),
        ]
    )
    if opt.base_of_data is not None:
        lines.append(_dword("base of data", opt.base_of_data))
    lines.extend(
        [
            wide("image base", opt.image_base),
            _dword("section align", opt.section_alignment),
            _dword("file align", opt.file_alignment),
            _ver("required OS version", opt.major_os_version, opt.minor_os_version),
            _ver("image version", opt.major_image_version, opt.minor_image_version),
            _ver("subsystem version", opt.major_subsystem_version, opt.minor_subsystem_version),
            _dword("Win32 Version", opt.win32_version_value),
            _dword("size of image", opt.size_of_image),
            _dword("size of headers", opt.size_of_headers),
            _dword("checksum", opt.checksum),
            f"  {'Subsystem':<34} 0x{opt.subsystem:X} ({SUBSYSTEM_NAMES.get(opt.subsystem, 'Unknown')})",
        ]
    )
    lines.extend(
        _flags("DLL characteristics:", opt.dll_characteristics, flag_names(opt.dll_characteristics, DLL_CHARACTERISTICS))
    )
    lines.extend(
        [
            wide("stack reserve size", opt.size_of_stack_reserve),
            wide("stack commit size", opt.size_of_stack_commit),
            wide("heap reserve size", opt.size_of_heap_reserve),
            wide("heap commit size", opt.size_of_heap_commit),
            _dword("loader flags", opt.loader_flags),
            _dword("RVAs & sizes", opt.number_of_rva_and_sizes),
            "",
            "Data Directory",
        ]
    )
    for i in range(min(opt.number_of_rva_and_sizes, MAX_DATA_DIRECTORIES)):
        d = opt.data_directories[i]
        lines.append(f"  {DIRECTORY_NAMES[i]:<12} rva: 0x{d.rva:<8x}  size: 0x{d.size:<8x}")
    lines.append("")
    return lines


def render_section(s: Section) -> List[str]:
    if s.long_name is not None:
        head = f"  {s.name[:8]} ({s.long_name})"
    else:
        head = f"  {s.name[:8]:<8}"
    return [
        f"{head}   VirtSize: 0x{s.virtual_size:08x}  VirtAddr:  0x{s.virtual_address:08x}",
        f"    raw data offs:   0x{s.raw_ptr:08x}  raw data size: 0x{s.raw_size:08x}",
        f"    relocation offs: 0x{s.relocations_ptr:08x}  relocations:   0x{s.number_of_relocations:08x}",
        f"    line # offs:     {s.linenumbers_ptr:<8}  line #'s:      {s.number_of_linenumbers:<8}",
        f"    characteristics: 0x{s.characteristics:08x}",
        "    " + "".join(f"  {f}" for f in s.flags),
        "",
    ]


def render_sections(sections: Sequence[Section], image: Optional[RawImage] = None, rawdata: bool = False) -> List[str]:
    lines = ["Section Table"]
    for s in sections:
        lines.extend(render_section(s))
        if rawdata and image is not None:
            data = section_raw_data(image, s)
            if data is None:
                lines.append("    Can't grab section raw data")
            else:
                lines.extend(hex_dump(data, "    "))
            lines.append("")
    return lines


def _render_thunks(thunks: List[ImportThunk]) -> List[str]:
    lines = []
    for t in thunks:
        if t.by_ordinal:
            lines.append(f"  {t.ordinal:4d}  <by ordinal>")
        elif t.unresolved:
            lines.append("Can't grab import by name info, skipping to next ordinal")
        else:
            lines.append(f"  {t.hint:4d}  {t.name} {t.value & 0xFFFFFFFF:x}")
    return lines


def render_imports(modules: List[ImportModule], directory_size: int) -> List[str]:
    lines = [f"Import Table size: {directory_size:08x}"]
    for m in modules:
        lines.extend(
            [
                f"  offset {m.offset:08x} {m.name if m.name is not None else '???'}",
                f"  Hint/Name Table: {m.original_first_thunk:08X}",
                f"  TimeDateStamp:   {m.time_date_stamp:08X} ({time_str(m.time_date_stamp)})",
                f"  ForwarderChain:  {m.forwarder_chain:08X}",
                f"  First thunk RVA: {m.first_thunk:08X}",
                "  Ordn  Name",
            ]
        )
        if m.thunks is None:
            lines.append("Can't grab thunk data, going to next imported DLL")
        else:
            lines.extend(_render_thunks(m.thunks))
            lines.append("")
    lines.append("")
    return lines


def render_delay_imports(modules: List[DelayImportModule], directory_size: int) -> List[str]:
    lines = [f"Delay Import Table size: {directory_size:08x}"]
    for m in modules:
        lines.extend(
            [
                f"  grAttrs {m.attributes:08x} offset {m.offset:08x} {m.name if m.name is not None else '???'}",
                f"  Hint/Name Table: {m.int_table:08x}",
                f"  TimeDateStamp:   {m.time_date_stamp:08X} ({time_str(m.time_date_stamp)})",
                "  Ordn  Name",
            ]
        )
        if m.thunks is None:
            lines.append("Can't grab thunk data, going to next imported DLL")
        else:
            lines.extend(_render_thunks(m.thunks))
            lines.append("")
    lines.append("")
    return lines


def render_exports(exp: ExportDirectory) -> List[str]:
    lines = [
        "Exports table:",
        "",
        f"  Name:            {exp.dll_name if exp.dll_name is not None else '???'}",
        f"  Characteristics: {exp.characteristics:08x}",
        f"  TimeDateStamp:   {exp.time_date_stamp:08X} {time_str(exp.time_date_stamp)}",
        f"  Version:         {exp.major_version}.{exp.minor_version:02d}",
        f"  Ordinal base:    {exp.ordinal_base}",
        f"  # of functions:  {exp.number_of_functions}",
        f"  # of Names:      {exp.number_of_names}",
        f"Addresses of functions: {exp.address_of_functions:08X}",
        f"Addresses of name ordinals: {exp.address_of_name_ordinals:08X}",
        f"Addresses of names: {exp.address_of_names:08X}",
        "",
        "  Entry Pt  Ordn  Name",
    ]
    if exp.entries is None:
        lines.append("Can't grab functions' address table")
        return lines
    for e in exp.entries:
        if e.name is not None:
            label = e.name
        elif e.name_rva:
            label = f"<unreadable name @ {e.name_rva:08X}>"
        else:
            label = "<by ordinal>"
        row = f"  {e.address:08X} {e.ordinal:5d} {label}"
        if e.forwarder is not None:
            row += f" (-> {e.forwarder})"
        lines.append(row)
    lines.append("")
    return lines


def render_debug_entry(e: DebugDirectoryEntry) -> List[str]:
    lines = [
        f"Directory {e.index + 1:02d}",
        f"  Characteristics:   {e.characteristics:08X}",
        f"  TimeDateStamp:     {e.time_date_stamp:08X} {time_str(e.time_date_stamp)}",
        f"  Version            {e.major_version}.{e.minor_version:02d}",
        f"  Type:              {e.type} ({e.type_name})",
        f"  SizeOfData:        {e.size_of_data}",
        f"  AddressOfRawData:  {e.address_of_raw_data:08X}",
        f"  PointerToRawData:  {e.pointer_to_raw_data:08X}",
    ]
    if e.misc is not None:
        lines.extend(
            [
                f"    DataType:          {e.misc.data_type} ({e.misc.data_type_name})",
                f"    Length:            {e.misc.length}",
                f"    Unicode:           {'Yes' if e.misc.unicode else 'No'}",
                f"    Data:              {e.misc.data}",
            ]
        )
    elif e.payload_unreadable:
        lines.append("Can't get misc debug information")
    lines.extend(e.payload)
    lines.append("")
    return lines


def render_debug(entries: List[DebugDirectoryEntry]) -> List[str]:
    if not entries:
        return []
    lines = [f"Debug Table ({len(entries)} directories)"]
    for e in entries:
        lines.extend(render_debug_entry(e))
    lines.append("")
    return lines


def render_resources(tree: ResourceTree) -> List[str]:
    lines = ["Resources:"]
    for type_name, name, lang, leaf in tree.leaves():
        lines.append("")
        lines.append(
            f"  {type_name.label(type_level=True)} Name={name.label()} Language={lang.raw_id:04x}:"
        )
        if leaf.unreadable:
            lines.append("    Can't grab resource data")
        elif leaf.kind == "string":
            lines.extend(f'    {s.id:04x} "{s.text}"' for s in leaf.strings or [])
        elif leaf.kind == "message":
            for m in leaf.messages or []:
                quote = 'L"' if m.unicode else '"'
                lines.append(f"    {m.id:08x} {quote}{m.text}\"")
        else:
            lines.extend(hex_dump(leaf.data or b"", "    "))
    lines.extend(["", ""])
    return lines


def render_tls(tls: TlsDirectory) -> List[str]:
    callbacks = "".join(f" {c:08x}" for c in tls.callbacks)
    return [
        "Thread Local Storage",
        f"  Raw data        {tls.start_address_of_raw_data:08x}-{tls.end_address_of_raw_data:08x}"
        f" (data size {tls.data_size:x} zero fill size {tls.size_of_zero_fill:x})",
        f"  Index address   {tls.address_of_index:08x}",
        f"  Characteristics {tls.characteristics:08x}",
        f"  Callbacks       {tls.address_of_callbacks:08x} -> {{{callbacks} }}",
        "",
    ]


def render_clr(clr: ClrHeader) -> List[str]:
    lines = [
        "CLR Header",
        _dword("Header Size", clr.cb),
        _ver("Required runtime version", clr.major_runtime_version, clr.minor_runtime_version),
    ]
    lines.extend(_flags("Flags", clr.flags, clr.flag_names))
    lines.extend([_dword("EntryPointToken", clr.entry_point_token), "", "CLR Data Directory"])
    for name, d in clr.directories:
        lines.append(f"  {name:<23} rva: 0x{d.rva:<8x}  size: 0x{d.size:<8x}")
    lines.append("")
    return lines


def render_relocations(blocks: List[RelocationBlock]) -> List[str]:
    lines = ["Relocations"]
    for b in blocks:
        lines.append(f"  Page {b.page_rva:x}")
        lines.extend(f"    off {r.offset:04x} type {r.type_name}" for r in b.entries)
    lines.append("")
    return lines


def describe_unwind_op(op: UnwindOp, info: UnwindInfo) -> str:
    reg = REGISTER_NAMES[op.info]
    if op.code == UWOP_PUSH_NONVOL:
        return f"push %{reg}"
    if op.code in (UWOP_ALLOC_LARGE, UWOP_ALLOC_SMALL):
        return f"sub $0x{op.operand:x},%rsp"
    if op.code == UWOP_SET_FPREG:
        return f"lea 0x{info.frame_offset * 16:x}(%rsp),{REGISTER_NAMES[info.frame_reg]}"
    if op.code in (UWOP_SAVE_NONVOL, UWOP_SAVE_NONVOL_FAR):
        return f"mov %{reg},0x{op.operand:x}(%rsp)"
    if op.code in (UWOP_SAVE_XMM128, UWOP_SAVE_XMM128_FAR):
        return f"movaps %xmm{op.info},0x{op.operand:x}(%rsp)"
    if op.code == UWOP_PUSH_MACHFRAME:
        return f"PUSH_MACHFRAME {op.info}"
    return f"*** unknown code {op.code}"


def _render_function_range(prefix: str, f: RuntimeFunction) -> str:
    return f"{prefix}-> function {f.begin:08x}-{f.end:08x}"


def render_exceptions(table: ExceptionTable) -> List[str]:
    if not table.supported:
        return [f"Exception information not supported for {machine_name(table.machine)} binaries"]

    lines = [f"Exception info ({len(table.functions)} functions):"]
    for entry in table.functions:
        f = entry.function
        lines.extend(["", f"Function {f.begin:08x}-{f.end:08x}:"])
        if f.is_chained:
            if entry.chained_to is None:
                lines.append("  Can't grab chained function")
            else:
                lines.append(_render_function_range("  ", entry.chained_to))
            continue

        info = entry.info
        if info is None:
            lines.append(f"  Can't grab unwind info at {f.unwind_data:08x}")
            continue
        lines.append(f"  unwind info at {f.unwind_data:08x}")
        if not info.supported:
            lines.append(f"    *** unknown version {info.version}")
            continue

        lines.append(f"    flags {info.flags:x}" + "".join(f" {n}" for n in flag_names(info.flags, UNWIND_FLAG_NAMES)))
        lines.append(f"    prolog 0x{info.prolog:x} bytes")
        if info.frame_reg:
            lines.append(f"    frame register {REGISTER_NAMES[info.frame_reg]} offset 0x{info.frame_offset * 16:x}(%rsp)")
        for op in info.ops:
            lines.append(f"      0x{op.offset:02x}: {describe_unwind_op(op, info)}")
        if info.truncated:
            lines.append("    Can't grab the rest of the unwind info")
        elif info.chained is not None:
            lines.append(_render_function_range("    ", info.chained))
        elif info.handler is not None:
            lines.append(f"    handler {info.handler:08x} data at {info.handler_data_rva:08x}")
    return lines


def render_separate_debug_header(h: SeparateDebugHeader) -> List[str]:
    sig = h.signature.to_bytes(2, "little").decode("ascii", errors="replace")
    return [
        f"Signature:          {sig} (0x{h.signature:4X})",
        f"Flags:              0x{h.flags:04X}",
        f"Machine:            0x{h.machine:04X} ({machine_name(h.machine)})",
        f"Characteristics:    0x{h.characteristics:04X}",
        f"TimeDateStamp:      0x{h.time_date_stamp:08X} ({time_str(h.time_date_stamp)})",
        f"CheckSum:           0x{h.checksum:08X}",
        f"ImageBase:          0x{h.image_base:08X}",
        f"SizeOfImage:        0x{h.size_of_image:08X}",
        f"NumberOfSections:   0x{h.number_of_sections:08X}",
        f"ExportedNamesSize:  0x{h.exported_names_size:08X}",
        f"DebugDirectorySize: 0x{h.debug_directory_size:08X}",
    ]
