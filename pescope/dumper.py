from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pescope.clr import decode_clr
from pescope.config import DumpConfig
from pescope.constants import COFF_SYMBOL_SIZE, DIR_DELAY_IMPORT, DIR_IMPORT
from pescope.context import PeContext, open_pe
from pescope.dbg import decode_dbg
from pescope.debug import decode_debug_directory
from pescope.exports import decode_exports
from pescope.headers import detect_kind
from pescope.image import RawImage, err
from pescope.imports import decode_delay_imports, decode_imports
from pescope.relocs import decode_relocations
from pescope.reporters import text
from pescope.resources import decode_resources
from pescope.subdecoders import DEFAULT_SUBDECODERS, SubDecoders
from pescope.tls import decode_tls
from pescope.unwind import decode_exceptions

logger = logging.getLogger(__name__)


@dataclass
class DumpResult:
    kind: str
    lines: List[str] = field(default_factory=list)
    findings: Dict[str, Any] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)


def _as_finding(model: Any) -> Any:
    if model is None:
        return None
    if isinstance(model, list):
        return [_as_finding(m) for m in model]
    if dataclasses.is_dataclass(model):
        return dataclasses.asdict(model)
    return model


def _guarded(
    name: str, decoder: Callable[[], Tuple[Any, List[Dict[str, Any]]]], errors: List[Dict[str, Any]]
) -> Any:
    """Run one decoder; an unexpected exception becomes an error entry instead of aborting the dump."""
    try:
        model, decoder_errors = decoder()
    except Exception as e:
        logger.debug("%s decoder failed", name, exc_info=True)
        errors.append(err("E_DECODER_FAILED", f"{name} decoder failed: {type(e).__name__}: {e}", decoder=name))
        return None
    errors.extend(decoder_errors)
    return model


def _directory_size(ctx: PeContext, index: int) -> int:
    entry = ctx.directory_entry(index)
    return entry[1] if entry else 0


def _coff_symbols(ctx: PeContext, subdecoders: SubDecoders) -> Tuple[Optional[List[str]], List[Dict[str, Any]]]:
    fh = ctx.header.file_header
    if not fh.pointer_to_symbol_table or not fh.number_of_symbols:
        return None, []
    return (
        subdecoders.coff(ctx.image, fh.pointer_to_symbol_table, fh.number_of_symbols * COFF_SYMBOL_SIZE, ctx.sections),
        [],
    )


def _stabs(ctx: PeContext, subdecoders: SubDecoders) -> Tuple[Optional[List[str]], List[Dict[str, Any]]]:
    stabs = stabstr = None
    for s in ctx.sections:
        if s.name == ".stab":
            stabs = (ctx.resolve_offset(s.virtual_address, s.virtual_size), s.virtual_size)
        if s.name.startswith(".stabstr"):
            stabstr = (ctx.resolve_offset(s.virtual_address, s.virtual_size), s.virtual_size)
    if not stabs or not stabstr or stabs[0] is None or stabstr[0] is None:
        return None, []
    return subdecoders.stabs(ctx.image, stabs[0], stabs[1], stabstr[0], stabstr[1]), []


def dump_pe(image: RawImage, cfg: DumpConfig, *, subdecoders: SubDecoders = DEFAULT_SUBDECODERS) -> DumpResult:
    result = DumpResult(kind="PE")
    lines, findings, errors = result.lines, result.findings, result.errors

    ctx, open_errors = open_pe(image, limits=cfg.limits, placeholder_signature=cfg.placeholder_signature_bytes)
    errors.extend(open_errors)
    if ctx is None:
        lines.extend(f"Can't grab PE headers: {e['message']}" for e in open_errors)
        return result

    findings["placeholder"] = ctx.placeholder
    findings["header"] = {
        "e_lfanew": ctx.header.e_lfanew,
        "file_header": _as_finding(ctx.header.file_header),
        "optional": _as_finding(ctx.header.optional),
    }
    findings["sections"] = _as_finding(ctx.sections)

    if ctx.placeholder:
        lines.extend([text.PLACEHOLDER_BANNER, ""])

    if cfg.dump_header or not cfg.sections:
        lines.extend(text.render_file_header(ctx.header.file_header, ctx.header.e_lfanew))
        lines.extend(text.render_optional_header(ctx.header.optional))
    if cfg.dump_header:
        lines.extend(text.render_sections(ctx.sections, image, cfg.dump_rawdata))

    if cfg.wants("import"):
        imports = _guarded("import", lambda: decode_imports(ctx), errors)
        if imports is not None:
            lines.extend(text.render_imports(imports, _directory_size(ctx, DIR_IMPORT)))
        delay = _guarded("delay import", lambda: decode_delay_imports(ctx), errors)
        if delay is not None:
            lines.extend(text.render_delay_imports(delay, _directory_size(ctx, DIR_DELAY_IMPORT)))
        findings["imports"] = _as_finding(imports)
        findings["delay_imports"] = _as_finding(delay)

    if cfg.wants("export"):
        exports = _guarded("export", lambda: decode_exports(ctx), errors)
        if exports is not None:
            lines.extend(text.render_exports(exports))
        findings["exports"] = _as_finding(exports)

    if cfg.wants("debug"):
        debug = _guarded("debug", lambda: decode_debug_directory(ctx, subdecoders=subdecoders), errors)
        if debug is not None:
            lines.extend(text.render_debug(debug))
        findings["debug"] = _as_finding(debug)

    if cfg.wants("resource"):
        resources = _guarded("resource", lambda: decode_resources(ctx), errors)
        if resources is not None:
            lines.extend(text.render_resources(resources))
        findings["resources"] = _as_finding(resources)

    if cfg.wants("tls"):
        tls = _guarded("tls", lambda: decode_tls(ctx), errors)
        if tls is not None:
            lines.extend(text.render_tls(tls))
        findings["tls"] = _as_finding(tls)

    if cfg.wants("clr"):
        clr = _guarded("clr", lambda: decode_clr(ctx), errors)
        if clr is not None:
            lines.extend(text.render_clr(clr))
        findings["clr"] = _as_finding(clr)

    if cfg.wants("reloc"):
        relocs = _guarded("reloc", lambda: decode_relocations(ctx), errors)
        if relocs is not None:
            lines.extend(text.render_relocations(relocs))
        findings["relocations"] = _as_finding(relocs)

    if cfg.wants("except"):
        exceptions = _guarded("except", lambda: decode_exceptions(ctx), errors)
        if exceptions is not None:
            lines.extend(text.render_exceptions(exceptions))
        findings["exceptions"] = _as_finding(exceptions)

    if cfg.symbol_table:
        coff = _guarded("coff symbols", lambda: _coff_symbols(ctx, subdecoders), errors)
        if coff is not None:
            lines.extend(coff)
        findings["coff_symbols"] = coff

    if cfg.debug_stabs:
        stabs = _guarded("stabs", lambda: _stabs(ctx, subdecoders), errors)
        if stabs is not None:
            lines.extend(stabs)
        findings["stabs"] = stabs

    return result


def dump_separate_debug(
    image: RawImage, cfg: DumpConfig, *, subdecoders: SubDecoders = DEFAULT_SUBDECODERS
) -> DumpResult:
    result = DumpResult(kind="DBG")
    dbg = _guarded("dbg", lambda: decode_dbg(image, limits=cfg.limits, subdecoders=subdecoders), result.errors)
    if dbg is None:
        result.lines.extend(e["message"] for e in result.errors)
        return result

    result.lines.extend(text.render_separate_debug_header(dbg.header))
    if dbg.sections is not None:
        result.lines.extend(text.render_sections(dbg.sections, image, cfg.dump_rawdata))
    if dbg.debug_entries is not None:
        result.lines.append(f"Debug Table ({len(dbg.debug_entries)} directories)")
        for entry in dbg.debug_entries:
            result.lines.extend(text.render_debug_entry(entry))
    else:
        result.lines.extend(e["message"] for e in result.errors if e["code"].startswith("E_DBG_"))
    result.findings["dbg"] = _as_finding(dbg)
    return result


def dump_image(image: RawImage, cfg: DumpConfig, *, subdecoders: SubDecoders = DEFAULT_SUBDECODERS) -> DumpResult:
    kind = detect_kind(image)
    logger.debug("file kind %s, %d bytes", kind, len(image))
    if kind == "PE":
        result = dump_pe(image, cfg, subdecoders=subdecoders)
    elif kind == "DBG":
        result = dump_separate_debug(image, cfg, subdecoders=subdecoders)
    else:
        result = DumpResult(kind=kind)
        result.errors.append(err("E_UNSUPPORTED_KIND", f"Unsupported file kind: {kind}", kind=kind))
        result.lines.append(f"Unsupported file kind: {kind}")
    result.findings["kind"] = result.kind
    return result
