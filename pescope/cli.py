from __future__ import annotations

from importlib import metadata
from pathlib import Path
from typing import List, Optional, Tuple

import typer

from pescope.bundler import write_json
from pescope.config import DIRECTORY_SELECTORS, DumpConfig, config_to_snapshot, load_config
from pescope.dumper import DumpResult, dump_image
from pescope.image import RawImage, file_hashes, load_image
from pescope.log import setup_logging
from pescope.model import DumpBundle, InputEvidence
from pescope.reporters.console import render_info
from pescope.reporters.csv_report import write_symbols_csv
from pescope.symbols import FatalDumpError, open_export_symbols

app = typer.Typer(add_completion=False)


def version_callback(value: bool):
    if value:
        typer.echo(f"pescope version: {_tool_version()}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", callback=version_callback, is_eager=True, help="Show version and exit."
    ),
):
    """
    Static PE/COFF dumper: headers, sections and data directories of executables, DLLs and .dbg files.
    """
    pass


def _read_input(path: str, cfg: DumpConfig) -> Tuple[Path, RawImage, InputEvidence]:
    p = Path(path).expanduser().resolve()
    if not p.exists() or not p.is_file():
        raise typer.BadParameter(f"Path does not exist or is not a file: {p}")

    image, truncated = load_image(p, max_bytes=cfg.limits.max_file_size_bytes)
    if truncated:
        typer.secho(
            f"Warning: {p.name} exceeds max_file_size_bytes; only the first {len(image)} bytes are dumped.",
            fg=typer.colors.YELLOW,
            err=True,
        )
    sha256, md5 = file_hashes(p)
    evidence = InputEvidence(
        input_path=str(p),
        file_size=p.stat().st_size,
        sha256=sha256,
        md5=md5,
        truncated=truncated,
    )
    return p, image, evidence


def _bundle(evidence: InputEvidence, cfg: DumpConfig, result: DumpResult) -> DumpBundle:
    return DumpBundle(
        schema_version=cfg.schema_version,
        tool={"name": "pescope", "version": _tool_version()},
        input=evidence.model_copy(update={"file_kind": result.kind}),
        config_snapshot=config_to_snapshot(cfg),
        findings=result.findings,
        errors=result.errors,
    )


def _tool_version() -> str:
    try:
        return metadata.version("pescope")
    except metadata.PackageNotFoundError:
        return "0.1.0-dev"


@app.command()
def dump(
    path: str = typer.Argument(..., help="PE image or .dbg file."),
    section: Optional[List[str]] = typer.Option(
        None, "--section", "-j", help="Directory to dump (import, export, debug, resource, tls, clr, reloc, except, ALL)."
    ),
    header: bool = typer.Option(False, "--header", help="Dump file/optional headers and the section table."),
    rawdata: bool = typer.Option(False, "--rawdata", help="Hex dump each section's raw bytes (with --header)."),
    symbols: bool = typer.Option(False, "--symbols", help="Dump the COFF symbol table."),
    stabs: bool = typer.Option(False, "--stabs", help="Dump STABS debug information."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
    json_out: str = typer.Option(None, "--json", help="Also write a JSON bundle to this path."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging to stderr."),
):
    setup_logging(verbose)
    cfg = load_config(config)

    for s in section or []:
        if s != "ALL" and s not in DIRECTORY_SELECTORS:
            raise typer.BadParameter(f"Unknown section selector: {s}")
    if section:
        cfg.sections = list(section)
    cfg.dump_header = cfg.dump_header or header
    cfg.dump_rawdata = cfg.dump_rawdata or rawdata
    cfg.symbol_table = cfg.symbol_table or symbols
    cfg.debug_stabs = cfg.debug_stabs or stabs

    p, image, evidence = _read_input(path, cfg)
    result = dump_image(image, cfg)

    typer.echo(f"Contents of {p}: {len(image)} bytes")
    typer.echo("")
    for line in result.lines:
        typer.echo(line)

    if json_out:
        write_json(Path(json_out), _bundle(evidence, cfg, result).model_dump())
        typer.echo(f"JSON written: {json_out}", err=True)

    if result.kind not in ("PE", "DBG"):
        raise typer.Exit(code=1)


@app.command()
def exports(
    path: str = typer.Argument(..., help="PE image (DLL)."),
    module_tag: str = typer.Option(None, "--module-tag", help="Prefix for ordinal-only export names."),
    csv_out: str = typer.Option(None, "--csv", help="Write symbols to this CSV file."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    List exported symbols sorted by ordinal, naming ordinal-only exports after the module.
    """
    cfg = load_config(config)
    p, image, _ = _read_input(path, cfg)
    tag = module_tag or cfg.forward_dll or p.stem.upper()

    try:
        cursor, errors = open_export_symbols(
            image, tag, limits=cfg.limits, placeholder_signature=cfg.placeholder_signature_bytes
        )
    except FatalDumpError as e:
        typer.secho(f"Fatal: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)

    if cursor is None:
        for e in errors:
            typer.secho(e["message"], fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    typer.echo(cursor.summary)
    if csv_out:
        n = write_symbols_csv(Path(csv_out), tag, cursor)
        typer.echo(f"{n} symbols written: {csv_out}")
        return
    for sym in cursor:
        typer.echo(f"{sym.ordinal:5d} {sym.name}")


@app.command()
def info(
    path: str = typer.Argument(..., help="PE image or .dbg file."),
    config: str = typer.Option(None, "--config", help="Path to YAML config."),
):
    """
    Summary table: hashes, file kind, machine, optional header and sections.
    """
    cfg = load_config(config)
    _, image, evidence = _read_input(path, cfg)
    result = dump_image(image, cfg)
    evidence = evidence.model_copy(update={"file_kind": result.kind})
    render_info(evidence.model_dump(), result.findings)


if __name__ == "__main__":
    app()
