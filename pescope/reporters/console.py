from __future__ import annotations
from rich.console import Console
from rich.table import Table
from typing import Dict, Any, Optional

from pescope.constants import machine_name, magic_name

console = Console()


def render_info(evidence: Dict[str, Any], findings: Dict[str, Any], console_: Optional[Console] = None) -> None:
    out = console_ or console
    t = Table(title="pescope - Image Summary")
    t.add_column("Field")
    t.add_column("Value", overflow="fold")
    t.add_row("input", str(evidence.get("input_path", "")))
    t.add_row("kind", str(evidence.get("file_kind", "")))
    t.add_row("size", str(evidence.get("file_size", "")))
    t.add_row("sha256", str(evidence.get("sha256", "")))
    t.add_row("md5", str(evidence.get("md5", "")))

    header = findings.get("header") or {}
    fh = header.get("file_header") or {}
    opt = header.get("optional") or {}
    if fh:
        t.add_row("machine", f"{fh.get('machine', 0):04X} ({machine_name(fh.get('machine', 0))})")
        t.add_row("sections", str(fh.get("number_of_sections", "")))
    if opt:
        t.add_row("optional header", magic_name(opt.get("magic")))
        t.add_row("entrypoint RVA", f"0x{opt.get('address_of_entry_point', 0):08x}")
        t.add_row("image base", f"0x{opt.get('image_base', 0):x}")
    if findings.get("placeholder"):
        t.add_row("placeholder", "yes")
    sections = findings.get("sections") or []
    if sections:
        t.add_row("section names", ", ".join(s.get("long_name") or s.get("name", "") for s in sections))
    out.print(t)
