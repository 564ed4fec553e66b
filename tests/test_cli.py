from __future__ import annotations

import csv
import json
from pathlib import Path

from pe_builder import SectionSpec, build_pe, dos_header, export_table
from typer.testing import CliRunner

from pescope.cli import app


def _write_dll(tmp_path: Path, name: str = "demo.dll") -> Path:
    rdata = export_table(0x2000, b"demo.dll", 1, [0x1000, 0x1010, 0x1020], [(b"Alpha", 0), (b"Gamma", 2)])
    built = build_pe(
        [SectionSpec(b".text", 0x1000, b"\xc3" * 0x30), SectionSpec(b".rdata", 0x2000, bytes(rdata))],
        directories={0: (0x2000, 0x28)},
    )
    p = tmp_path / name
    p.write_bytes(built.data)
    return p


def test_cli_dump_header(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    result = runner.invoke(app, ["dump", str(p), "--header"])
    assert result.exit_code == 0, result.stdout
    assert f"Contents of {p.resolve()}: {p.stat().st_size} bytes" in result.stdout
    assert "File Header" in result.stdout
    assert "Section Table" in result.stdout
    assert "Exports table:" not in result.stdout


def test_cli_dump_export_writes_json_bundle(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    out = tmp_path / "out" / "bundle.json"
    result = runner.invoke(app, ["dump", str(p), "-j", "export", "--json", str(out)])
    assert result.exit_code == 0, result.stdout
    assert "Exports table:" in result.stdout

    bundle = json.loads(out.read_text(encoding="utf-8"))
    assert bundle["tool"]["name"] == "pescope"
    assert bundle["input"]["file_kind"] == "PE"
    assert len(bundle["input"]["sha256"]) == 64
    assert bundle["config_snapshot"]["sections"] == ["export"]
    assert bundle["findings"]["exports"]["dll_name"] == "demo.dll"
    assert bundle["errors"] == []


def test_cli_dump_rejects_unknown_selector(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    result = runner.invoke(app, ["dump", str(p), "-j", "bogus"])
    assert result.exit_code != 0


def test_cli_dump_unsupported_kind_exits_1(tmp_path: Path):
    runner = CliRunner()
    p = tmp_path / "old.exe"
    p.write_bytes(dos_header() + b"NE" + b"\x00" * 62)
    result = runner.invoke(app, ["dump", str(p)])
    assert result.exit_code == 1
    assert "Unsupported file kind: NE" in result.stdout


def test_cli_exports_lists_symbols(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    result = runner.invoke(app, ["exports", str(p)])
    assert result.exit_code == 0, result.stdout
    lines = result.stdout.splitlines()
    assert lines[0] == "2 named symbols in DLL, 3 total, 3 unique (ordinal base = 1)"
    assert lines[1:] == ["    1 Alpha", "    2 DEMO_2", "    3 Gamma"]


def test_cli_exports_module_tag_and_csv(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    out = tmp_path / "symbols.csv"
    result = runner.invoke(app, ["exports", str(p), "--module-tag", "shim", "--csv", str(out)])
    assert result.exit_code == 0, result.stdout
    assert "3 symbols written" in result.stdout

    with out.open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [(r["module"], r["ordinal"], r["name"]) for r in rows] == [
        ("shim", "1", "Alpha"),
        ("shim", "2", "SHIM_2"),
        ("shim", "3", "Gamma"),
    ]


def test_cli_exports_non_pe_exits_1(tmp_path: Path):
    runner = CliRunner()
    p = tmp_path / "notes.txt"
    p.write_text("hello", encoding="utf-8")
    result = runner.invoke(app, ["exports", str(p)])
    assert result.exit_code == 1


def test_cli_info_table(tmp_path: Path):
    runner = CliRunner()
    p = _write_dll(tmp_path)
    result = runner.invoke(app, ["info", str(p)])
    assert result.exit_code == 0, result.stdout
    assert "pescope - Image Summary" in result.stdout
    assert "i386" in result.stdout
    assert ".rdata" in result.stdout


def test_cli_version():
    runner = CliRunner()
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("pescope version:")


def test_cli_missing_file(tmp_path: Path):
    runner = CliRunner()
    result = runner.invoke(app, ["dump", str(tmp_path / "absent.dll")])
    assert result.exit_code != 0
