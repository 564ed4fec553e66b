from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel

DIRECTORY_SELECTORS = ("import", "export", "debug", "resource", "tls", "clr", "reloc", "except")


class Limits(BaseModel):
    max_file_size_bytes: int = 200_000_000

    max_sections: int = 1024

    max_import_modules: int = 4096
    max_thunks_per_module: int = 65536
    max_resource_entries: int = 65536
    max_tls_callbacks: int = 4096
    max_message_entries: int = 65536


class DumpConfig(BaseModel):
    schema_version: str = "1.0"

    # Directory selectors; "ALL" selects every one of DIRECTORY_SELECTORS.
    sections: List[str] = []
    dump_header: bool = False
    dump_rawdata: bool = False
    symbol_table: bool = False
    debug_stabs: bool = False

    # Module tag used to name ordinal-only exports; defaults to the file stem.
    forward_dll: Optional[str] = None
    placeholder_signature: str = "Wine placeholder DLL"

    limits: Limits = Limits()

    def wants(self, selector: str) -> bool:
        return "ALL" in self.sections or selector in self.sections

    @property
    def placeholder_signature_bytes(self) -> bytes:
        return self.placeholder_signature.encode("ascii") + b"\x00"


def load_config(path: Optional[str]) -> DumpConfig:
    if not path:
        return DumpConfig()
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return DumpConfig.model_validate(data)


def config_to_snapshot(cfg: DumpConfig) -> Dict[str, Any]:
    return cfg.model_dump()
