from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable

from pescope.symbols import ExportSymbol


def write_symbols_csv(path: Path, module: str, symbols: Iterable[ExportSymbol]) -> int:
    """One row per export symbol, in cursor order. Returns the row count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=["module", "ordinal", "name"])
        writer.writeheader()
        for sym in symbols:
            writer.writerow({"module": module, "ordinal": sym.ordinal, "name": sym.name})
            count += 1
    return count
