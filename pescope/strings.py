from __future__ import annotations

from typing import Iterable, List, Sequence

# Single-letter C escapes for control characters; "." means none.
_ESCAPES = ".......abtnvfr.............e...."


def _escape_control(c: int, nxt: int) -> str:
    if _ESCAPES[c] != ".":
        return "\\" + _ESCAPES[c]
    # Pad to three digits when the next character would extend the octal escape.
    if 0x30 <= nxt <= 0x37:
        return f"\\{c:03o}"
    return f"\\{c:o}"


def escape_ascii(raw: bytes) -> str:
    """C-style escaping of a byte string; a trailing NUL is dropped."""
    out: List[str] = []
    n = len(raw)
    for i, c in enumerate(raw):
        nxt = raw[i + 1] if i + 1 < n else -1
        if c > 127:
            out.append(f"\\x{c:02x}")
        elif c < 32:
            if c == 0 and i == n - 1:
                continue
            out.append(_escape_control(c, nxt))
        elif c == 0x5C:
            out.append("\\\\")
        else:
            out.append(chr(c))
    return "".join(out)


def escape_unicode(units: Sequence[int]) -> str:
    """C-style escaping of UTF-16 code units; a trailing NUL is dropped."""
    out: List[str] = []
    n = len(units)
    for i, c in enumerate(units):
        nxt = units[i + 1] if i + 1 < n else -1
        if c > 127:
            if 0 <= nxt < 128 and chr(nxt) in "0123456789abcdefABCDEF":
                out.append(f"\\x{c:04x}")
            else:
                out.append(f"\\x{c:x}")
        elif c < 32:
            if c == 0 and i == n - 1:
                continue
            out.append(_escape_control(c, nxt))
        elif c == 0x5C:
            out.append("\\\\")
        else:
            out.append(chr(c))
    return "".join(out)


def utf16_units(raw: bytes) -> List[int]:
    return [raw[i] | (raw[i + 1] << 8) for i in range(0, len(raw) - 1, 2)]


def _printable(c: int) -> str:
    return chr(c) if 0x20 <= c < 0x7F else "."


def hex_dump(data: bytes, prefix: str = "") -> Iterable[str]:
    """16 bytes per line: offset, hex bytes, then the printable rendering."""
    for start in range(0, len(data), 16):
        chunk = data[start : start + 16]
        hexes = " ".join(f"{b:02x}" for b in chunk)
        text = "".join(_printable(b) for b in chunk)
        yield f"{prefix}{start:08x}: {hexes:<47}  {text}"
