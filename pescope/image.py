from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


def err(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    d = {"code": code, "message": message}
    d.update(extra)
    return d


def u16(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 2 > len(data):
        return None
    return struct.unpack_from("<H", data, off)[0]


def u32(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 4 > len(data):
        return None
    return struct.unpack_from("<I", data, off)[0]


def u64(data: bytes, off: int) -> Optional[int]:
    if off < 0 or off + 8 > len(data):
        return None
    return struct.unpack_from("<Q", data, off)[0]


def c_string(data: bytes, off: int, *, max_len: int = 512) -> Optional[str]:
    if off < 0 or off >= len(data):
        return None
    end = min(len(data), off + max_len)
    chunk = data[off:end]
    nul = chunk.find(b"\x00")
    if nul == -1:
        return None
    return chunk[:nul].decode("ascii", errors="replace")


def utf16_string(data: bytes, off: int, *, max_chars: int = 512) -> Optional[str]:
    """
    Read a NUL-terminated UTF-16LE string starting at off.
    Returns None when no terminator is found within max_chars.
    """
    if off < 0 or off >= len(data):
        return None
    end = min(len(data), off + max_chars * 2)
    i = off
    while i + 1 < end:
        if data[i] == 0 and data[i + 1] == 0:
            return data[off:i].decode("utf-16le", errors="replace")
        i += 2
    return None


@dataclass(frozen=True)
class RawImage:
    """Read-only view over one file image. Reads never raise for bad ranges."""

    data: bytes

    def __len__(self) -> int:
        return len(self.data)

    def read(self, offset: int, length: int) -> Optional[bytes]:
        if offset < 0 or length < 0 or offset + length > len(self.data):
            return None
        return self.data[offset : offset + length]

    def u16(self, offset: int) -> Optional[int]:
        return u16(self.data, offset)

    def u32(self, offset: int) -> Optional[int]:
        return u32(self.data, offset)


def file_hashes(path: Path) -> Tuple[str, str]:
    sha256 = hashlib.sha256()
    md5 = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            sha256.update(chunk)
            md5.update(chunk)
    return sha256.hexdigest(), md5.hexdigest()


def load_image(path: Path, *, max_bytes: int) -> Tuple[RawImage, bool]:
    """Returns (image, truncated)."""
    with path.open("rb") as f:
        data = f.read(max_bytes + 1)
    if len(data) > max_bytes:
        return RawImage(data[:max_bytes]), True
    return RawImage(data), False
