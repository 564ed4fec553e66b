from __future__ import annotations

from typing import List, Optional, Tuple

IMAGE_DOS_SIGNATURE = b"MZ"
IMAGE_NT_SIGNATURE = b"PE\x00\x00"
IMAGE_OS2_SIGNATURE = b"NE"
IMAGE_VXD_SIGNATURE = b"LE"
IMAGE_SEPARATE_DEBUG_SIGNATURE = b"DI"

DOS_HEADER_SIZE = 64
FILE_HEADER_SIZE = 20
SECTION_HEADER_SIZE = 40
COFF_SYMBOL_SIZE = 18

PE32_MAGIC = 0x10B
PE32P_MAGIC = 0x20B
ROM_MAGIC = 0x107

# Data directory indices
DIR_EXPORT = 0
DIR_IMPORT = 1
DIR_RESOURCE = 2
DIR_EXCEPTION = 3
DIR_SECURITY = 4
DIR_BASERELOC = 5
DIR_DEBUG = 6
DIR_ARCHITECTURE = 7
DIR_GLOBALPTR = 8
DIR_TLS = 9
DIR_LOAD_CONFIG = 10
DIR_BOUND_IMPORT = 11
DIR_IAT = 12
DIR_DELAY_IMPORT = 13
DIR_CLR = 14

MAX_DATA_DIRECTORIES = 16

DIRECTORY_NAMES = (
    "EXPORT", "IMPORT", "RESOURCE", "EXCEPTION",
    "SECURITY", "BASERELOC", "DEBUG", "ARCHITECTURE",
    "GLOBALPTR", "TLS", "LOAD_CONFIG", "Bound IAT",
    "IAT", "Delay IAT", "CLR Header", "",
)

IMAGE_FILE_MACHINE_UNKNOWN = 0x0
IMAGE_FILE_MACHINE_I386 = 0x14C
IMAGE_FILE_MACHINE_AMD64 = 0x8664

MACHINE_NAMES = {
    0x0: "Unknown",
    0x14D: "i860",
    0x14C: "i386",
    0x162: "R3000",
    0x166: "R4000",
    0x168: "R10000",
    0x184: "Alpha",
    0x1F0: "PowerPC",
    0x8664: "AMD64",
    0x200: "IA64",
    0x1C0: "ARM",
    0x1C4: "ARMNT",
    0xAA64: "ARM64",
}

IMAGE_FILE_DLL = 0x2000

FILE_CHARACTERISTICS = (
    (0x0001, "RELOCS_STRIPPED"),
    (0x0002, "EXECUTABLE_IMAGE"),
    (0x0004, "LINE_NUMS_STRIPPED"),
    (0x0008, "LOCAL_SYMS_STRIPPED"),
    (0x0010, "AGGRESIVE_WS_TRIM"),
    (0x0020, "LARGE_ADDRESS_AWARE"),
    (0x0040, "16BIT_MACHINE"),
    (0x0080, "BYTES_REVERSED_LO"),
    (0x0100, "32BIT_MACHINE"),
    (0x0200, "DEBUG_STRIPPED"),
    (0x0400, "REMOVABLE_RUN_FROM_SWAP"),
    (0x0800, "NET_RUN_FROM_SWAP"),
    (0x1000, "SYSTEM"),
    (0x2000, "DLL"),
    (0x4000, "UP_SYSTEM_ONLY"),
    (0x8000, "BYTES_REVERSED_HI"),
)

DLL_CHARACTERISTICS = (
    (0x0020, "HIGH_ENTROPY_VA"),
    (0x0040, "DYNAMIC_BASE"),
    (0x0080, "FORCE_INTEGRITY"),
    (0x0100, "NX_COMPAT"),
    (0x0200, "NO_ISOLATION"),
    (0x0400, "NO_SEH"),
    (0x0800, "NO_BIND"),
    (0x1000, "APPCONTAINER"),
    (0x2000, "WDM_DRIVER"),
    (0x4000, "GUARD_CF"),
    (0x8000, "TERMINAL_SERVER_AWARE"),
)

SUBSYSTEM_NAMES = {
    0: "Unknown",
    1: "Native",
    2: "Windows GUI",
    3: "Windows CUI",
    5: "OS/2 CUI",
    7: "Posix CUI",
    9: "Windows CE GUI",
    10: "EFI Application",
    11: "EFI Boot Service Driver",
    12: "EFI Runtime Driver",
    13: "EFI ROM",
    14: "Xbox",
    16: "Windows Boot Application",
}

# Section characteristics, in report order. Alignment is a 4-bit field, not a flag.
SECTION_FLAGS_LOW = (
    (0x00000020, "CODE"),
    (0x00000040, "INITIALIZED_DATA"),
    (0x00000080, "UNINITIALIZED_DATA"),
    (0x00000100, "LNK_OTHER"),
    (0x00000200, "LNK_INFO"),
    (0x00000800, "LNK_REMOVE"),
    (0x00001000, "LNK_COMDAT"),
    (0x00008000, "MEM_FARDATA"),
    (0x00020000, "MEM_PURGEABLE"),
    (0x00020000, "MEM_16BIT"),
    (0x00040000, "MEM_LOCKED"),
    (0x00080000, "MEM_PRELOAD"),
)

SECTION_FLAGS_HIGH = (
    (0x01000000, "LNK_NRELOC_OVFL"),
    (0x02000000, "MEM_DISCARDABLE"),
    (0x04000000, "MEM_NOT_CACHED"),
    (0x08000000, "MEM_NOT_PAGED"),
    (0x10000000, "MEM_SHARED"),
    (0x20000000, "MEM_EXECUTE"),
    (0x40000000, "MEM_READ"),
    (0x80000000, "MEM_WRITE"),
)

IMAGE_SCN_ALIGN_MASK = 0x00F00000


def section_alignment_name(characteristics: int) -> Optional[str]:
    align = (characteristics & IMAGE_SCN_ALIGN_MASK) >> 20
    if 1 <= align <= 14:
        return f"ALIGN_{1 << (align - 1)}BYTES"
    return None


def flag_names(value: int, table: Tuple[Tuple[int, str], ...]) -> List[str]:
    return [name for bit, name in table if value & bit]


def machine_name(machine: int) -> str:
    return MACHINE_NAMES.get(machine, "???")


def magic_name(magic: Optional[int]) -> str:
    if magic == PE32_MAGIC:
        return "32bit"
    if magic == PE32P_MAGIC:
        return "64bit"
    if magic == ROM_MAGIC:
        return "ROM"
    return "???"
