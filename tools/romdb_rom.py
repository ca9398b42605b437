"""
N64 ROM header helpers used to look a cartridge image up in the database.
"""

from __future__ import annotations

import struct
from typing import Tuple


def be32(b: bytes, off: int) -> int:
    return struct.unpack_from(">I", b, off)[0]


def detect_rom_order(raw: bytes) -> str:
    if len(raw) < 4:
        return "unknown"
    b0, b1, b2, b3 = raw[0], raw[1], raw[2], raw[3]
    if (b0, b1, b2, b3) == (0x80, 0x37, 0x12, 0x40):
        return "z64"
    if (b0, b1, b2, b3) == (0x37, 0x80, 0x40, 0x12):
        return "v64"
    if (b0, b1, b2, b3) == (0x40, 0x12, 0x37, 0x80):
        return "n64"
    return "unknown"


def normalize_rom_be(raw: bytes) -> Tuple[bytes, str]:
    order = detect_rom_order(raw)
    if order == "v64":
        out = bytearray(raw)
        for i in range(0, len(out) - 1, 2):
            out[i], out[i + 1] = out[i + 1], out[i]
        return bytes(out), order
    if order == "n64":
        out = bytearray(raw)
        for i in range(0, len(out) - 3, 4):
            out[i + 0], out[i + 1], out[i + 2], out[i + 3] = (
                out[i + 3],
                out[i + 2],
                out[i + 1],
                out[i + 0],
            )
        return bytes(out), order
    return raw, order


def rom_checksum(rom_be: bytes) -> int:
    """Database key: header CRC1 in the high word, CRC2 in the low word."""
    if len(rom_be) < 0x18:
        raise ValueError("ROM is too small to hold a header CRC")
    return (be32(rom_be, 0x10) << 32) | be32(rom_be, 0x14)


def rom_name(rom_be: bytes) -> str:
    if len(rom_be) < 0x34:
        return ""
    return rom_be[0x20:0x34].decode("ascii", errors="ignore").rstrip(" \x00")

