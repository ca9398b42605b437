"""
Output writers for the compiled ROM database.

- .bin: checksum array + packed record array + patch strings (see TABLE_HEADER)
- .h: C header with the same information, for embedding in a core
- .ini: filtered catalog text that compiles back to the same table
"""

from __future__ import annotations

import dataclasses
import os
import pathlib
import struct
from typing import List, Optional, Sequence, Tuple

import numpy as np

from romdb_ini import PatchTable
from romdb_model import (
    SAVE_TYPE_LITERALS,
    Config,
    DirectConfig,
    ReferenceConfig,
    RomRecord,
    SaveType,
    TableFormatError,
    format_crc,
    pack_config,
    unpack_config,
)


TABLE_MAGIC = b"N64D"
TABLE_VERSION = 1
# magic, version, patch slots (incl. empty slot 0), record count, patch blob size
TABLE_HEADER = struct.Struct("<4sHHII")

CRC_DTYPE = np.dtype("<u8")
CONF_DTYPE = np.dtype("<u4")


def build_arrays(records: Sequence[RomRecord]) -> Tuple[np.ndarray, np.ndarray]:
    crcs = np.array([r.checksum for r in records], dtype=CRC_DTYPE)
    words = np.array([pack_config(r.conf) for r in records], dtype=CONF_DTYPE)
    if crcs.size > 1 and not bool(np.all(crcs[1:] > crcs[:-1])):
        raise ValueError("records are not strictly ordered by checksum")
    return crcs, words


def _patch_blob(payloads: Sequence[str]) -> bytes:
    out = bytearray()
    for text in payloads[1:]:
        raw = text.encode("utf-8")
        if len(raw) > 0xFFFF:
            raise ValueError(f"patch payload too long ({len(raw)} bytes)")
        out += struct.pack("<H", len(raw))
        out += raw
    return bytes(out)


def encode_table(records: Sequence[RomRecord], patches: PatchTable) -> bytes:
    crcs, words = build_arrays(records)
    blob = _patch_blob(patches.payloads)
    header = TABLE_HEADER.pack(TABLE_MAGIC, TABLE_VERSION, len(patches.payloads), len(records), len(blob))
    return header + crcs.tobytes() + words.tobytes() + blob


@dataclasses.dataclass
class Table:
    checksums: np.ndarray
    words: np.ndarray
    patches: List[str]

    def __len__(self) -> int:
        return int(self.checksums.size)

    def find(self, checksum: int) -> Optional[int]:
        i = int(np.searchsorted(self.checksums, np.uint64(checksum)))
        if i < len(self) and int(self.checksums[i]) == checksum:
            return i
        return None

    def config(self, index: int) -> Config:
        return unpack_config(int(self.words[index]))

    def resolve(self, index: int) -> Tuple[int, DirectConfig]:
        """Follow one reference hop and return (position, direct config)."""
        conf = self.config(index)
        if isinstance(conf, ReferenceConfig):
            target = conf.index if conf.index is not None else -1
            if not 0 <= target < len(self):
                raise TableFormatError(f"entry {index} refers to {target}, outside 0..{len(self) - 1}")
            conf = self.config(target)
            index = target
        if not isinstance(conf, DirectConfig):
            raise TableFormatError(f"entry {index} is a reference to another reference")
        return index, conf


def decode_table(data: bytes) -> Table:
    if len(data) < TABLE_HEADER.size:
        raise TableFormatError("file too small for table header")
    magic, version, slots, count, blob_size = TABLE_HEADER.unpack_from(data, 0)
    if magic != TABLE_MAGIC:
        raise TableFormatError(f"bad magic {magic!r}")
    if version != TABLE_VERSION:
        raise TableFormatError(f"unsupported table version {version}")
    off = TABLE_HEADER.size
    end = off + count * (CRC_DTYPE.itemsize + CONF_DTYPE.itemsize) + blob_size
    if len(data) != end:
        raise TableFormatError(f"size mismatch: expected {end} bytes, got {len(data)}")

    crcs = np.frombuffer(data, dtype=CRC_DTYPE, count=count, offset=off)
    off += count * CRC_DTYPE.itemsize
    words = np.frombuffer(data, dtype=CONF_DTYPE, count=count, offset=off)
    off += count * CONF_DTYPE.itemsize

    patches = [""]
    for _ in range(max(0, slots - 1)):
        if off + 2 > end:
            raise TableFormatError("patch table out of range")
        (n,) = struct.unpack_from("<H", data, off)
        off += 2
        if off + n > end:
            raise TableFormatError("patch payload out of range")
        patches.append(data[off : off + n].decode("utf-8"))
        off += n

    table = Table(checksums=crcs, words=words, patches=patches)
    for i in range(len(table)):
        try:
            conf = table.config(i)
        except ValueError as e:
            raise TableFormatError(f"entry {i}: {e}") from None
        if isinstance(conf, DirectConfig) and conf.cheat >= len(patches):
            raise TableFormatError(f"entry {i} uses missing patch {conf.cheat}")
    return table


def _direct_lines(conf: DirectConfig, patches: PatchTable) -> List[str]:
    default = DirectConfig()
    lines: List[str] = []
    if conf.save_type != default.save_type:
        lines.append(f"SaveType={SAVE_TYPE_LITERALS[conf.save_type]}")
    if conf.status != default.status:
        lines.append(f"Status={conf.status}")
    if conf.players != default.players:
        lines.append(f"Players={conf.players}")
    if conf.rumble != default.rumble:
        lines.append(f"Rumble={'Y' if conf.rumble else 'N'}")
    if conf.count_per_op != default.count_per_op:
        lines.append(f"CountPerOp={conf.count_per_op}")
    if conf.disable_extra_mem:
        lines.append("DisableExtraMem=1")
    if conf.transferpak:
        lines.append("Transferpak=Y")
    if conf.mempak != default.mempak:
        lines.append(f"Mempak={'Y' if conf.mempak else 'N'}")
    if conf.biopak:
        lines.append("Biopak=Y")
    if conf.si_dma_duration:
        lines.append("SiDmaDuration=1")
    if conf.ai_dma_modifier:
        lines.append("AiDmaModifier=88")
    if conf.cheat:
        lines.append(f"Cheat0={patches[conf.cheat]}")
    return lines


def render_ini(records: Sequence[RomRecord], patches: PatchTable, minimal: bool = False) -> str:
    out: List[str] = []
    for rec in records:
        out.append(f"[{rec.key_hash}]")
        out.append(f"GoodName={rec.good_name}")
        out.append(f"CRC={format_crc(rec.checksum or 0)}")
        conf = rec.conf
        if isinstance(conf, ReferenceConfig):
            # Point at the surviving target so the text compiles back to the same table.
            ref = records[conf.index].key_hash if conf.index is not None else conf.target_key_hash
            out.append(f"RefMD5={ref}")
        elif not minimal:
            out.extend(_direct_lines(conf, patches))
        out.append("")
    return "\n".join(out) + ("\n" if out else "")


def _c_string(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def _c_comment(text: str) -> str:
    return text.replace("*/", "* /")


def render_header(records: Sequence[RomRecord], patches: PatchTable, generated_at: str = "") -> str:
    out: List[str] = []
    stamp = f" at {generated_at}" if generated_at else ""
    out.append(f"/* Generated{stamp} using mupen_romdb */")
    out.append("")
    out.append("#pragma once")
    out.append("#include <stdint.h>")
    out.append("")
    out.append("enum save_types_e")
    out.append("{")
    names = [f"\tSAVE_{st.name}" for st in SaveType]
    names[0] += " = 0"
    out.append(",\n".join(names))
    out.append("};")
    out.append("")
    out.append("struct rom_entry_s")
    out.append("{")
    out.append("\tunion")
    out.append("\t{")
    out.append("\t\tstruct")
    out.append("\t\t{")
    out.append("\t\t\tunsigned char reference_flag : 1;")
    out.append("\t\t\tunsigned char save_type : 3;")
    out.append("\t\t\tunsigned char players : 3;")
    out.append("\t\t\tunsigned char rumble : 1;")
    out.append("\t\t\tunsigned char transferpak : 1;")
    out.append("\t\t\tunsigned char status : 3;")
    out.append("\t\t\tunsigned char count_per_op : 3;")
    out.append("\t\t\tunsigned char disable_extra_mem : 1;")
    out.append("\t\t\tunsigned char cheat_lut : 5;")
    out.append("\t\t\tunsigned char mempak : 1;")
    out.append("\t\t\tunsigned char biopak : 1;")
    out.append("\t\t\tunsigned char si_dma_duration : 1;")
    out.append("\t\t\tunsigned char ai_dma_modifier : 1;")
    out.append("\t\t};")
    out.append("\t\tstruct")
    out.append("\t\t{")
    out.append("\t\t\tunsigned char reference : 1;")
    out.append("\t\t\tuint16_t reference_entry;")
    out.append("\t\t};")
    out.append("\t};")
    out.append("};")
    out.append("")

    n = len(records)
    crc_lines: List[str] = []
    for i in range(0, n, 3):
        chunk = records[i : i + 3]
        crc_lines.append("\t" + ", ".join(f"0x{r.checksum or 0:016X}" for r in chunk))
    out.append(f"const uint64_t rom_crc[{n}] = {{")
    out.append(",\n".join(crc_lines))
    out.append("};")
    out.append("")

    out.append(f"const struct rom_entry_s rom_dat[{n}] = {{")
    entries: List[str] = []
    for i, rec in enumerate(records):
        lines = [
            f"\t/* {_c_comment(rec.good_name)}",
            f"\t * CRC: {format_crc(rec.checksum or 0)}",
            f"\t * Entry: {i} */",
            "\t{",
        ]
        conf = rec.conf
        if isinstance(conf, ReferenceConfig):
            lines.append("\t\t.reference = 1,")
            lines.append(f"\t\t.reference_entry = {conf.index}")
        else:
            lines.append(f"\t\t.status = {conf.status},")
            lines.append(f"\t\t.save_type = SAVE_{conf.save_type.name},")
            lines.append(f"\t\t.players = {conf.players},")
            lines.append(f"\t\t.rumble = {int(conf.rumble)},")
            lines.append(f"\t\t.transferpak = {int(conf.transferpak)},")
            lines.append(f"\t\t.mempak = {int(conf.mempak)},")
            lines.append(f"\t\t.biopak = {int(conf.biopak)},")
            lines.append(f"\t\t.count_per_op = {conf.count_per_op},")
            lines.append(f"\t\t.disable_extra_mem = {int(conf.disable_extra_mem)},")
            lines.append(f"\t\t.si_dma_duration = {int(conf.si_dma_duration)},")
            lines.append(f"\t\t.ai_dma_modifier = {int(conf.ai_dma_modifier)},")
            lines.append(f"\t\t.cheat_lut = {conf.cheat}")
        lines.append("\t}")
        entries.append("\n".join(lines))
    out.append(",\n".join(entries))
    out.append("};")
    out.append("")

    out.append(f"const char *const cheats[{len(patches.payloads)}] = {{")
    cheat_entries = ["\tNULL"]
    for i in range(1, len(patches.payloads)):
        lines = ["\t/**"]
        lines.extend(f"\t * {_c_comment(name)}" for name in patches.used_by[i])
        lines.append("\t */")
        lines.append(f'\t"{_c_string(patches[i])}"')
        cheat_entries.append("\n".join(lines))
    out.append(",\n".join(cheat_entries))
    out.append("};")
    return "\n".join(out) + "\n"


def write_atomic(path: pathlib.Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)
