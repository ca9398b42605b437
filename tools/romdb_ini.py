"""
Mupen64Plus ROM catalog (.ini) reader.

Turns the block-structured catalog text into an ordered list of RomRecord
values plus the interned Cheat0 patch table. Nothing here touches the
filesystem; callers pass the whole text in.
"""

from __future__ import annotations

import dataclasses
import logging
import string
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from romdb_model import (
    KEY_HASH_LEN,
    MAX_NAME_LEN,
    MAX_PATCHES,
    CapacityExceeded,
    ConflictingRecordForm,
    Diagnostic,
    DirectConfig,
    InvalidLiteral,
    MalformedInput,
    OutOfRange,
    ReferenceConfig,
    RomRecord,
    SaveType,
    UnknownEnumVariant,
)


LOG = logging.getLogger("romdb.ini")

AI_DMA_MODIFIER_VALUE = 88

LINE_BLANK = "blank"
LINE_COMMENT = "comment"
LINE_HEADER = "header"
LINE_KEY_VALUE = "key_value"


@dataclasses.dataclass
class ScanLine:
    number: int
    kind: str
    key: str = ""
    value: str = ""


def iter_lines(text: str) -> Iterable[ScanLine]:
    for number, raw in enumerate(text.split("\n"), start=1):
        line = raw[:-1] if raw.endswith("\r") else raw
        if not line.strip():
            yield ScanLine(number, LINE_BLANK)
        elif line.startswith(";"):
            yield ScanLine(number, LINE_COMMENT)
        elif line.startswith("["):
            close = line.find("]")
            if close < 0:
                raise MalformedInput("unterminated block header", line=number)
            yield ScanLine(number, LINE_HEADER, value=line[1:close][:KEY_HASH_LEN])
        else:
            if "=" not in line:
                raise MalformedInput(f"expected Key=Value, got {line.strip()!r}", line=number)
            key, value = line.split("=", 1)
            yield ScanLine(number, LINE_KEY_VALUE, key=key.strip(), value=value)


def count_blocks(text: str) -> int:
    """Upper bound on the number of records: one per block header line."""
    return sum(1 for raw in text.split("\n") if raw.startswith("["))


class PatchTable:
    """Interned Cheat0 payloads. Index 0 is reserved for "no patch"."""

    def __init__(self, capacity: int = MAX_PATCHES) -> None:
        self.capacity = capacity
        self.payloads: List[str] = [""]
        self.used_by: List[List[str]] = [[]]
        self._index: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.payloads) - 1

    def __getitem__(self, index: int) -> str:
        return self.payloads[index]

    def intern(self, payload: str, name: str, line: Optional[int] = None) -> int:
        idx = self._index.get(payload)
        if idx is not None:
            self.used_by[idx].append(name)
            return idx
        if len(self) >= self.capacity:
            raise CapacityExceeded(
                f"more than {self.capacity} distinct Cheat0 payloads", line=line, key="Cheat0"
            )
        idx = len(self.payloads)
        self.payloads.append(payload)
        self.used_by.append([name])
        self._index[payload] = idx
        return idx

    def compact(self, records: Iterable[RomRecord]) -> Tuple["PatchTable", Dict[int, int]]:
        """Renumber by first use in ``records``, dropping unused payloads."""
        out = PatchTable(self.capacity)
        remap: Dict[int, int] = {0: 0}
        for rec in records:
            conf = rec.conf
            if not isinstance(conf, DirectConfig) or conf.cheat == 0:
                continue
            remap[conf.cheat] = out.intern(self.payloads[conf.cheat], rec.display_name)
        return out, remap


@dataclasses.dataclass
class ParseResult:
    records: List[RomRecord]
    patches: PatchTable
    warnings: List[Diagnostic]
    block_count: int


def _parse_decimal(value: str, key: str, line: int, lo: int, hi: int) -> int:
    text = value.strip()
    if not text or any(ch not in string.digits for ch in text):
        raise InvalidLiteral(f"expected a decimal number, got {text!r}", line=line, key=key)
    n = int(text, 10)
    if not lo <= n <= hi:
        raise OutOfRange(f"{n} is outside {lo}..{hi}", line=line, key=key)
    return n


def parse_crc(value: str, line: Optional[int] = None) -> int:
    """Parse ``XXXXXXXX YYYYYYYY`` into CRC1 << 32 | CRC2."""
    parts = value.split(" ")
    if len(parts) != 2:
        raise MalformedInput(f"CRC must be two hex words separated by one space, got {value!r}", line=line, key="CRC")
    halves = []
    for part in parts:
        if not 1 <= len(part) <= 8 or any(ch not in string.hexdigits for ch in part):
            raise MalformedInput(f"bad CRC word {part!r}", line=line, key="CRC")
        halves.append(int(part, 16))
    return (halves[0] << 32) | halves[1]


def _parse_save_type(value: str, line: int) -> SaveType:
    text = value.strip()
    first = text[:1]
    if first == "E":
        size = text[len("Eeprom "):len("Eeprom ") + 1]
        if size == "4":
            return SaveType.EEPROM_4KB
        if size == "1":
            return SaveType.EEPROM_16KB
    elif first == "S":
        return SaveType.SRAM
    elif first == "F":
        return SaveType.FLASH_RAM
    elif first == "C":
        return SaveType.CONTROLLER_PACK
    elif first == "N":
        return SaveType.NONE
    raise UnknownEnumVariant(f"unknown save type {text!r}", line=line, key="SaveType")


def _flag_y(value: str) -> bool:
    return value[:1] == "Y"


def _flag_1(value: str) -> bool:
    return value[:1] == "1"


def _si_dma_duration(value: str, line: int) -> bool:
    if value.strip() != "1":
        raise InvalidLiteral(f"SiDmaDuration must be 1, got {value.strip()!r}", line=line, key="SiDmaDuration")
    return True


# Direct-form keys: key -> (DirectConfig field, value decoder).
DIRECT_KEYS: Dict[str, Tuple[str, Callable[[str, int], object]]] = {
    "SaveType": ("save_type", _parse_save_type),
    "Status": ("status", lambda v, n: _parse_decimal(v, "Status", n, 0, 5)),
    "Players": ("players", lambda v, n: _parse_decimal(v, "Players", n, 0, 7)),
    "CountPerOp": ("count_per_op", lambda v, n: _parse_decimal(v, "CountPerOp", n, 1, 4)),
    "Rumble": ("rumble", lambda v, n: _flag_y(v)),
    "Transferpak": ("transferpak", lambda v, n: _flag_y(v)),
    "Mempak": ("mempak", lambda v, n: _flag_y(v)),
    "Biopak": ("biopak", lambda v, n: _flag_y(v)),
    "DisableExtraMem": ("disable_extra_mem", lambda v, n: _flag_1(v)),
    "SiDmaDuration": ("si_dma_duration", _si_dma_duration),
}


class _Decoder:
    def __init__(self, max_name_len: int = MAX_NAME_LEN, patches: Optional[PatchTable] = None) -> None:
        self.max_name_len = max_name_len
        self.records: List[RomRecord] = []
        self.patches = patches if patches is not None else PatchTable()
        self.warnings: List[Diagnostic] = []
        self.current: Optional[RomRecord] = None
        self.direct_keys: List[str] = []
        self.seen_hashes: Dict[str, Optional[int]] = {}

    def warn(self, line: Optional[int], key: Optional[str], message: str) -> None:
        diag = Diagnostic(line, key, message)
        self.warnings.append(diag)
        LOG.warning("%s", diag)

    def feed(self, sl: ScanLine) -> None:
        if sl.kind == LINE_HEADER:
            self.finish()
            self.current = RomRecord(key_hash=sl.value, line=sl.number)
            self.direct_keys = []
            return
        if sl.kind != LINE_KEY_VALUE:
            return
        rec = self.current
        if rec is None:
            raise MalformedInput("key before any [block] header", line=sl.number, key=sl.key)

        key, value, line = sl.key, sl.value, sl.number
        if key == "CRC":
            crc = parse_crc(value, line)
            if rec.checksum is not None:
                self.warn(line, key, "duplicate CRC in block ignored")
            else:
                rec.checksum = crc
        elif key == "GoodName":
            rec.good_name = value[: self.max_name_len]
        elif key == "RefMD5":
            if self.direct_keys:
                raise ConflictingRecordForm(
                    f"RefMD5 on a record that already sets {', '.join(self.direct_keys)}", line=line, key=key
                )
            rec.conf = ReferenceConfig(target_key_hash=value.strip()[:KEY_HASH_LEN])
        elif key == "AiDmaModifier":
            text = value.strip()
            if text and all(ch in string.digits for ch in text) and int(text, 10) == AI_DMA_MODIFIER_VALUE:
                self._direct_conf(rec, key, line).ai_dma_modifier = True
            else:
                self.warn(line, key, f"unsupported AiDmaModifier={text!r} ignored")
        elif key == "Cheat0":
            conf = self._direct_conf(rec, key, line)
            conf.cheat = self.patches.intern(value, rec.display_name, line=line)
        elif key in DIRECT_KEYS:
            field, decode = DIRECT_KEYS[key]
            conf = self._direct_conf(rec, key, line)
            setattr(conf, field, decode(value, line))
        else:
            self.warn(line, key, f"unknown key {key!r} ignored")

    def _direct_conf(self, rec: RomRecord, key: str, line: int) -> DirectConfig:
        if isinstance(rec.conf, ReferenceConfig):
            raise ConflictingRecordForm(f"{key} on a record that already has RefMD5", line=line, key=key)
        self.direct_keys.append(key)
        return rec.conf

    def finish(self) -> None:
        rec = self.current
        if rec is None:
            return
        if rec.checksum is None:
            self.warn(rec.line, None, f"block [{rec.key_hash}] has no CRC and is dropped")
        elif rec.key_hash in self.seen_hashes:
            # RefMD5 binds to the first block with a given key hash.
            first = self.seen_hashes[rec.key_hash]
            self.warn(rec.line, None, f"block [{rec.key_hash}] repeats the key hash of line {first} and is dropped")
        else:
            self.seen_hashes[rec.key_hash] = rec.line
            self.records.append(rec)
        self.current = None


def parse_ini(text: str, max_name_len: int = MAX_NAME_LEN) -> ParseResult:
    """Decode a whole catalog. Raises a RomDbError subclass on the first fatal problem."""
    block_count = count_blocks(text)
    LOG.info("Processing %d entries", block_count)
    dec = _Decoder(max_name_len=max_name_len)
    for sl in iter_lines(text):
        dec.feed(sl)
    dec.finish()
    return ParseResult(records=dec.records, patches=dec.patches, warnings=dec.warnings, block_count=block_count)
