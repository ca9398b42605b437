"""
Record types for the N64 ROM compatibility database.

A record is keyed by the 64-bit ROM header checksum (CRC1 << 32 | CRC2) and
carries either its own packed configuration (direct form) or a pointer to
another record (reference form).
"""

from __future__ import annotations

import dataclasses
import enum
from typing import Optional, Union


MAX_NAME_LEN = 63
KEY_HASH_LEN = 32
MAX_PATCHES = 31
MAX_REFERENCE_INDEX = 0xFFFF


class SaveType(enum.IntEnum):
    EEPROM_4KB = 0
    EEPROM_16KB = 1
    SRAM = 2
    FLASH_RAM = 3
    CONTROLLER_PACK = 4
    NONE = 5


SAVE_TYPE_LITERALS = {
    SaveType.EEPROM_4KB: "Eeprom 4KB",
    SaveType.EEPROM_16KB: "Eeprom 16KB",
    SaveType.SRAM: "SRAM",
    SaveType.FLASH_RAM: "Flash RAM",
    SaveType.CONTROLLER_PACK: "Controller Pack",
    SaveType.NONE: "None",
}


class RomDbError(ValueError):
    """Fatal compile error, tagged with the input line and key when known."""

    def __init__(self, message: str, line: Optional[int] = None, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.key = key

    def __str__(self) -> str:
        where = []
        if self.line is not None:
            where.append(f"line {self.line}")
        if self.key:
            where.append(f"key {self.key}")
        if where:
            return f"{', '.join(where)}: {self.message}"
        return self.message


class MalformedInput(RomDbError):
    pass


class OutOfRange(RomDbError):
    pass


class InvalidLiteral(RomDbError):
    pass


class UnknownEnumVariant(RomDbError):
    pass


class CapacityExceeded(RomDbError):
    pass


class ConflictingRecordForm(RomDbError):
    pass


class TableFormatError(RomDbError):
    pass


@dataclasses.dataclass(frozen=True)
class Diagnostic:
    line: Optional[int]
    key: Optional[str]
    message: str

    def __str__(self) -> str:
        if self.line is None:
            return self.message
        return f"line {self.line}: {self.message}"


@dataclasses.dataclass
class DirectConfig:
    status: int = 0
    save_type: SaveType = SaveType.NONE
    players: int = 4
    rumble: bool = True
    transferpak: bool = False
    mempak: bool = True
    biopak: bool = False
    count_per_op: int = 2
    disable_extra_mem: bool = False
    cheat: int = 0
    si_dma_duration: bool = False
    ai_dma_modifier: bool = False

    def is_default(self) -> bool:
        return self == DirectConfig()


@dataclasses.dataclass
class ReferenceConfig:
    target_key_hash: str
    # Join key filled in by the resolver; positions are only final after
    # canonicalization.
    target_checksum: Optional[int] = None
    index: Optional[int] = None


Config = Union[DirectConfig, ReferenceConfig]


@dataclasses.dataclass
class RomRecord:
    key_hash: str
    checksum: Optional[int] = None
    good_name: str = ""
    conf: Config = dataclasses.field(default_factory=DirectConfig)
    line: Optional[int] = None

    @property
    def is_reference(self) -> bool:
        return isinstance(self.conf, ReferenceConfig)

    @property
    def display_name(self) -> str:
        return self.good_name or self.key_hash


def format_crc(checksum: int) -> str:
    return f"{(checksum >> 32) & 0xFFFFFFFF:08X} {checksum & 0xFFFFFFFF:08X}"


# (field, shift, width) for the direct form; bit 0 is the form discriminant.
DIRECT_LAYOUT = (
    ("save_type", 1, 3),
    ("players", 4, 3),
    ("rumble", 7, 1),
    ("transferpak", 8, 1),
    ("status", 9, 3),
    ("count_per_op", 12, 3),
    ("disable_extra_mem", 15, 1),
    ("cheat", 16, 5),
    ("mempak", 21, 1),
    ("biopak", 22, 1),
    ("si_dma_duration", 23, 1),
    ("ai_dma_modifier", 24, 1),
)

REFERENCE_FLAG = 0x1
REFERENCE_SHIFT = 16


def pack_config(conf: Config) -> int:
    if isinstance(conf, ReferenceConfig):
        if conf.index is None:
            raise ValueError(f"unresolved reference to {conf.target_key_hash}")
        if not 0 <= conf.index <= MAX_REFERENCE_INDEX:
            raise ValueError(f"reference index {conf.index} does not fit in 16 bits")
        return REFERENCE_FLAG | (conf.index << REFERENCE_SHIFT)

    word = 0
    for name, shift, width in DIRECT_LAYOUT:
        value = int(getattr(conf, name))
        mask = (1 << width) - 1
        if value & ~mask:
            raise ValueError(f"{name}={value} does not fit in {width} bits")
        word |= (value & mask) << shift
    return word


def unpack_config(word: int) -> Config:
    if word & REFERENCE_FLAG:
        return ReferenceConfig(target_key_hash="", index=(word >> REFERENCE_SHIFT) & MAX_REFERENCE_INDEX)

    fields = {}
    for name, shift, width in DIRECT_LAYOUT:
        fields[name] = (word >> shift) & ((1 << width) - 1)
    conf = DirectConfig(
        status=fields["status"],
        save_type=SaveType(fields["save_type"]),
        players=fields["players"],
        rumble=bool(fields["rumble"]),
        transferpak=bool(fields["transferpak"]),
        mempak=bool(fields["mempak"]),
        biopak=bool(fields["biopak"]),
        count_per_op=fields["count_per_op"],
        disable_extra_mem=bool(fields["disable_extra_mem"]),
        cheat=fields["cheat"],
        si_dma_duration=bool(fields["si_dma_duration"]),
        ai_dma_modifier=bool(fields["ai_dma_modifier"]),
    )
    return conf


def config_to_dict(conf: Config) -> dict[str, object]:
    if isinstance(conf, ReferenceConfig):
        return {"reference": True, "reference_entry": conf.index}
    out: dict[str, object] = {"reference": False}
    for f in dataclasses.fields(conf):
        value = getattr(conf, f.name)
        if isinstance(value, SaveType):
            out[f.name] = value.name
        elif isinstance(value, bool):
            out[f.name] = int(value)
        else:
            out[f.name] = value
    return out
