from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
TOOLS = ROOT / "tools"
if str(TOOLS) not in sys.path:
    sys.path.insert(0, str(TOOLS))


def key_hash(ch: str) -> str:
    return ch * 32


SAMPLE_INI = """\
; Mupen64Plus ROM catalog excerpt
[{a}]
GoodName=Super Mario 64 (U) [!]
CRC=635A2BFF 8B022326
Players=1
SaveType=Eeprom 4KB
Rumble=N

[{b}]
GoodName=Super Mario 64 (J) [!]
CRC=4EAA3D0E B04B4A81
RefMD5={a}

[{c}]
GoodName=Pokemon Stadium (U) [!]
CRC=90F43037 8CC1A3AB
SaveType=Flash RAM
Transferpak=Y
Cheat0=8031A6C4 0001

[{d}]
GoodName=Pokemon Stadium (E) [!]
CRC=84077275 A25B5F1E
SaveType=Flash RAM
Transferpak=Y
Cheat0=8031A6C4 0001

[{e}]
GoodName=Some Default Game (U)
CRC=00000010 00000020
""".format(a=key_hash("A"), b=key_hash("B"), c=key_hash("C"), d=key_hash("D"), e=key_hash("E"))


@pytest.fixture
def sample_ini() -> str:
    return SAMPLE_INI


@pytest.fixture
def sample_path(tmp_path: Path) -> Path:
    path = tmp_path / "mupen64plus.ini"
    path.write_text(SAMPLE_INI, encoding="utf-8")
    return path
