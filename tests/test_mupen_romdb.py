from __future__ import annotations

import json
import struct
from pathlib import Path

import pytest

import mupen_romdb
from romdb_emit import decode_table
from romdb_model import RomDbError


def _rom(crc1: int, crc2: int, order: str = "z64") -> bytes:
    rom = bytearray(0x1000)
    struct.pack_into(">I", rom, 0, 0x80371240)
    struct.pack_into(">II", rom, 0x10, crc1, crc2)
    rom[0x20:0x34] = b"SUPER MARIO 64      "
    if order == "v64":
        for i in range(0, len(rom) - 1, 2):
            rom[i], rom[i + 1] = rom[i + 1], rom[i]
    elif order == "n64":
        for i in range(0, len(rom) - 3, 4):
            rom[i : i + 4] = rom[i : i + 4][::-1]
    return bytes(rom)


def _last_json(out: str) -> dict:
    return json.loads(out)


def test_compile_bin_and_filtered_ini(sample_path, tmp_path, capsys):
    out = tmp_path / "rom_dat.bin"
    assert mupen_romdb.main(["compile", str(sample_path), str(out)]) == 0
    report = _last_json(capsys.readouterr().out)
    assert report["records"] == 4
    assert report["elided"] == 1
    assert report["patches"] == 1
    assert report["warnings"] == []

    table = decode_table(out.read_bytes())
    assert len(table) == 4
    ini = tmp_path / "rom_dat.filtered.ini"
    assert ini.exists()
    assert "CRC=4EAA3D0E B04B4A81" in ini.read_text(encoding="utf-8")
    assert not (tmp_path / "rom_dat.bin.tmp").exists()


def test_compile_header_from_suffix(sample_path, tmp_path, capsys):
    out = tmp_path / "rom_dat.h"
    assert mupen_romdb.main(["compile", str(sample_path), str(out)]) == 0
    assert _last_json(capsys.readouterr().out)["format"] == "header"
    text = out.read_text(encoding="utf-8")
    assert "#pragma once" in text
    assert "const uint64_t rom_crc[4]" in text


def test_out_of_range_writes_nothing(tmp_path, capsys):
    src = tmp_path / "bad.ini"
    src.write_text("[" + "A" * 32 + "]\nCRC=00000001 00000002\nPlayers=9\n", encoding="utf-8")
    out = tmp_path / "out.bin"
    assert mupen_romdb.main(["compile", str(src), str(out)]) == mupen_romdb.EXIT_COMPILE
    err = capsys.readouterr().err
    assert "OutOfRange" in err
    assert "line 3" in err
    assert "Players" in err
    assert list(tmp_path.iterdir()) == [src]


def test_missing_input_is_io_error(tmp_path, capsys):
    rc = mupen_romdb.main(["compile", str(tmp_path / "nope.ini"), str(tmp_path / "out.bin")])
    assert rc == mupen_romdb.EXIT_IO
    assert "error:" in capsys.readouterr().err
    assert not (tmp_path / "out.bin").exists()


def test_strict_turns_warnings_into_errors(tmp_path, capsys):
    src = tmp_path / "warn.ini"
    src.write_text("[" + "A" * 32 + "]\nCRC=00000001 00000002\nFancyNewKey=1\nStatus=1\n", encoding="utf-8")
    out = tmp_path / "out.bin"
    assert mupen_romdb.main(["compile", "--strict", str(src), str(out)]) == mupen_romdb.EXIT_COMPILE
    assert not out.exists()
    capsys.readouterr()
    assert mupen_romdb.main(["compile", str(src), str(out)]) == 0
    report = _last_json(capsys.readouterr().out)
    assert report["records"] == 1
    assert len(report["warnings"]) == 1


def test_compile_from_yaml_config(sample_path, tmp_path, capsys):
    out = tmp_path / "db" / "table.bin"
    ini_out = tmp_path / "db" / "clean.ini"
    cfg = tmp_path / "romdb.yaml"
    cfg.write_text(
        f"input: {sample_path.as_posix()}\noutput: {out.as_posix()}\nini_out: {ini_out.as_posix()}\nini_minimal: true\n",
        encoding="utf-8",
    )
    assert mupen_romdb.main(["compile", "--config", str(cfg)]) == 0
    capsys.readouterr()
    assert out.exists()
    assert "SaveType=" not in ini_out.read_text(encoding="utf-8")


def test_compile_from_json_config_with_override(sample_path, tmp_path, capsys):
    cfg = tmp_path / "romdb.json"
    cfg.write_text(json.dumps({"input": str(sample_path), "output": str(tmp_path / "a.bin")}), encoding="utf-8")
    override = tmp_path / "b.h"
    assert mupen_romdb.main(["compile", "--config", str(cfg), str(sample_path), str(override)]) == 0
    capsys.readouterr()
    assert override.exists()
    assert not (tmp_path / "a.bin").exists()


def test_config_rejects_unknown_keys(tmp_path, capsys):
    cfg = tmp_path / "romdb.json"
    cfg.write_text(json.dumps({"input": "x", "output": "y", "colour": "blue"}), encoding="utf-8")
    assert mupen_romdb.main(["compile", "--config", str(cfg)]) == mupen_romdb.EXIT_COMPILE
    assert "colour" in capsys.readouterr().err


def _compiled(sample_path: Path, tmp_path: Path, capsys) -> Path:
    out = tmp_path / "rom_dat.bin"
    assert mupen_romdb.main(["compile", str(sample_path), str(out)]) == 0
    capsys.readouterr()
    return out


def test_lookup_by_crc_follows_reference(sample_path, tmp_path, capsys):
    table = _compiled(sample_path, tmp_path, capsys)
    assert mupen_romdb.main(["lookup", str(table), "--crc", "4EAA3D0E B04B4A81"]) == 0
    report = _last_json(capsys.readouterr().out)
    assert report["found"] is True
    assert report["via_reference"] is True
    assert report["config"]["crc"] == "635A2BFF 8B022326"
    assert report["config"]["save_type"] == "EEPROM_4KB"


def test_lookup_missing_crc(sample_path, tmp_path, capsys):
    table = _compiled(sample_path, tmp_path, capsys)
    assert mupen_romdb.main(["lookup", str(table), "--crc", "0000001000000020"]) == mupen_romdb.EXIT_NOT_FOUND
    assert _last_json(capsys.readouterr().out)["found"] is False


@pytest.mark.parametrize("crc", ["-1", "1FFFFFFFFFFFFFFFF", "xyz"])
def test_lookup_rejects_crc_outside_64_bits(sample_path, tmp_path, capsys, crc):
    table = _compiled(sample_path, tmp_path, capsys)
    assert mupen_romdb.main(["lookup", str(table), "--crc", crc]) == mupen_romdb.EXIT_COMPILE
    assert "--crc" in capsys.readouterr().err


def test_lookup_by_rom_in_any_byte_order(sample_path, tmp_path, capsys):
    table = _compiled(sample_path, tmp_path, capsys)
    for order in ("z64", "v64", "n64"):
        rom = tmp_path / f"stadium.{order}"
        rom.write_bytes(_rom(0x90F43037, 0x8CC1A3AB, order))
        assert mupen_romdb.main(["lookup", str(table), "--rom", str(rom)]) == 0
        report = _last_json(capsys.readouterr().out)
        assert report["via_reference"] is False
        assert report["config"]["cheat_text"] == "8031A6C4 0001"
        assert report["config"]["transferpak"] == 1


def test_dump(sample_path, tmp_path, capsys):
    table = _compiled(sample_path, tmp_path, capsys)
    report_path = tmp_path / "dump.json"
    assert mupen_romdb.main(["dump", str(table), "--json", str(report_path)]) == 0
    report = _last_json(capsys.readouterr().out)
    assert report["count"] == 4
    assert report["patches"] == ["8031A6C4 0001"]
    assert report["entries"][0] == {"entry": 0, "crc": "4EAA3D0E B04B4A81", "reference": True, "reference_entry": 1}
    assert json.loads(report_path.read_text(encoding="utf-8")) == report


def test_dump_rejects_garbage(tmp_path, capsys):
    bad = tmp_path / "bad.bin"
    bad.write_bytes(b"not a table at all")
    assert mupen_romdb.main(["dump", str(bad)]) == mupen_romdb.EXIT_COMPILE
    assert "TableFormatError" in capsys.readouterr().err


def test_rom_info(tmp_path, capsys):
    rom = tmp_path / "mario.v64"
    rom.write_bytes(_rom(0x635A2BFF, 0x8B022326, "v64"))
    assert mupen_romdb.main(["rom-info", "--rom", str(rom)]) == 0
    report = _last_json(capsys.readouterr().out)
    assert report["rom_order"] == "v64"
    assert report["crc"] == "635A2BFF 8B022326"
    assert report["name"] == "SUPER MARIO 64"
    assert report["key"] == "0x635A2BFF8B022326"
    assert "detected_cic" not in report


def test_compile_catalog_strict_error_carries_location(sample_ini):
    text = sample_ini + "[" + "F" * 32 + "]\nCRC=00000003 00000004\nRefMD5=" + "Z" * 32 + "\n"
    try:
        mupen_romdb.compile_catalog(text, strict=True)
    except RomDbError as e:
        assert e.key == "RefMD5"
        assert e.line is not None
    else:
        raise AssertionError("strict compile should fail on an unresolved alias")
