#!/usr/bin/env python3
"""
Mupen64Plus ROM database compiler.

Current capabilities:
- Compile a mupen64plus.ini ROM catalog into a sorted, binary-searchable
  record table (.bin) or an embeddable C header (.h), plus a filtered .ini.
- Dump a compiled table back to JSON.
- Look up a ROM (by header CRC or by image file) in a compiled table.

Nothing is written unless the whole catalog decodes, resolves and
canonicalizes cleanly.
"""

from __future__ import annotations

import argparse
import dataclasses
import datetime
import json
import logging
import pathlib
import string
import sys
from typing import Any, Dict, List, Optional

from romdb_emit import decode_table, encode_table, render_header, render_ini, write_atomic
from romdb_ini import PatchTable, parse_crc, parse_ini
from romdb_link import canonicalize, resolve_references
from romdb_model import (
    MAX_NAME_LEN,
    Diagnostic,
    RomDbError,
    RomRecord,
    config_to_dict,
    format_crc,
)
from romdb_rom import normalize_rom_be, rom_checksum, rom_name

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None


LOG = logging.getLogger("romdb")

EXIT_IO = 1
EXIT_COMPILE = 2
EXIT_NOT_FOUND = 2

CONFIG_KEYS = ("input", "output", "ini_out", "format", "ini_minimal", "strict", "max_name_len")


@dataclasses.dataclass
class CompileResult:
    records: List[RomRecord]
    patches: PatchTable
    warnings: List[Diagnostic]
    block_count: int
    parsed: int
    merged: int
    elided: int


def compile_catalog(text: str, max_name_len: int = MAX_NAME_LEN, strict: bool = False) -> CompileResult:
    parsed = parse_ini(text, max_name_len=max_name_len)
    warnings = list(parsed.warnings)
    warnings.extend(resolve_references(parsed.records))
    if strict and warnings:
        first = warnings[0]
        raise RomDbError(
            f"{len(warnings)} warning(s) in strict mode; first: {first.message}", line=first.line, key=first.key
        )
    canon = canonicalize(parsed.records, parsed.patches)
    return CompileResult(
        records=canon.records,
        patches=canon.patches,
        warnings=warnings,
        block_count=parsed.block_count,
        parsed=len(parsed.records),
        merged=canon.merged,
        elided=canon.elided,
    )


def _load_config(path: pathlib.Path) -> Dict[str, Any]:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if ext == ".json":
        data = json.loads(text)
    else:
        if yaml is None:
            raise RuntimeError("PyYAML is required for YAML configs: pip install pyyaml")
        data = yaml.safe_load(text)
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    unknown = sorted(set(data) - set(CONFIG_KEYS))
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    return data


def _compile_options(args: argparse.Namespace) -> Dict[str, Any]:
    opts: Dict[str, Any] = {
        "input": None,
        "output": None,
        "ini_out": None,
        "format": None,
        "ini_minimal": False,
        "strict": False,
        "max_name_len": MAX_NAME_LEN,
    }
    if args.config:
        opts.update(_load_config(pathlib.Path(args.config)))
    for key in CONFIG_KEYS:
        value = getattr(args, key, None)
        if value is not None and value is not False:
            opts[key] = value
    if not opts["input"] or not opts["output"]:
        raise ValueError("compile needs an input and an output path (arguments or config)")
    out = pathlib.Path(opts["output"])
    if not opts["format"]:
        opts["format"] = "header" if out.suffix.lower() == ".h" else "bin"
    if opts["format"] not in ("bin", "header"):
        raise ValueError(f"Unsupported format: {opts['format']}")
    if not opts["ini_out"]:
        opts["ini_out"] = str(out.with_name(out.stem + ".filtered.ini"))
    opts["max_name_len"] = int(opts["max_name_len"])
    return opts


def cmd_compile(args: argparse.Namespace) -> int:
    opts = _compile_options(args)
    in_path = pathlib.Path(opts["input"])
    out_path = pathlib.Path(opts["output"])
    ini_path = pathlib.Path(opts["ini_out"])

    text = in_path.read_text(encoding="utf-8")
    result = compile_catalog(text, max_name_len=opts["max_name_len"], strict=bool(opts["strict"]))

    if opts["format"] == "header":
        stamp = datetime.datetime.now().strftime("%c")
        payload = render_header(result.records, result.patches, generated_at=stamp).encode("utf-8")
    else:
        payload = encode_table(result.records, result.patches)
    ini_text = render_ini(result.records, result.patches, minimal=bool(opts["ini_minimal"]))

    write_atomic(out_path, payload)
    write_atomic(ini_path, ini_text.encode("utf-8"))
    LOG.info("wrote %s and %s", out_path, ini_path)

    print(
        json.dumps(
            {
                "input": str(in_path),
                "out": str(out_path),
                "ini": str(ini_path),
                "format": opts["format"],
                "blocks": result.block_count,
                "parsed": result.parsed,
                "merged": result.merged,
                "elided": result.elided,
                "records": len(result.records),
                "patches": len(result.patches),
                "warnings": [str(w) for w in result.warnings],
            },
            indent=2,
        )
    )
    return 0


def _entry_report(table_patches: List[str], index: int, crc: int, conf_dict: Dict[str, object]) -> Dict[str, object]:
    rec: Dict[str, object] = {"entry": index, "crc": format_crc(crc), **conf_dict}
    cheat = conf_dict.get("cheat")
    if isinstance(cheat, int) and cheat:
        rec["cheat_text"] = table_patches[cheat]
    return rec


def cmd_dump(args: argparse.Namespace) -> int:
    table = decode_table(pathlib.Path(args.table).read_bytes())
    entries = []
    for i in range(len(table)):
        entries.append(_entry_report(table.patches, i, int(table.checksums[i]), config_to_dict(table.config(i))))
    report = {
        "table": args.table,
        "count": len(table),
        "patches": table.patches[1:],
        "entries": entries,
    }
    if args.json:
        pathlib.Path(args.json).write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


def _lookup_key(args: argparse.Namespace) -> int:
    if args.rom:
        rom_be, _ = normalize_rom_be(pathlib.Path(args.rom).read_bytes())
        return rom_checksum(rom_be)
    text = args.crc.strip()
    if " " in text:
        return parse_crc(text)
    if not 1 <= len(text) <= 16 or any(ch not in string.hexdigits for ch in text):
        raise ValueError(f"--crc must be \"XXXXXXXX YYYYYYYY\" or up to 16 hex digits, got {text!r}")
    return int(text, 16)


def cmd_lookup(args: argparse.Namespace) -> int:
    table = decode_table(pathlib.Path(args.table).read_bytes())
    crc = _lookup_key(args)
    index = table.find(crc)
    if index is None:
        print(json.dumps({"crc": format_crc(crc), "found": False}, indent=2))
        return EXIT_NOT_FOUND
    target, conf = table.resolve(index)
    report: Dict[str, object] = {
        "crc": format_crc(crc),
        "found": True,
        "entry": index,
        "via_reference": target != index,
        "config": _entry_report(table.patches, target, int(table.checksums[target]), config_to_dict(conf)),
    }
    print(json.dumps(report, indent=2))
    return 0


def cmd_rom_info(args: argparse.Namespace) -> int:
    raw = pathlib.Path(args.rom).read_bytes()
    rom_be, order = normalize_rom_be(raw)
    crc = rom_checksum(rom_be)
    report = {
        "rom": args.rom,
        "rom_order": order,
        "size": len(raw),
        "name": rom_name(rom_be),
        "crc": format_crc(crc),
        "key": f"0x{crc:016X}",
    }
    print(json.dumps(report, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Mupen64Plus ROM database compiler")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More log output (repeatable)")
    p.add_argument("-q", "--quiet", action="count", default=0, help="Less log output (repeatable)")
    sub = p.add_subparsers(dest="cmd", required=True)

    pc = sub.add_parser("compile", help="Compile mupen64plus.ini into a ROM table (.bin or .h)")
    pc.add_argument("input", nargs="?", help="Path to mupen64plus.ini")
    pc.add_argument("output", nargs="?", help="Output table path (.bin or .h)")
    pc.add_argument("--config", help="Config file (.json/.yaml/.yml) with compile options")
    pc.add_argument("--format", choices=("bin", "header"), help="Output format (default: from output suffix)")
    pc.add_argument("--ini-out", dest="ini_out", help="Filtered .ini path (default: <output>.filtered.ini)")
    pc.add_argument("--ini-minimal", dest="ini_minimal", action="store_true", help="Only write name/CRC/RefMD5 to the filtered .ini")
    pc.add_argument("--strict", action="store_true", help="Treat warnings as fatal errors")
    pc.add_argument("--max-name-len", dest="max_name_len", type=int, help=f"GoodName truncation length (default: {MAX_NAME_LEN})")
    pc.set_defaults(func=cmd_compile)

    pd = sub.add_parser("dump", help="Dump a compiled .bin table as JSON")
    pd.add_argument("table", help="Compiled .bin table")
    pd.add_argument("--json", help="Also write the report to this path")
    pd.set_defaults(func=cmd_dump)

    pl = sub.add_parser("lookup", help="Look a ROM up in a compiled .bin table")
    pl.add_argument("table", help="Compiled .bin table")
    key = pl.add_mutually_exclusive_group(required=True)
    key.add_argument("--crc", help='Header CRC as "XXXXXXXX YYYYYYYY" or 16 hex digits')
    key.add_argument("--rom", help="ROM image (.z64/.v64/.n64)")
    pl.set_defaults(func=cmd_lookup)

    pri = sub.add_parser("rom-info", help="Report ROM byte order, name, header CRC and lookup key")
    pri.add_argument("--rom", required=True, help="ROM image (.z64/.v64/.n64)")
    pri.set_defaults(func=cmd_rom_info)

    return p


def _setup_logging(level: int) -> None:
    levels = (logging.ERROR, logging.WARNING, logging.INFO, logging.DEBUG)
    idx = min(max(level + 1, 0), len(levels) - 1)
    logging.basicConfig(stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
    logging.getLogger("romdb").setLevel(levels[idx])


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _setup_logging(args.verbose - args.quiet)
    try:
        return int(args.func(args))
    except RomDbError as e:
        print(f"error: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_COMPILE
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_COMPILE
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return EXIT_IO


if __name__ == "__main__":
    raise SystemExit(main())
