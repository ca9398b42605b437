"""
Reference resolution and canonicalization of decoded ROM records.

Two passes: aliases are first joined to their target by key hash (recording
the target checksum), then, after sorting and merging, re-joined by checksum
to get their final position in the emitted table.
"""

from __future__ import annotations

import dataclasses
import itertools
import logging
from typing import Dict, List, Optional, Sequence

from romdb_ini import PatchTable
from romdb_model import Diagnostic, DirectConfig, ReferenceConfig, RomRecord


LOG = logging.getLogger("romdb.link")


@dataclasses.dataclass
class CanonResult:
    records: List[RomRecord]
    patches: PatchTable
    merged: int
    elided: int


def resolve_references(records: Sequence[RomRecord]) -> List[Diagnostic]:
    """Join every alias to the first record carrying its target key hash."""
    by_hash: Dict[str, int] = {}
    for pos, rec in enumerate(records):
        by_hash.setdefault(rec.key_hash, pos)

    warnings: List[Diagnostic] = []
    for rec in records:
        conf = rec.conf
        if not isinstance(conf, ReferenceConfig):
            continue
        pos = by_hash.get(conf.target_key_hash)
        if pos is None:
            diag = Diagnostic(rec.line, "RefMD5", f"[{rec.key_hash}] refers to unknown [{conf.target_key_hash}]")
            warnings.append(diag)
            LOG.warning("%s", diag)
            conf.index = None
            conf.target_checksum = None
            continue
        conf.index = pos
        conf.target_checksum = records[pos].checksum
    return warnings


def _sort_key(rec: RomRecord) -> tuple[int, int]:
    return (rec.checksum or 0, 1 if rec.is_reference else 0)


def _pick(run: List[RomRecord]) -> RomRecord:
    informative = [r for r in run if isinstance(r.conf, DirectConfig) and not r.conf.is_default()]
    if informative:
        return informative[-1]
    # Sorted direct-first, so this is a direct record whenever the run has one.
    return run[0]


def merge_duplicates(records: Sequence[RomRecord]) -> List[RomRecord]:
    """Sort by checksum (direct before alias on ties) and keep one record per checksum."""
    ordered = sorted(records, key=_sort_key)
    return [_pick(list(run)) for _, run in itertools.groupby(ordered, key=lambda r: r.checksum)]


def _final_target(rec: RomRecord, by_crc: Dict[int, RomRecord]) -> Optional[RomRecord]:
    # Collapse alias chains; a cycle or a missing link leaves the alias unresolved.
    seen = {rec.checksum}
    cur = rec
    while isinstance(cur.conf, ReferenceConfig):
        crc = cur.conf.target_checksum
        if crc is None or crc in seen:
            return None
        seen.add(crc)
        nxt = by_crc.get(crc)
        if nxt is None:
            return None
        cur = nxt
    return cur


def canonicalize(records: Sequence[RomRecord], patches: PatchTable) -> CanonResult:
    merged = merge_duplicates(records)
    by_crc = {r.checksum: r for r in merged if r.checksum is not None}

    kept: List[RomRecord] = []
    targets: Dict[Optional[int], Optional[int]] = {}
    for rec in merged:
        if isinstance(rec.conf, DirectConfig):
            if not rec.conf.is_default():
                kept.append(rec)
            continue
        target = _final_target(rec, by_crc)
        if target is None or not isinstance(target.conf, DirectConfig) or target.conf.is_default():
            LOG.info("eliding alias [%s]: no surviving target", rec.key_hash)
            continue
        kept.append(rec)
        targets[rec.checksum] = target.checksum

    new_patches, remap = patches.compact(kept)
    position = {r.checksum: i for i, r in enumerate(kept)}

    out: List[RomRecord] = []
    for rec in kept:
        conf = rec.conf
        if isinstance(conf, DirectConfig):
            conf = dataclasses.replace(conf, cheat=remap[conf.cheat])
        else:
            crc = targets[rec.checksum]
            conf = dataclasses.replace(conf, target_checksum=crc, index=position[crc])
        out.append(dataclasses.replace(rec, conf=conf))

    return CanonResult(
        records=out,
        patches=new_patches,
        merged=len(records) - len(merged),
        elided=len(merged) - len(kept),
    )

