"""
layers.py
Queries against the storage layers below a filesystem:
- btrfs: list subvolumes, id <-> path lookups (only on a mounted FS)
- LVM: which LV/VG backs a device, which VG a PV belongs to
- loop devices attached to an image file
"""

from __future__ import annotations
import re
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from .util import Runner

_SUBVOL_LINE = re.compile(r"^ID\s+(\d+)\s.*?\spath\s(.+)$")


def btrfs_subvolumes(runner: Runner, mnt: Path) -> Dict[int, str]:
    """Map subvolume id -> path relative to the top level. Id 5 is never listed."""
    _, out = runner.run(["btrfs", "subvolume", "list", str(mnt)], quiet=True)
    subvols = {}
    for line in out.splitlines():
        m = _SUBVOL_LINE.match(line.strip())
        if m:
            subvols[int(m.group(1))] = m.group(2).strip()
    return subvols


def btrfs_name_of(runner: Runner, mnt: Path, subvol_id: int) -> Optional[str]:
    return btrfs_subvolumes(runner, mnt).get(subvol_id)


def btrfs_id_of(runner: Runner, mnt: Path, path: str) -> Optional[int]:
    for sid, p in btrfs_subvolumes(runner, mnt).items():
        if p == path:
            return sid
    return None


def lv_of(runner: Runner, device: str) -> Optional[Tuple[str, str]]:
    """Return (lv, vg) if device is a logical volume, else None."""
    if not runner.which("lvs"):
        return None
    rc, out = runner.run(
        ["lvs", "--noheadings", "-o", "lv_name,vg_name", device], check=False, quiet=True
    )
    if rc != 0:
        return None
    tokens = out.split()
    if len(tokens) < 2:
        return None
    return tokens[0], tokens[1]


def all_lvs(runner: Runner) -> List[Tuple[str, str]]:
    rc, out = runner.run(["lvs", "--noheadings", "-o", "lv_name,vg_name"], check=False, quiet=True)
    if rc != 0:
        return []
    pairs = []
    for line in out.splitlines():
        tokens = line.split()
        if len(tokens) >= 2:
            pairs.append((tokens[0], tokens[1]))
    return pairs


def vg_of_pv(runner: Runner, pv: str) -> Optional[str]:
    rc, out = runner.run(["pvs", "--noheadings", "-o", "vg_name", pv], check=False, quiet=True)
    if rc != 0:
        return None
    return out.strip() or None


def loops_of(runner: Runner, image: Path) -> List[str]:
    """Loop devices backed by image ('losetup -j' prints '/dev/loop0: [..]:.. (img)')."""
    rc, out = runner.run(["losetup", "-j", str(image)], check=False, quiet=True)
    if rc != 0:
        return []
    return [line.split(":", 1)[0] for line in out.splitlines() if line.startswith("/dev/")]
