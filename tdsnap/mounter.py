"""
mounter.py
Mount recipes and umount helper.

Snapshot views are mounted with ro plus the common noexec,nosuid,nodev options.
XFS snapshots share the UUID of their still-mounted origin, so they need nouuid.
"""

from __future__ import annotations
from pathlib import Path
from typing import Iterable
from .util import Runner


def mount_options(base: str, fstype: str = "", ro: bool = False, extra: Iterable[str] = ()) -> str:
    opts = ["ro"] if ro else []
    opts += [o for o in base.split(",") if o]
    if ro and fstype == "xfs":
        opts.append("nouuid")
    opts += list(extra)
    return ",".join(opts)


def mount(runner: Runner, device: str, mp: Path, options: str) -> None:
    runner.run(["mount", "-v", "-o", options, device, str(mp)])


def umount(runner: Runner, mp: Path) -> None:
    runner.run(["umount", "-v", str(mp)])


def is_mounted(mp: Path, mountpoints: Iterable[str]) -> bool:
    return str(mp) in set(mountpoints)
