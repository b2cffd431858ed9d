"""
mountinfo.py
Resolve the storage topology of a path from /proc/self/mountinfo.

Line format (see "filesystems/proc.rst" in the kernel docs):
  36 35 98:0 /mnt1 /mnt2 rw,noatime master:1 - ext3 /dev/root rw,errors=continue
  (1)(2)(3)   (4)   (5)      (6)      (7)   (8) (9)   (10)         (11)
Field 7 is a variable number of optional tags terminated by '-'.

The closest mountpoint is found by walking up the path against the table rather than
asking stat(1): stat reports the nearest btrfs subvolume even when the real mount is
higher up the tree.
"""

from __future__ import annotations
import logging, os, re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import MountNotFoundError
from .types import MountRecord
from .util import Runner

logger = logging.getLogger("tdsnap")

BTRFS_TOP_LEVEL = 5

_OCTAL = re.compile(r"\\([0-7]{3})")


def unescape(field: str) -> str:
    """Decode the \\040-style escapes the kernel uses for blanks in paths."""
    return _OCTAL.sub(lambda m: chr(int(m.group(1), 8)), field)


@dataclass(frozen=True)
class MountEntry:
    mount_id: int
    parent_id: int
    major_minor: str
    root: str
    mountpoint: str
    mount_options: str
    fstype: str
    source: str
    super_options: str


def parse_line(line: str) -> Optional[MountEntry]:
    a = line.split()
    if len(a) < 10:
        return None
    try:
        sep = a.index("-", 6)
    except ValueError:
        return None
    if len(a) < sep + 3:
        return None
    return MountEntry(
        mount_id=int(a[0]),
        parent_id=int(a[1]),
        major_minor=a[2],
        root=unescape(a[3]),
        mountpoint=unescape(a[4]),
        mount_options=a[5],
        fstype=a[sep + 1],
        source=unescape(a[sep + 2]),
        super_options=a[sep + 3] if len(a) > sep + 3 else "",
    )


def parse_mountinfo(text: str) -> List[MountEntry]:
    entries = []
    for line in text.splitlines():
        e = parse_line(line)
        if e is not None:
            entries.append(e)
    return entries


def read_mountinfo(path: Path) -> List[MountEntry]:
    return parse_mountinfo(Path(path).read_text(encoding="utf-8", errors="replace"))


def entry_at(mountpoint: str, entries: List[MountEntry]) -> Optional[MountEntry]:
    """Topmost entry mounted at exactly this mountpoint (later lines shadow earlier ones)."""
    found = None
    for e in entries:
        if e.mountpoint == mountpoint:
            found = e
    return found


def closest_mountpoint(path: str, entries: List[MountEntry]) -> str:
    """Walk up from path until a mounted boundary is found."""
    mounted = {e.mountpoint for e in entries}
    # abspath keeps POSIX's leading '//', which is just '/' here
    cur = os.path.abspath(path or "/")
    if cur.startswith("//"):
        cur = "/" + cur.lstrip("/")
    while True:
        if cur in mounted:
            return cur
        parent = os.path.dirname(cur)
        if parent == cur:
            raise MountNotFoundError(f"no mount table entry covers {path!r}, not even '/'")
        cur = parent


def subvolume_id(entry: MountEntry) -> int:
    """subvolid= from the mount options; absent means the top-level subvolume."""
    for opts in (entry.super_options, entry.mount_options):
        for opt in opts.split(","):
            if opt.startswith("subvolid="):
                return int(opt.split("=", 1)[1])
    return BTRFS_TOP_LEVEL


class MountTopologyResolver:
    def __init__(self, runner: Runner, mountinfo: Path = Path("/proc/self/mountinfo")):
        self.runner = runner
        self.mountinfo = Path(mountinfo)

    def entries(self) -> List[MountEntry]:
        return read_mountinfo(self.mountinfo)

    def resolve(self, path: str) -> MountRecord:
        entries = self.entries()
        mnt = closest_mountpoint(path, entries)
        e = entry_at(mnt, entries)
        if e is None:
            raise MountNotFoundError(f"no mount table entry at {mnt!r}")
        subvol = 0
        if e.fstype == "btrfs":
            subvol = subvolume_id(e)
            nested = self._btrfs_rootid(path)
            if nested is not None and nested != subvol:
                logger.info("%s lives in nested subvolume %d (mounted subvolume is %d)", path, nested, subvol)
                subvol = nested
        return MountRecord(
            mountpoint=mnt,
            filesystem_type=e.fstype,
            device=e.source,
            root_path=e.root,
            enclosing_subvolume_id=subvol,
        )

    def _btrfs_rootid(self, path: str) -> Optional[int]:
        if not self.runner.which("btrfs"):
            return None
        rc, out = self.runner.run(["btrfs", "inspect-internal", "rootid", path], check=False, quiet=True)
        if rc != 0:
            return None
        try:
            return int(out.strip().splitlines()[-1])
        except (ValueError, IndexError):
            return None
