"""
archiver.py
Functions to:
- Pick the archive backend for a fresh cycle (dump for whole ext* filesystems, else tar)
- Build the tar(1) / dump(8) command lines
- Select the compressor command (zstd/pigz/none)
- Name archive files
Note: archives go to stdout; the executor streams them to storage while hashing.
"""

from __future__ import annotations
import logging, shlex
from pathlib import Path
from typing import Optional
from .types import Backend, Config, MountRecord

logger = logging.getLogger("tdsnap")

DUMP_FSTYPES = ("ext2", "ext3", "ext4")

EXTENSIONS = {Backend.TAR: "tar", Backend.DUMP: "dump"}
COMPRESSED_EXT = {"zstd": ".zst", "pigz": ".gz", "none": ""}


def choose_backend(
    preference: Optional[Backend], record: MountRecord, is_boundary: bool, dump_available: bool
) -> Backend:
    """
    Backend for level 0 of a new cycle.
    dump only sees whole filesystems, so it needs the target to be the mountpoint itself.
    """
    if preference is Backend.TAR:
        return Backend.TAR
    reasons = []
    if not is_boundary:
        reasons.append("target is not a mountpoint")
    if record.filesystem_type not in DUMP_FSTYPES:
        reasons.append(f"filesystem is {record.filesystem_type}, not ext2/3/4")
    if not dump_available:
        reasons.append("dump is not installed")
    if not reasons:
        return Backend.DUMP
    if preference is Backend.DUMP:
        logger.warning("cannot use dump (%s); falling back to tar", "; ".join(reasons))
    return Backend.TAR


def tar_cmd(source: Path, snar: Path) -> str:
    return (
        f"tar --create --file=- --listed-incremental={shlex.quote(str(snar))} "
        "--one-file-system --numeric-owner --acls --xattrs --xattrs-include='*' "
        f"-C {shlex.quote(str(source))} ."
    )


def dump_cmd(source: Path, level: int, dumpdates: Path) -> str:
    return f"dump -{level} -u -D {shlex.quote(str(dumpdates))} -f - {shlex.quote(str(source))}"


def compressor_cmd(cfg: Config) -> Optional[str]:
    lvl = str(cfg.compression_level)
    if cfg.compressor == "zstd":
        return f"zstd -T0 -{lvl} -q -c"
    if cfg.compressor == "pigz":
        return f"pigz -{lvl} -c"
    if cfg.compressor == "none":
        return None
    raise ValueError("Unsupported compressor")


def pipeline(capture: str, cfg: Config) -> str:
    comp = compressor_cmd(cfg)
    return f"{capture} | {comp}" if comp else capture


def archive_filename(name: str, cycle_id: str, level: int, ts: int, backend: Backend, compressor: str) -> str:
    return f"{name}-{cycle_id}-L{level}-{ts}.{EXTENSIONS[backend]}{COMPRESSED_EXT[compressor]}"
