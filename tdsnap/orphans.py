"""
orphans.py
Clean up after a run that died between snapshot create and destroy.

Each run leaves an in-progress marker (<metadata_dir>/<name>/inprogress) holding its
run suffix until its snapshot is gone. If the marker is still there at startup, the
previous run for this backup name was aborted and its artifacts are removed:
- read-only views still mounted at <runtime_dir>/backup-<suffix>
- the LVM snapshot LV, PV and loop device backed by <runtime_dir>/backup-snapshot-*-<suffix>.img

Artifacts of other backup names (which may be running right now) are never touched.
Idempotent; every step is best effort.
"""

from __future__ import annotations
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

from .errors import TdsnapError
from .layers import all_lvs, loops_of, vg_of_pv
from .mountinfo import read_mountinfo
from .snapshot import SNAPSHOT_PREFIX, mount_target_for
from .types import Config
from .util import Runner, is_relative_to

logger = logging.getLogger("tdsnap")


def _try(runner: Runner, cmd: List[str]) -> bool:
    try:
        runner.run(cmd)
        return True
    except TdsnapError as e:
        logger.warning("orphan cleanup step failed: %s", e)
        return False


def read_marker(marker: Path) -> Optional[str]:
    try:
        suffix = marker.read_text().strip()
    except FileNotFoundError:
        return None
    return suffix or None


@contextmanager
def in_progress(marker: Path, suffix: str) -> Iterator[None]:
    """Mark a run as in progress; the marker survives if the body raises."""
    marker.write_text(suffix + "\n")
    yield
    marker.unlink(missing_ok=True)


def orphan_mounts(cfg: Config, suffix: str) -> List[str]:
    target = str(mount_target_for(cfg, suffix))
    found = [e.mountpoint for e in read_mountinfo(cfg.mountinfo) if is_relative_to(e.mountpoint, target)]
    # deepest first; stacked mounts on one point, topmost first
    return sorted(reversed(found), key=lambda m: m.count("/"), reverse=True)


def cleanup_mounts(cfg: Config, runner: Runner, suffix: str) -> None:
    for mp in orphan_mounts(cfg, suffix):
        logger.warning("unmounting orphaned mount %s", mp)
        _try(runner, ["umount", "-v", mp])
    d = mount_target_for(cfg, suffix)
    if d.is_dir():
        try:
            d.rmdir()
            logger.warning("removed orphaned mountpoint %s", d)
        except OSError as e:
            logger.warning("cannot remove %s: %s", d, e)


def cleanup_loop_images(cfg: Config, runner: Runner, suffix: str) -> None:
    images = sorted(p for p in cfg.runtime_dir.glob(f"{SNAPSHOT_PREFIX}*-{suffix}.img") if p.is_file())
    if not images:
        return
    lvs = all_lvs(runner)
    for img in images:
        snap = img.stem
        logger.warning("dismantling orphaned LVM snapshot %s", snap)
        for lv, vg in lvs:
            if lv == snap:
                _try(runner, ["lvremove", "-y", f"{vg}/{lv}"])
        for loop in loops_of(runner, img):
            vg = vg_of_pv(runner, loop)
            if vg:
                _try(runner, ["vgreduce", "-y", vg, loop])
            _try(runner, ["pvremove", "-y", loop])
            _try(runner, ["losetup", "-d", loop])
        _try(runner, ["rm", "-f", str(img)])


def cleanup_orphans(cfg: Config, runner: Runner, marker: Path) -> Optional[str]:
    """Remove what an aborted run left behind. Returns that run's suffix, if any."""
    suffix = read_marker(marker)
    if suffix is None:
        return None
    logger.warning("previous run %s did not finish; cleaning up its leftovers", suffix)
    cleanup_mounts(cfg, runner, suffix)
    if Path(cfg.runtime_dir).is_dir():
        cleanup_loop_images(cfg, runner, suffix)
    marker.unlink(missing_ok=True)
    return suffix
