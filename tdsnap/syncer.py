"""
syncer.py
Mirror the whole storage root onto a second device identified by filesystem UUID:
mount it, rsync -aAX --delete, flush, unmount. Teardown runs on every exit path.
"""

from __future__ import annotations
import contextlib, logging
from pathlib import Path

from .errors import EnvironmentCheckError
from .mounter import mount, mount_options, umount
from .types import Config
from .util import Runner, missing_tools, rnd_alnum

logger = logging.getLogger("tdsnap")


def rsync_cmd(src: Path, dst: Path) -> list[str]:
    return ["rsync", "-aAX", "--delete", "--exclude=lost+found", f"{src}/", f"{dst}/"]


def mirror(cfg: Config, runner: Runner) -> None:
    if not cfg.mirror_device_uuid:
        raise EnvironmentCheckError("mirror.device_uuid is not configured")
    missing = missing_tools(runner, ["mount", "umount", "rsync"])
    if missing:
        raise EnvironmentCheckError(f"required tools missing: {', '.join(missing)}")
    if not cfg.storage_root.is_dir():
        raise EnvironmentCheckError(f"storage root {cfg.storage_root} does not exist")

    dst = cfg.runtime_dir / f"backup-mirror-{rnd_alnum(15)}"
    device = f"/dev/disk/by-uuid/{cfg.mirror_device_uuid}"
    with contextlib.ExitStack() as stack:
        dst.mkdir(parents=True)
        stack.callback(dst.rmdir)
        mount(runner, device, dst, mount_options(cfg.mount_options))
        stack.callback(umount, runner, dst)
        runner.run(rsync_cmd(cfg.storage_root, dst))
        runner.run(["sync"])
    logger.info("--- mirror of %s on %s is up to date", cfg.storage_root, device)
