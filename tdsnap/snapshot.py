"""
snapshot.py
Read-only point-in-time views of the backup target, one class per storage stack:

- BtrfsSnapshot: read-only subvolume snapshot, mounted by subvolid
- LvmSnapshot:   snapshot LV whose space comes from a loop device in RAM, so the VG
                 needs no free extents reserved in advance
- PlainMount:    no snapshot capability, a read-only mount of the raw device

Every acquisition step pushes its undo onto an ExitStack. A failed create() unwinds
what it already acquired; destroy() unwinds everything in reverse order. Undo steps
are best effort: a failing step is logged and the remaining ones still run.
"""

from __future__ import annotations
import abc, contextlib, enum, logging, os, posixpath
from pathlib import Path
from typing import Callable, Dict, List, Optional, Type

from .errors import SnapshotError, TdsnapError
from .layers import btrfs_id_of, btrfs_name_of, btrfs_subvolumes, loops_of, lv_of
from .mounter import is_mounted, mount, mount_options, umount
from .mountinfo import BTRFS_TOP_LEVEL, read_mountinfo
from .types import Config, MountRecord, SnapshotHandle, SnapshotVariant
from .util import Runner, host_identifier

logger = logging.getLogger("tdsnap")

SNAPSHOT_PREFIX = "backup-snapshot-"
TARGET_PREFIX = "backup-"

VARIANT_TOOLS: Dict[SnapshotVariant, List[str]] = {
    SnapshotVariant.BTRFS: ["btrfs"],
    SnapshotVariant.LVM: ["lvs", "lvcreate", "lvremove", "pvcreate", "pvremove", "vgextend", "vgreduce", "losetup", "dd"],
    SnapshotVariant.NONE: [],
}


class _Phase(enum.Enum):
    IDLE = "idle"
    MOUNTED = "mounted"
    DESTROYED = "destroyed"


def select_variant(record: MountRecord, runner: Runner) -> SnapshotVariant:
    if record.filesystem_type == "btrfs":
        return SnapshotVariant.BTRFS
    if lv_of(runner, record.device) is not None:
        return SnapshotVariant.LVM
    return SnapshotVariant.NONE


def mount_target_for(cfg: Config, suffix: str) -> Path:
    return cfg.runtime_dir / f"{TARGET_PREFIX}{suffix}"


class SnapshotManager(abc.ABC):
    variant: SnapshotVariant

    def __init__(
        self, cfg: Config, runner: Runner, record: MountRecord, suffix: str, orphan_suffix: Optional[str] = None
    ):
        self.cfg = cfg
        self.runner = runner
        self.record = record
        self.suffix = suffix
        # suffix of an aborted earlier run whose leftovers we may find on the way
        self.orphan_suffix = orphan_suffix
        self.handle: Optional[SnapshotHandle] = None
        self._phase = _Phase.IDLE
        self._stack: Optional[contextlib.ExitStack] = None
        self._teardown_errors: List[str] = []

    # -- lifecycle ---------------------------------------------------------

    def create(self) -> SnapshotHandle:
        if self._phase is not _Phase.IDLE:
            raise SnapshotError(f"snapshot already {self._phase.value}; create() runs once per manager")
        self.handle = SnapshotHandle(
            variant=self.variant,
            source_device=self.record.device,
            source_subvolume_id=self.record.enclosing_subvolume_id,
            mount_target=mount_target_for(self.cfg, self.suffix),
        )
        logger.info("+++ Making and mounting %s snapshot...", self.variant.value)
        stack = contextlib.ExitStack()
        try:
            self._acquire(self.handle, stack)
        except (TdsnapError, OSError) as e:
            logger.error("snapshot creation failed, releasing what was acquired: %s", e)
            stack.close()
            self._phase = _Phase.DESTROYED
            msg = f"{self.variant.value} snapshot creation failed: {e}"
            if self._teardown_errors:
                msg += f" (teardown incomplete: {'; '.join(self._teardown_errors)})"
            raise SnapshotError(msg) from e
        self._stack = stack
        self._phase = _Phase.MOUNTED
        logger.info("--- snapshot mounted at %s", self.handle.mount_target)
        return self.handle

    def destroy(self) -> None:
        if self._phase is not _Phase.MOUNTED:
            return
        logger.info("+++ Dismantling %s snapshot...", self.variant.value)
        assert self._stack is not None
        self._stack.close()
        self._stack = None
        self._phase = _Phase.DESTROYED
        if self._teardown_errors:
            raise SnapshotError(f"teardown incomplete: {'; '.join(self._teardown_errors)}")
        logger.info("--- %s snapshot destroyed", self.variant.value)

    def __enter__(self) -> SnapshotHandle:
        return self.create()

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.destroy()
            return False
        try:
            self.destroy()
        except SnapshotError as e:
            logger.error("%s", e)
        return False

    # -- helpers -------------------------------------------------------------

    @abc.abstractmethod
    def _acquire(self, h: SnapshotHandle, stack: contextlib.ExitStack) -> None:
        ...

    def _push(self, stack: contextlib.ExitStack, desc: str, fn: Callable[[], None]) -> None:
        def undo():
            try:
                fn()
            except (TdsnapError, OSError) as e:
                logger.error("teardown step failed (%s): %s", desc, e)
                self._teardown_errors.append(f"{desc}: {e}")

        stack.callback(undo)

    def _make_target(self, h: SnapshotHandle, stack: contextlib.ExitStack) -> None:
        t = h.mount_target
        if t.exists():
            logger.warning("mount target %s already exists (left over from an aborted run?)", t)
            if is_mounted(t, (e.mountpoint for e in read_mountinfo(self.cfg.mountinfo))):
                umount(self.runner, t)
        else:
            t.mkdir(parents=True)
        self._push(stack, f"rmdir {t}", t.rmdir)

    def _mount(self, stack: contextlib.ExitStack, device: str, target: Path, options: str) -> None:
        mount(self.runner, device, target, options)
        self._push(stack, f"umount {target}", lambda: umount(self.runner, target))


class BtrfsSnapshot(SnapshotManager):
    variant = SnapshotVariant.BTRFS

    def __init__(self, cfg, runner, record, suffix, orphan_suffix=None, salt: Optional[str] = None):
        super().__init__(cfg, runner, record, suffix, orphan_suffix)
        self.snap_dir = f"_{salt or host_identifier()}_backup_snapshots"

    def _whole_options(self) -> str:
        return mount_options(self.cfg.mount_options, extra=[f"subvolid={BTRFS_TOP_LEVEL}"])

    def _acquire(self, h: SnapshotHandle, stack: contextlib.ExitStack) -> None:
        r, t = self.runner, h.mount_target
        self._make_target(h, stack)

        # The entire device, so every subvolume is reachable by path.
        self._mount(stack, h.source_device, t, self._whole_options())

        if h.source_subvolume_id != BTRFS_TOP_LEVEL:
            h.subvolume_name = btrfs_name_of(r, t, h.source_subvolume_id)
            if h.subvolume_name is None:
                raise SnapshotError(f"subvolume id {h.source_subvolume_id} not found on {h.source_device}")
        label = (h.subvolume_name or f"id{BTRFS_TOP_LEVEL}").replace("/", "_")
        snap_rel = f"{self.snap_dir}/{SNAPSHOT_PREFIX}{label}-{self.suffix}"

        existing = set(btrfs_subvolumes(r, t).values())
        if self.snap_dir not in existing:
            r.run(["btrfs", "subvolume", "create", str(t / self.snap_dir)])
        stale = {snap_rel}
        if self.orphan_suffix:
            stale |= {
                p for p in existing
                if p.startswith(f"{self.snap_dir}/{SNAPSHOT_PREFIX}") and p.endswith(f"-{self.orphan_suffix}")
            }
        for p in sorted(stale & existing):
            logger.warning("removing stale snapshot %s", p)
            r.run(["btrfs", "subvolume", "delete", "-C", str(t / p)])

        source = t / h.subvolume_name if h.subvolume_name else t
        r.run(["btrfs", "subvolume", "snapshot", "-r", str(source), str(t / snap_rel)])

        def delete_snapshot():
            if h.snapshot_id is not None:
                r.run(["btrfs", "subvolume", "delete", "-C", "--subvolid", str(h.snapshot_id), str(t)])
            else:
                r.run(["btrfs", "subvolume", "delete", "-C", str(t / snap_rel)])

        self._push(stack, f"delete snapshot {snap_rel}", delete_snapshot)
        h.snapshot_id = btrfs_id_of(r, t, snap_rel)
        if h.snapshot_id is None:
            raise SnapshotError(f"cannot find id of new snapshot {snap_rel}")

        umount(r, t)
        self._push(stack, f"remount {h.source_device}", lambda: mount(r, h.source_device, t, self._whole_options()))

        ro = mount_options(self.cfg.mount_options, ro=True, extra=[f"subvolid={h.snapshot_id}"])
        self._mount(stack, h.source_device, t, ro)


class LvmSnapshot(SnapshotManager):
    variant = SnapshotVariant.LVM

    def _acquire(self, h: SnapshotHandle, stack: contextlib.ExitStack) -> None:
        r = self.runner
        lvvg = lv_of(r, h.source_device)
        if lvvg is None:
            raise SnapshotError(f"{h.source_device} is not a logical volume")
        h.logical_volume, h.volume_group = lvvg
        vg = h.volume_group
        h.snapshot_volume = f"{SNAPSHOT_PREFIX}{vg}_{h.logical_volume}-{self.suffix}"
        h.loop_image = self.cfg.runtime_dir / f"{h.snapshot_volume}.img"
        img = h.loop_image

        self._make_target(h, stack)

        if img.exists():
            logger.warning("removing stale snapshot image %s", img)
            for loop in loops_of(r, img):
                r.run(["losetup", "-d", loop])
            img.unlink()

        r.run(["dd", "if=/dev/zero", f"of={img}", "bs=1M", f"count={self.cfg.lvm_size_mb}"])
        self._push(stack, f"rm {img}", lambda: r.run(["rm", "-f", str(img)]))

        _, out = r.run(["losetup", "--show", "-f", str(img)])
        loops = [line.strip() for line in out.splitlines() if line.strip().startswith("/dev/")]
        if not loops:
            raise SnapshotError(f"losetup did not report a loop device for {img}")
        loop = h.loop_device = loops[-1]
        self._push(stack, f"detach {loop}", lambda: r.run(["losetup", "-d", loop]))

        r.run(["pvcreate", "-y", loop])
        self._push(stack, f"pvremove {loop}", lambda: r.run(["pvremove", "-y", loop]))

        r.run(["vgextend", "-y", vg, loop])
        self._push(stack, f"vgreduce {vg} {loop}", lambda: r.run(["vgreduce", "-y", vg, loop]))

        snap = f"{vg}/{h.snapshot_volume}"
        r.run(["lvcreate", "-y", "-p", "r", "-l", "100%PVS", "-n", h.snapshot_volume,
               "-s", f"{vg}/{h.logical_volume}", loop])
        self._push(stack, f"lvremove {snap}", lambda: r.run(["lvremove", "-y", snap]))

        ro = mount_options(self.cfg.mount_options, self.record.filesystem_type, ro=True)
        self._mount(stack, f"/dev/{snap}", h.mount_target, ro)


class PlainMount(SnapshotManager):
    variant = SnapshotVariant.NONE

    def _acquire(self, h: SnapshotHandle, stack: contextlib.ExitStack) -> None:
        self._make_target(h, stack)
        self._mount(stack, h.source_device, h.mount_target, mount_options(self.cfg.mount_options, ro=True))


VARIANTS: Dict[SnapshotVariant, Type[SnapshotManager]] = {
    SnapshotVariant.BTRFS: BtrfsSnapshot,
    SnapshotVariant.LVM: LvmSnapshot,
    SnapshotVariant.NONE: PlainMount,
}


def snapshot_manager(
    variant: SnapshotVariant,
    cfg: Config,
    runner: Runner,
    record: MountRecord,
    suffix: str,
    orphan_suffix: Optional[str] = None,
) -> SnapshotManager:
    return VARIANTS[variant](cfg, runner, record, suffix, orphan_suffix)


def snapshot_source_path(record: MountRecord, handle: SnapshotHandle, path: str) -> Path:
    """Where path (on the live filesystem) appears inside the mounted snapshot."""
    below = os.path.relpath(path, record.mountpoint)
    inner = posixpath.normpath(posixpath.join(record.root_path, below))
    if handle.subvolume_name:
        prefix = "/" + handle.subvolume_name.strip("/")
        if inner == prefix:
            inner = "/"
        elif inner.startswith(prefix + "/"):
            inner = inner[len(prefix):]
    rel = inner.lstrip("/")
    return handle.mount_target / rel if rel else handle.mount_target
