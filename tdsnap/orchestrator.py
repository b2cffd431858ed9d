"""
orchestrator.py
Coordinates one backup run, strictly in sequence:
  - Check tools, target and storage root (nothing acquired yet)
  - Initial setup of the metadata dir, per-name lock, leftovers of an aborted run
  - Resolve topology, pick the snapshot variant, read the ledger
  - snapshot create -> rotate (new cycle) -> archive -> ledger append -> snapshot destroy
"""

from __future__ import annotations
import fcntl, logging, os
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .archiver import choose_backend
from .errors import EnvironmentCheckError, LockError
from .executor import BackupExecutor
from .mountinfo import MountTopologyResolver
from .orphans import cleanup_orphans, in_progress
from .rotation import BackupRotator
from .snapshot import VARIANT_TOOLS, select_variant, snapshot_manager, snapshot_source_path
from .state import BackupStateStore
from .types import Backend, Config, CycleState, LedgerEntry, MountRecord, SnapshotVariant
from .util import Runner, ensure_dir, hostname, missing_tools, rnd_alnum, utc_timestamp

logger = logging.getLogger("tdsnap")

BASE_TOOLS = ["mount", "umount", "tar"]
MARKER_NAME = "inprogress"


@dataclass(frozen=True)
class BackupRequest:
    path: str
    name: str
    preference: Optional[Backend] = None
    plan_only: bool = False


def layout_root(cfg: Config, name: str) -> Path:
    return cfg.storage_root / hostname() / name


def check_environment(cfg: Config, runner: Runner, req: BackupRequest) -> None:
    missing = missing_tools(runner, BASE_TOOLS)
    if missing:
        raise EnvironmentCheckError(f"required tools missing: {', '.join(missing)}")
    if not os.path.isdir(req.path) or not os.access(req.path, os.R_OK | os.X_OK):
        raise EnvironmentCheckError(
            f"Can not access directory {req.path!r}. Does it exist and have proper permissions?"
        )
    if not req.plan_only and not cfg.storage_root.is_dir():
        raise EnvironmentCheckError(f"storage root {cfg.storage_root} does not exist (is it mounted?)")


def setup_metadata_dir(cfg: Config, runner: Runner, resolver: MountTopologyResolver) -> None:
    """Create the metadata dir once; on btrfs as its own subvolume."""
    if cfg.metadata_dir.is_dir():
        return
    logger.info("+++ Creating metadata directory %s...", cfg.metadata_dir)
    ensure_dir(cfg.metadata_dir.parent)
    record = resolver.resolve(str(cfg.metadata_dir.parent))
    if record.filesystem_type == "btrfs" and runner.which("btrfs"):
        runner.run(["btrfs", "subvolume", "create", str(cfg.metadata_dir)])
    else:
        ensure_dir(cfg.metadata_dir)


@contextmanager
def backup_lock(path: Path) -> Iterator[None]:
    """Advisory per-name lock; a second run for the same name fails fast."""
    with open(path, "a") as f:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise LockError(f"another backup run holds {path}")
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)


def is_mount_boundary(record: MountRecord, path: str) -> bool:
    return path == record.mountpoint and record.root_path == "/"


def decide_backend(req: BackupRequest, state: CycleState, record: MountRecord, runner: Runner) -> Backend:
    if state.rotate or state.backend is None:
        return choose_backend(req.preference, record, is_mount_boundary(record, req.path), runner.which("dump"))
    if req.preference is not None and req.preference is not state.backend:
        logger.warning(
            "cycle %s was started with %s; ignoring -t %s until the next cycle",
            state.cycle_id, state.backend.name.lower(), req.preference.name.lower(),
        )
    return state.backend


def print_plan(req: BackupRequest, record: MountRecord, variant: SnapshotVariant, state: CycleState) -> None:
    """Human-readable summary for --plan."""
    print(f"Backup target:             {req.path}")
    print(f"Backup name:               {req.name}")
    print(f"Closest mountpoint:        {record.mountpoint}")
    print(f"Path within parent device: {record.root_path}")
    print(f"Device:                    {record.device} ({record.filesystem_type})")
    if record.enclosing_subvolume_id:
        print(f"Parent subvolume ID:       {record.enclosing_subvolume_id}")
    print(f"Snapshots:                 {variant.value}")
    if state.rotate:
        why = state.reset_reason or "new cycle"
        print(f"Next backup:               level 0, cycle {state.cycle_id} ({why}, generations rotate)")
    else:
        print(f"Next backup:               level {state.level}, cycle {state.cycle_id} ({state.backend.name.lower()})")


def run_backup(cfg: Config, req: BackupRequest, runner: Optional[Runner] = None) -> int:
    runner = runner or Runner()
    resolver = MountTopologyResolver(runner, cfg.mountinfo)
    check_environment(cfg, runner, req)

    record = resolver.resolve(req.path)
    variant = select_variant(record, runner)
    missing = missing_tools(runner, VARIANT_TOOLS[variant])
    if missing:
        raise EnvironmentCheckError(f"{variant.value} snapshots need: {', '.join(missing)}")

    store = BackupStateStore(cfg, req.name)
    if req.plan_only:
        print_plan(req, record, variant, store.verify(store.read()))
        return 0

    setup_metadata_dir(cfg, runner, resolver)
    store.setup()
    with backup_lock(cfg.metadata_dir / f"{req.name}.lock"):
        marker = store.directory / MARKER_NAME
        orphan = cleanup_orphans(cfg, runner, marker)
        state = store.verify(store.read())

        ts = utc_timestamp()
        suffix = f"{ts}-{rnd_alnum(15)}"
        logger.info("Timestamp: %d", ts)
        logger.info("Backup target: %s", req.path)
        logger.info("Closest mountpoint: %s", record.mountpoint)
        logger.info("Path within parent device: %s", record.root_path)
        logger.info("Device: %s (%s)", record.device, record.filesystem_type)
        logger.info("Snapshots: %s", variant.value)

        rotator = BackupRotator(layout_root(cfg, req.name), cfg.max_cycles)
        manager = snapshot_manager(variant, cfg, runner, record, suffix, orphan)
        with in_progress(marker, suffix), manager as handle:
            source = snapshot_source_path(record, handle, req.path)
            if state.rotate:
                # The finished cycle's ledger already sits in its generation directory.
                store.discard()
                store.clear_dependencies()
                rotator.rotate()
            gen0 = rotator.generation(0)
            ensure_dir(gen0)

            backend = decide_backend(req, state, record, runner)
            result = BackupExecutor(cfg, runner, store).execute(
                backend, state.level, state.cycle_id, ts, source, gen0
            )
            store.append(LedgerEntry(state.cycle_id, backend, state.level, ts, result.checksum, result.filename))
            store.copy_ledger_to(gen0)
    logger.info("[ok] level %d backup of %s finished.", state.level, req.path)
    return 0
