"""
types.py
Dataclasses and enums used across modules: Config, MountRecord, SnapshotHandle,
LedgerEntry, CycleState.

Config and MountRecord are frozen: they are built once per run and passed around.
"""
from __future__ import annotations
import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class Config:
    # backup cycle
    cycle_length: int
    max_level: int
    max_cycles: int
    # paths
    metadata_dir: Path
    storage_root: Path
    runtime_dir: Path
    mountinfo: Path
    # snapshot
    lvm_size_mb: int
    mount_options: str
    # archive
    compressor: str
    compression_level: int
    integrity_algo: str
    # mirror
    mirror_device_uuid: str
    # runtime
    log_level: str


class SnapshotVariant(enum.Enum):
    BTRFS = "btrfs"
    LVM = "lvm"
    NONE = "none"


class Backend(enum.Enum):
    """Archive backends; the value is the one-letter code stored in the ledger."""

    TAR = "t"
    DUMP = "d"

    @classmethod
    def from_code(cls, code: str) -> "Backend":
        for b in cls:
            if b.value == code:
                return b
        raise ValueError(f"unknown backend code: {code!r}")

    @classmethod
    def from_name(cls, name: str) -> "Backend":
        return cls[name.upper()]


@dataclass(frozen=True)
class MountRecord:
    mountpoint: str
    filesystem_type: str
    device: str
    root_path: str
    enclosing_subvolume_id: int


@dataclass
class SnapshotHandle:
    variant: SnapshotVariant
    source_device: str
    source_subvolume_id: int
    mount_target: Path
    subvolume_name: Optional[str] = None
    # btrfs
    snapshot_id: Optional[int] = None
    # lvm
    volume_group: Optional[str] = None
    logical_volume: Optional[str] = None
    snapshot_volume: Optional[str] = None
    loop_device: Optional[str] = None
    loop_image: Optional[Path] = None


@dataclass(frozen=True)
class LedgerEntry:
    cycle_id: str
    backend: Backend
    level: int
    utc_timestamp: int
    checksum: str
    archive_filename: str

    def to_line(self) -> str:
        return (
            f"{self.cycle_id} {self.backend.value} {self.level} "
            f"{self.utc_timestamp} {self.checksum} {self.archive_filename}\n"
        )


@dataclass
class CycleState:
    cycle_id: str
    level: int
    rotate: bool
    backend: Optional[Backend] = None
    entries: int = 0
    reset_reason: Optional[str] = None
