"""
config.py
Load and validate configuration from TOML (Python 3.11+ tomllib).
Search order:
  1) explicit --config path
  2) 'tdsnap.toml' next to the program
  3) /etc/tdsnap.toml
If none exists, built-in defaults are used.
"""

from __future__ import annotations
import hashlib
import tomllib
from pathlib import Path
from typing import Any, Dict
from .types import Config

PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH: str = str(PROJECT_ROOT / "tdsnap.toml")
SYSTEM_CONFIG_PATH: str = "/etc/tdsnap.toml"

COMPRESSORS = ("zstd", "pigz", "none")


def _gv(d: Dict[str, Any], path: list[str], default=None):
    cur = d
    for k in path:
        if not isinstance(cur, dict) or k not in cur:
            return default
        cur = cur[k]
    return cur


def _load_toml(path: Path) -> Dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def find_config(path_arg: str | None) -> Path | None:
    """Pick the best config path based on CLI arg and availability."""
    if path_arg:
        # User explicitly specified a config - it must exist
        p = Path(path_arg)
        if not p.exists():
            raise FileNotFoundError(f"Specified config file does not exist: {path_arg}")
        return p

    for candidate in (DEFAULT_CONFIG_PATH, SYSTEM_CONFIG_PATH):
        p = Path(candidate)
        if p.exists():
            return p
    return None


def validate_config(cfg: Config) -> Config:
    if cfg.max_level < 1:
        raise ValueError(f"backup.max_level must be >= 1, got {cfg.max_level}")
    if cfg.max_level >= cfg.cycle_length:
        raise ValueError(
            f"backup.max_level ({cfg.max_level}) must be smaller than backup.cycle_length ({cfg.cycle_length})"
        )
    if cfg.max_cycles < 1:
        raise ValueError(f"backup.max_cycles must be >= 1, got {cfg.max_cycles}")
    if cfg.compressor not in COMPRESSORS:
        raise ValueError(f"Unsupported compressor: {cfg.compressor}")
    if cfg.integrity_algo not in hashlib.algorithms_available:
        raise ValueError(f"Unsupported integrity algorithm: {cfg.integrity_algo}")
    if cfg.lvm_size_mb <= 0:
        raise ValueError(f"snapshot.lvm_size_mb must be positive, got {cfg.lvm_size_mb}")
    return cfg


def config_from_dict(cfg: Dict[str, Any]) -> Config:
    def gv(keys, default=None):
        return _gv(cfg, keys, default)

    return validate_config(
        Config(
            cycle_length=int(gv(["backup", "cycle_length"], 10)),
            max_level=int(gv(["backup", "max_level"], 1)),
            max_cycles=int(gv(["backup", "max_cycles"], 8)),
            metadata_dir=Path(gv(["paths", "metadata_dir"], "/var/lib/td-backup")),
            storage_root=Path(gv(["paths", "storage_root"], "/export/backup")),
            runtime_dir=Path(gv(["paths", "runtime_dir"], "/dev/shm")),
            mountinfo=Path(gv(["paths", "mountinfo"], "/proc/self/mountinfo")),
            lvm_size_mb=int(gv(["snapshot", "lvm_size_mb"], 500)),
            mount_options=gv(["snapshot", "mount_options"], "noexec,nosuid,nodev"),
            compressor=gv(["archive", "compressor"], "none"),
            compression_level=int(gv(["archive", "compression_level"], 3)),
            integrity_algo=gv(["integrity", "algorithm"], "sha256"),
            mirror_device_uuid=gv(["mirror", "device_uuid"], ""),
            log_level=gv(["runtime", "log_level"], "INFO"),
        )
    )


def load_config(path: Path | None) -> Config:
    if path is None:
        return config_from_dict({})
    return config_from_dict(_load_toml(path))
