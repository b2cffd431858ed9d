"""
tdsnap package
- Snapshot a directory (btrfs, LVM or plain ro mount), take a level-N incremental
  tar/dump backup of it, keep a cycle ledger and rotate retained generations.
"""
__all__ = [
    "cli", "config", "orchestrator", "mountinfo", "layers", "mounter", "snapshot", "orphans",
    "state", "rotation", "archiver", "executor", "syncer", "util", "types", "errors",
]
__version__ = "0.1.0"
