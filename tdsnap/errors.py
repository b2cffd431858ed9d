"""Error hierarchy for tdsnap."""
from __future__ import annotations


class TdsnapError(RuntimeError):
    """Base exception for backup run failures."""


class EnvironmentCheckError(TdsnapError):
    """A required tool, path or mount is missing; raised before anything is acquired."""


class MountNotFoundError(EnvironmentCheckError):
    """No mount table entry covers the path, not even '/'."""


class CommandError(TdsnapError):
    def __init__(self, argv, returncode: int, output: str = ""):
        self.argv = argv
        self.returncode = returncode
        self.output = output
        cmd = argv if isinstance(argv, str) else " ".join(str(a) for a in argv)
        msg = f"command failed (rc={returncode}): {cmd}"
        if output.strip():
            msg += f": {output.strip().splitlines()[-1]}"
        super().__init__(msg)


class SnapshotError(TdsnapError):
    """Creating or destroying a snapshot failed."""


class LedgerError(TdsnapError):
    """The ledger file could not be parsed."""


class BackupError(TdsnapError):
    """The archive backend failed."""


class LockError(TdsnapError):
    """Another run holds the lock for this backup name."""


__all__ = [
    "TdsnapError",
    "EnvironmentCheckError",
    "MountNotFoundError",
    "CommandError",
    "SnapshotError",
    "LedgerError",
    "BackupError",
    "LockError",
]
