"""
state.py
The backup ledger for one backup name and the cycle/level decision derived from it.

The ledger (<metadata_dir>/<name>/state) has one whitespace-separated line per
successful backup:
    <cycle_id> <backend_code> <level> <utc_timestamp> <checksum> <archive_filename>
For example:
    2312f5635ef572c t 0 1543961163 9f86d08...  home-2312f5635ef572c-L0-1543961163.tar
    2312f5635ef572c t 1 1543981163 60303ae...  home-2312f5635ef572c-L1-1543981163.tar

Next level:
- no ledger, or cycle_length entries reached -> rotate: new cycle id, level 0
- last level >= max_level                    -> level 1, same cycle
- otherwise                                  -> last level + 1, same cycle

Dependency files, kept next to the ledger, carry what the next differential dump needs:
tar-<level>.snar per level for tar, one cumulative dumpdates file for dump.
"""

from __future__ import annotations
import logging, shutil
from pathlib import Path
from typing import List, Optional

from .errors import LedgerError
from .types import Backend, Config, CycleState, LedgerEntry
from .util import ensure_dir, rnd_alnum

logger = logging.getLogger("tdsnap")

LEDGER_NAME = "state"
DUMPDATES_NAME = "dumpdates"


def parse_ledger_line(line: str, lineno: int = 0) -> LedgerEntry:
    a = line.split()
    if len(a) != 6:
        raise LedgerError(f"line {lineno}: expected 6 fields, got {len(a)}")
    try:
        return LedgerEntry(
            cycle_id=a[0],
            backend=Backend.from_code(a[1]),
            level=int(a[2]),
            utc_timestamp=int(a[3]),
            checksum=a[4],
            archive_filename=a[5],
        )
    except ValueError as e:
        raise LedgerError(f"line {lineno}: {e}") from e


class BackupStateStore:
    def __init__(self, cfg: Config, name: str):
        self.cfg = cfg
        self.name = name
        self.directory = cfg.metadata_dir / name
        self.ledger = self.directory / LEDGER_NAME

    def setup(self) -> None:
        ensure_dir(self.directory)

    def entries(self) -> List[LedgerEntry]:
        """All ledger entries; raises LedgerError on a malformed line."""
        if not self.ledger.exists():
            return []
        out = []
        with self.ledger.open("r", encoding="utf-8") as f:
            for n, line in enumerate(f, 1):
                if line.strip():
                    out.append(parse_ledger_line(line, n))
        return out

    def read(self) -> CycleState:
        logger.info("+++ Parsing the state file at %s...", self.ledger)
        if not self.ledger.exists():
            state = CycleState(cycle_id=rnd_alnum(15), level=0, rotate=True)
            logger.info("     State file is missing. Starting a new cycle with ID = %s .", state.cycle_id)
            return state
        try:
            entries = self.entries()
        except LedgerError as e:
            return self._reset(f"state file {self.ledger} is corrupt ({e})")
        if not entries:
            return self._reset(f"state file {self.ledger} is empty")

        last = entries[-1]
        logger.info(
            "     Current cycle ID is %s. The last backup at level %d was taken at %d.",
            last.cycle_id, last.level, last.utc_timestamp,
        )
        if len(entries) >= self.cfg.cycle_length:
            state = CycleState(cycle_id=rnd_alnum(15), level=0, rotate=True, entries=len(entries))
            logger.info("     Present cycle ended -- starting a new one.")
        elif last.level >= self.cfg.max_level:
            state = CycleState(last.cycle_id, 1, False, last.backend, len(entries))
            logger.info("     Max level reached -- continuing the cycle with level 1.")
        else:
            state = CycleState(last.cycle_id, last.level + 1, False, last.backend, len(entries))
            logger.info("     Continuing this cycle with level %d.", state.level)
        return state

    def verify(self, state: CycleState) -> CycleState:
        """Force a new cycle when the previous level's dependency file is gone."""
        if state.rotate or state.level == 0 or state.backend is None:
            return state
        dep = self.dependency_path(state.backend, state.level - 1)
        if dep.exists():
            return state
        return self._reset(f"level {state.level} needs {dep}, which is missing")

    def _reset(self, reason: str) -> CycleState:
        logger.warning("%s; resetting to level 0 with a new cycle", reason)
        return CycleState(cycle_id=rnd_alnum(15), level=0, rotate=True, reset_reason=reason)

    def dependency_path(self, backend: Backend, level: int) -> Path:
        if backend is Backend.DUMP:
            return self.directory / DUMPDATES_NAME
        return self.directory / f"tar-{level}.snar"

    def dependency_files(self) -> List[Path]:
        files = sorted(self.directory.glob("tar-*.snar"))
        dd = self.directory / DUMPDATES_NAME
        if dd.exists():
            files.append(dd)
        return files

    def clear_dependencies(self) -> None:
        for p in self.dependency_files():
            logger.info("removing dependency file %s", p)
            p.unlink()

    def discard(self) -> None:
        if self.ledger.exists():
            logger.info("discarding state file %s", self.ledger)
            self.ledger.unlink()

    def append(self, entry: LedgerEntry) -> None:
        ensure_dir(self.directory)
        with self.ledger.open("a", encoding="utf-8") as f:
            f.write(entry.to_line())

    def copy_ledger_to(self, directory: Path) -> Optional[Path]:
        if not self.ledger.exists():
            return None
        dest = directory / LEDGER_NAME
        shutil.copy2(self.ledger, dest)
        return dest
