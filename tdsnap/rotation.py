"""
rotation.py
Generation directories under <storage_root>/<host>/<name>/: 0 is the cycle being
written, max_cycles the oldest kept.

A rotation renumbers existing generations oldest-to-newest to rank+1 (dropping those
that would pass max_cycles) and creates an empty 0. On an intact layout that is the
plain "delete the oldest, shift the rest up by one". After a run that died mid-shift,
gaps are closed instead of widened, so re-running converges.
"""

from __future__ import annotations
import logging, shutil
from pathlib import Path
from typing import List

from .util import ensure_dir

logger = logging.getLogger("tdsnap")


class BackupRotator:
    def __init__(self, root: Path, max_cycles: int):
        self.root = Path(root)
        self.max_cycles = max_cycles

    def generation(self, n: int) -> Path:
        return self.root / str(n)

    def generations(self) -> List[int]:
        if not self.root.is_dir():
            return []
        return sorted(int(p.name) for p in self.root.iterdir() if p.is_dir() and p.name.isdigit())

    def rotate(self) -> Path:
        gen0 = self.generation(0)
        if gen0.is_dir() and not any(gen0.iterdir()):
            logger.info("generation 0 at %s is empty; nothing to rotate", gen0)
            return gen0

        ensure_dir(self.root)
        plan = [(n, rank + 1) for rank, n in enumerate(self.generations())]
        keep = [(n, t) for n, t in plan if t <= self.max_cycles]
        for n, t in plan:
            if t > self.max_cycles:
                logger.info("removing expired generation %s", self.generation(n))
                shutil.rmtree(self.generation(n))
        # Gaps close downwards (ascending), the contiguous head shifts up (oldest first),
        # so a rename never lands on a directory that is still to be moved.
        for n, t in keep:
            if t < n:
                self._shift(n, t)
        for n, t in reversed(keep):
            if t > n:
                self._shift(n, t)
        gen0.mkdir()
        logger.info("created generation 0 at %s", gen0)
        return gen0

    def _shift(self, n: int, target: int) -> None:
        logger.info("shifting generation %d -> %d", n, target)
        self.generation(n).rename(self.generation(target))
