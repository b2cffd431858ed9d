"""
executor.py
Run the archive backend against the snapshot and store the result in generation 0:
  tar|dump [| compressor] -> <gen0>/<archive>   (hashed while streaming)
then copy the dependency file the next differential dump will need next to it.
"""

from __future__ import annotations
import logging, shutil
from dataclasses import dataclass
from pathlib import Path

from .archiver import archive_filename, dump_cmd, pipeline, tar_cmd
from .errors import BackupError
from .state import BackupStateStore
from .types import Backend, Config
from .util import Runner

logger = logging.getLogger("tdsnap")


@dataclass(frozen=True)
class ArchiveResult:
    filename: str
    checksum: str
    path: Path
    dependency: Path


class BackupExecutor:
    def __init__(self, cfg: Config, runner: Runner, store: BackupStateStore):
        self.cfg = cfg
        self.runner = runner
        self.store = store

    def _prepare_tar(self, level: int) -> Path:
        snar = self.store.dependency_path(Backend.TAR, level)
        if snar.exists():
            if level == 0:
                logger.warning("removing stale incremental file %s", snar)
            else:
                logger.info("replacing incremental file %s from the previous level %d run", snar, level)
            snar.unlink()
        if level > 0:
            # tar rewrites the listed-incremental file in place
            prev = self.store.dependency_path(Backend.TAR, level - 1)
            shutil.copy2(prev, snar)
        return snar

    def _prepare_dump(self, level: int) -> Path:
        dumpdates = self.store.dependency_path(Backend.DUMP, level)
        if level == 0 and dumpdates.exists():
            logger.warning("removing stale dumpdates file %s", dumpdates)
            dumpdates.unlink()
        if not dumpdates.exists():
            dumpdates.touch()
        return dumpdates

    def capture_command(self, backend: Backend, level: int, source: Path) -> tuple[str, Path]:
        if backend is Backend.TAR:
            dep = self._prepare_tar(level)
            return tar_cmd(source, dep), dep
        dep = self._prepare_dump(level)
        return dump_cmd(source, level, dep), dep

    def execute(
        self, backend: Backend, level: int, cycle_id: str, ts: int, source: Path, gen0: Path
    ) -> ArchiveResult:
        filename = archive_filename(self.store.name, cycle_id, level, ts, backend, self.cfg.compressor)
        dest = gen0 / filename
        capture, dep = self.capture_command(backend, level, source)
        logger.info("+++ Level %d %s backup of %s -> %s", level, backend.name.lower(), source, dest)
        try:
            rc, checksum = self.runner.stream(pipeline(capture, self.cfg), dest, self.cfg.integrity_algo)
        except Exception as e:
            dest.unlink(missing_ok=True)
            raise BackupError(f"writing {dest} failed: {e}; partial archive removed") from e
        except BaseException:
            dest.unlink(missing_ok=True)
            raise
        if rc != 0:
            dest.unlink(missing_ok=True)
            raise BackupError(f"{backend.name.lower()} exited with rc={rc}; partial archive removed")
        if dep.exists():
            shutil.copy2(dep, gen0 / dep.name)
        else:
            logger.warning("dependency file %s was not produced", dep)
        logger.info("--- %s %s", checksum, filename)
        return ArchiveResult(filename=filename, checksum=checksum, path=dest, dependency=dep)
