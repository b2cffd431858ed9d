"""
util.py
Cross-cutting utilities:
- Runner: process execution (list-of-args or bash -lc string), injected into every
  component so tests can substitute a fake host
- Small helpers: timestamps, run ids, host identity, path/name sanitizing, ensure_dir
"""

from __future__ import annotations
import hashlib, logging, os, re, secrets, shlex, shutil, subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence, Tuple, Union

from .errors import CommandError

logger = logging.getLogger("tdsnap")

Cmd = Union[str, Sequence[str]]

STREAM_CHUNK = 1024 * 1024


def _argv(cmd: Cmd) -> list[str]:
    # Strings need a shell for pipes between archiver and compressor.
    if isinstance(cmd, str):
        return ["/bin/bash", "-o", "pipefail", "-c", cmd]
    return [str(c) for c in cmd]


def _display(cmd: Cmd) -> str:
    return cmd if isinstance(cmd, str) else " ".join(shlex.quote(str(c)) for c in cmd)


class Runner:
    """Runs external tools. Every call is echoed before it executes."""

    def run(self, cmd: Cmd, check: bool = True, quiet: bool = False) -> Tuple[int, str]:
        """
        Execute a command and capture stdout+stderr.
        - Returns (rc, output_str).
        - With check=True a non-zero rc raises CommandError.
        """
        if not quiet:
            logger.info("~~> %s", _display(cmd))
        rc, out = self._execute(cmd)
        if check and rc != 0:
            raise CommandError(cmd, rc, out)
        return rc, out

    def _execute(self, cmd: Cmd) -> Tuple[int, str]:
        try:
            proc = subprocess.run(
                _argv(cmd), stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
            )
        except FileNotFoundError as e:
            return 127, str(e)
        return proc.returncode, proc.stdout.decode("utf-8", "replace")

    def stream(self, cmd: Cmd, dest: Path, algo: str = "sha256") -> Tuple[int, str]:
        """
        Run cmd and write its stdout to dest while hashing it.
        Returns (rc, hexdigest). stderr goes straight to the operator's terminal.
        """
        logger.info("~~> %s > %s", _display(cmd), dest)
        h = hashlib.new(algo)
        with open(dest, "wb") as out:
            proc = subprocess.Popen(_argv(cmd), stdout=subprocess.PIPE)
            try:
                for chunk in iter(lambda: proc.stdout.read(STREAM_CHUNK), b""):
                    out.write(chunk)
                    h.update(chunk)
            except BaseException:
                # the producer may still be reading the snapshot
                proc.kill()
                proc.wait()
                raise
            finally:
                proc.stdout.close()
            rc = proc.wait()
        return rc, h.hexdigest()

    def which(self, name: str) -> bool:
        """Check if command exists silently."""
        return bool(shutil.which(name))


def missing_tools(runner: Runner, names: Sequence[str]) -> list[str]:
    return [n for n in names if not runner.which(n)]


def utc_timestamp() -> int:
    return int(datetime.now(timezone.utc).timestamp())


def rnd_alnum(length: int = 15) -> str:
    """Random lower-case hex string used for run and cycle ids."""
    if length <= 0:
        raise ValueError("length must be positive")
    return secrets.token_hex((length + 1) // 2)[:length]


def ensure_dir(p: Path):
    """Create directory with better error reporting."""
    try:
        p.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        raise PermissionError(f"Cannot create directory {p} - insufficient permissions")
    except OSError as e:
        raise OSError(f"Cannot create directory {p}: {e}")


def host_identifier(prefer: str = "machine-id") -> str:
    """Return a stable identifier for the current machine (machine-id, DMI UUID, or hostname)."""
    if prefer == "machine-id":
        for p in (Path("/etc/machine-id"), Path("/sys/class/dmi/id/product_uuid")):
            try:
                s = p.read_text().strip()
            except OSError:
                continue
            if s:
                return s
    return os.uname().nodename


def hostname() -> str:
    return os.uname().nodename


def canonical_path(path: str) -> str:
    """Absolute, symlink-free path; a leading '-' can never be read as an option."""
    return os.path.realpath(os.path.abspath(path.rstrip("/") or "/"))


def sanitize_name(path: str) -> str:
    """Default backup name for a path: '/' -> 'root', '/home/a b' -> 'home_a_b'."""
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", path).strip("_")
    return name or "root"


def is_relative_to(path: str, base: str) -> bool:
    if base == "/":
        return path.startswith("/")
    return path == base or path.startswith(base.rstrip("/") + "/")
