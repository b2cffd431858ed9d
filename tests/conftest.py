"""
Pytest configuration and shared fixtures.

FakeHost stands in for the machine: it models mounts, btrfs subvolumes, loop devices,
PVs, VG membership, LVs and image files, records every command, and can make the
n-th call of any command fail.
"""
import hashlib
import re
import shlex
from pathlib import Path

import pytest

from tdsnap.config import config_from_dict
from tdsnap.util import Runner


class FakeHost(Runner):
    def __init__(self):
        self.calls = []
        self.missing = set()
        self.failures = {}
        self._seen = {}
        self.mounts = []
        self.subvolumes = {256: "@", 257: "@home", 258: "@data"}
        self.next_subvol = 300
        self.rootids = {}
        self.lv_devices = {"/dev/mapper/vg0-root": ("root", "vg0")}
        self.lvs = {("vg0", "root")}
        self.vg_members = {"vg0": {"/dev/sda2"}}
        self.pvs = {"/dev/sda2"}
        self.loops = {}
        self.next_loop = 0
        self.files = set()
        self.archive_bytes = b"archive-bytes"
        self.stream_rc = 0
        self.stream_error = None
        self.streams = []

    # -- Runner interface ----------------------------------------------------

    def which(self, name):
        return name not in self.missing

    def fail(self, prefix, nth=1):
        """Make the nth command starting with prefix fail (once)."""
        self.failures[prefix] = nth

    def _execute(self, cmd):
        argv = ["bash", "-c", cmd] if isinstance(cmd, str) else [str(c) for c in cmd]
        self.calls.append(argv)
        joined = " ".join(argv)
        for prefix, nth in list(self.failures.items()):
            if joined.startswith(prefix):
                self._seen[prefix] = self._seen.get(prefix, 0) + 1
                if self._seen[prefix] == nth:
                    return 1, f"{prefix}: injected failure"
        handler = getattr(self, "_cmd_" + argv[0], None)
        if handler is None:
            return 0, ""
        return handler(argv[1:])

    def stream(self, cmd, dest, algo="sha256"):
        self.streams.append(cmd)
        m = re.search(r"--listed-incremental=(\S+)", cmd)
        if m:
            snar = Path(shlex.split(m.group(1))[0])
            with open(snar, "a") as f:
                f.write("snar\n")
        m = re.search(r" -D (\S+)", cmd)
        if m:
            with open(shlex.split(m.group(1))[0], "a") as f:
                f.write("dumpdates\n")
        data = self.archive_bytes if self.stream_rc == 0 else self.archive_bytes[:3]
        Path(dest).write_bytes(data)
        if self.stream_error is not None:
            raise self.stream_error
        return self.stream_rc, hashlib.new(algo, data).hexdigest()

    # -- state ------------------------------------------------------------------

    def inventory(self):
        return (
            sorted(self.mounts),
            sorted(self.loops.items()),
            sorted(self.pvs),
            {vg: sorted(m) for vg, m in self.vg_members.items()},
            sorted(self.lvs),
            sorted(self.subvolumes.items()),
            sorted(self.files),
        )

    def commands(self, word):
        return [c for c in self.calls if c[0] == word]

    def _rel(self, path):
        for source, target, opts in reversed(self.mounts):
            if "subvolid=5" in opts.split(",") and (path == target or path.startswith(target + "/")):
                return path[len(target) + 1:]
        raise AssertionError(f"{path} is not below a top-level btrfs mount")

    # -- commands ---------------------------------------------------------------

    def _cmd_mount(self, args):
        opts, source, target = args[2], args[3], args[4]
        self.mounts.append((source, target, opts))
        return 0, ""

    def _cmd_umount(self, args):
        target = args[-1]
        for i in range(len(self.mounts) - 1, -1, -1):
            if self.mounts[i][1] == target:
                del self.mounts[i]
                return 0, ""
        return 32, f"umount: {target}: not mounted"

    def _cmd_btrfs(self, args):
        if args[:2] == ["subvolume", "list"]:
            lines = [f"ID {i} gen 10 top level 5 path {p}" for i, p in sorted(self.subvolumes.items())]
            return 0, "\n".join(lines) + "\n"
        if args[:2] == ["subvolume", "create"]:
            rel = self._rel(args[2])
            if rel in self.subvolumes.values():
                return 1, "ERROR: target path already exists"
            self.subvolumes[self.next_subvol] = rel
            self.next_subvol += 1
            return 0, ""
        if args[:2] == ["subvolume", "snapshot"]:
            self.subvolumes[self.next_subvol] = self._rel(args[-1])
            self.next_subvol += 1
            return 0, ""
        if args[:2] == ["subvolume", "delete"]:
            if "--subvolid" in args:
                sid = int(args[args.index("--subvolid") + 1])
            else:
                rel = self._rel(args[-1])
                sid = next((i for i, p in self.subvolumes.items() if p == rel), None)
            if sid not in self.subvolumes:
                return 1, "ERROR: no such subvolume"
            del self.subvolumes[sid]
            return 0, ""
        if args[:2] == ["inspect-internal", "rootid"]:
            if args[2] in self.rootids:
                return 0, f"{self.rootids[args[2]]}\n"
            return 1, "ERROR: not a btrfs filesystem"
        return 0, ""

    def _cmd_lvs(self, args):
        device = args[-1] if not args[-1].startswith("-") and args[-1] != "lv_name,vg_name" else None
        if device is None:
            return 0, "".join(f"  {lv} {vg}\n" for vg, lv in sorted(self.lvs))
        if device in self.lv_devices:
            lv, vg = self.lv_devices[device]
            return 0, f"  {lv} {vg}\n"
        return 5, f"  Failed to find logical volume \"{device}\""

    def _cmd_pvs(self, args):
        pv = args[-1]
        for vg, members in self.vg_members.items():
            if pv in members:
                return 0, f"  {vg}\n"
        return 0, "\n" if pv in self.pvs else ""

    def _cmd_dd(self, args):
        of = next(a for a in args if a.startswith("of="))
        self.files.add(of[3:])
        return 0, ""

    def _cmd_rm(self, args):
        self.files.discard(args[-1])
        return 0, ""

    def _cmd_losetup(self, args):
        if args[:2] == ["--show", "-f"]:
            loop = f"/dev/loop{self.next_loop}"
            self.next_loop += 1
            self.loops[loop] = args[2]
            return 0, f"{loop}\n"
        if args[0] == "-d":
            if self.loops.pop(args[1], None) is None:
                return 1, "losetup: detach failed"
            return 0, ""
        if args[0] == "-j":
            return 0, "".join(f"{l}: []: ({img})\n" for l, img in sorted(self.loops.items()) if img == args[1])
        return 0, ""

    def _cmd_pvcreate(self, args):
        self.pvs.add(args[-1])
        return 0, ""

    def _cmd_pvremove(self, args):
        if args[-1] not in self.pvs:
            return 5, "No PV found"
        self.pvs.remove(args[-1])
        return 0, ""

    def _cmd_vgextend(self, args):
        self.vg_members[args[-2]].add(args[-1])
        return 0, ""

    def _cmd_vgreduce(self, args):
        self.vg_members[args[-2]].discard(args[-1])
        return 0, ""

    def _cmd_lvcreate(self, args):
        name = args[args.index("-n") + 1]
        vg = args[args.index("-s") + 1].split("/")[0]
        self.lvs.add((vg, name))
        return 0, ""

    def _cmd_lvremove(self, args):
        vg, lv = args[-1].split("/")
        if (vg, lv) not in self.lvs:
            return 5, "Failed to find logical volume"
        self.lvs.remove((vg, lv))
        return 0, ""


MOUNTINFO = """\
1 0 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw
30 1 0:40 /@home /home rw,relatime shared:2 - btrfs /dev/sdb1 rw,space_cache=v2,subvolid=257,subvol=/@home
31 1 253:0 / /srv rw,relatime shared:3 - ext4 /dev/mapper/vg0-root rw
32 31 8:33 / /srv/data rw,relatime - xfs /dev/sdc1 rw,attr2
33 1 8:49 / /mnt/my\\040disk rw,relatime shared:9 master:2 - vfat /dev/sdd1 rw
34 1 8:1 /var/exports /bound rw,relatime - ext4 /dev/sda1 rw
35 1 0:40 / /pool rw,relatime - btrfs /dev/sdb1 rw,space_cache=v2
"""


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def mountinfo_file(tmp_path):
    p = tmp_path / "mountinfo"
    p.write_text(MOUNTINFO)
    return p


def make_config(tmp_path, mountinfo, **overrides):
    backup = {"cycle_length": 10, "max_level": 1, "max_cycles": 8}
    backup.update({k: v for k, v in overrides.items() if k in backup})
    storage = tmp_path / "storage"
    storage.mkdir(exist_ok=True)
    runtime = tmp_path / "shm"
    runtime.mkdir(exist_ok=True)
    return config_from_dict(
        {
            "backup": backup,
            "paths": {
                "metadata_dir": str(tmp_path / "meta"),
                "storage_root": str(storage),
                "runtime_dir": str(runtime),
                "mountinfo": str(mountinfo),
            },
            "archive": {"compressor": overrides.get("compressor", "none")},
            "mirror": {"device_uuid": overrides.get("device_uuid", "")},
        }
    )


@pytest.fixture
def sample_config(tmp_path, mountinfo_file):
    """Configuration rooted in tmp_path, with the sample mount table."""
    return make_config(tmp_path, mountinfo_file)
