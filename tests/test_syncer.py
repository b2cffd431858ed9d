"""
Tests for mirroring the storage root onto a second device.
"""
import pytest

from conftest import make_config
from tdsnap.errors import CommandError, EnvironmentCheckError
from tdsnap.syncer import mirror, rsync_cmd

UUID = "0b1c2d3e-4f50-6172-8394-a5b6c7d8e9f0"


@pytest.fixture
def mirror_config(tmp_path, mountinfo_file):
    return make_config(tmp_path, mountinfo_file, device_uuid=UUID)


def test_rsync_cmd(tmp_path):
    cmd = rsync_cmd(tmp_path / "a", tmp_path / "b")
    assert cmd[:3] == ["rsync", "-aAX", "--delete"]
    assert cmd[-2:] == [f"{tmp_path}/a/", f"{tmp_path}/b/"]


def test_mirror_command_order(mirror_config, host):
    mirror(mirror_config, host)

    assert [c[0] for c in host.calls] == ["mount", "rsync", "sync", "umount"]
    mount = host.calls[0]
    assert mount[4] == f"/dev/disk/by-uuid/{UUID}"
    dst = mount[5]
    assert host.calls[1][-1] == dst + "/"
    assert host.calls[1][-2] == f"{mirror_config.storage_root}/"
    assert host.mounts == []
    assert list(mirror_config.runtime_dir.iterdir()) == []


def test_mirror_unmounts_after_rsync_failure(mirror_config, host):
    host.fail("rsync")
    with pytest.raises(CommandError):
        mirror(mirror_config, host)
    assert host.commands("umount")
    assert host.mounts == []
    assert list(mirror_config.runtime_dir.iterdir()) == []


def test_mirror_needs_device_uuid(sample_config, host):
    with pytest.raises(EnvironmentCheckError, match="device_uuid"):
        mirror(sample_config, host)
    assert host.calls == []


def test_mirror_needs_rsync(mirror_config, host):
    host.missing.add("rsync")
    with pytest.raises(EnvironmentCheckError, match="rsync"):
        mirror(mirror_config, host)
