"""
Tests for configuration loading and validation.
"""
import pytest
import tempfile
from pathlib import Path

from tdsnap.config import find_config, load_config


def test_load_config_basic():
    """Test basic configuration loading."""
    toml_content = """
[backup]
cycle_length = 7
max_level = 3
max_cycles = 4

[paths]
metadata_dir = "/var/lib/tdsnap-test"
storage_root = "/export/test"
runtime_dir = "/run/tdsnap"

[snapshot]
lvm_size_mb = 1024
mount_options = "nosuid,nodev"

[archive]
compressor = "zstd"
compression_level = 9

[integrity]
algorithm = "sha512"

[mirror]
device_uuid = "bab9da0e-0ce1-47aa-a533-340e4bc5d5d5"

[runtime]
log_level = "DEBUG"
"""

    with tempfile.NamedTemporaryFile(mode='w', suffix='.toml', delete=False) as f:
        f.write(toml_content)
        f.flush()

        config = load_config(Path(f.name))

        assert config.cycle_length == 7
        assert config.max_level == 3
        assert config.max_cycles == 4
        assert config.metadata_dir == Path("/var/lib/tdsnap-test")
        assert config.storage_root == Path("/export/test")
        assert config.runtime_dir == Path("/run/tdsnap")
        assert config.lvm_size_mb == 1024
        assert config.mount_options == "nosuid,nodev"
        assert config.compressor == "zstd"
        assert config.compression_level == 9
        assert config.integrity_algo == "sha512"
        assert config.mirror_device_uuid == "bab9da0e-0ce1-47aa-a533-340e4bc5d5d5"
        assert config.log_level == "DEBUG"


def test_config_defaults():
    """No config file at all gives the built-in defaults."""
    config = load_config(None)

    assert config.cycle_length == 10
    assert config.max_level == 1
    assert config.max_cycles == 8
    assert config.metadata_dir == Path("/var/lib/td-backup")
    assert config.storage_root == Path("/export/backup")
    assert config.runtime_dir == Path("/dev/shm")
    assert config.mountinfo == Path("/proc/self/mountinfo")
    assert config.lvm_size_mb == 500
    assert config.mount_options == "noexec,nosuid,nodev"
    assert config.compressor == "none"
    assert config.integrity_algo == "sha256"


def test_config_is_immutable():
    config = load_config(None)
    with pytest.raises(Exception):
        config.max_level = 5


@pytest.mark.parametrize("body", [
    "[backup]\nmax_level = 0\n",
    "[backup]\ncycle_length = 3\nmax_level = 3\n",
    "[backup]\nmax_cycles = 0\n",
    "[archive]\ncompressor = \"lzma\"\n",
    "[integrity]\nalgorithm = \"nope\"\n",
    "[snapshot]\nlvm_size_mb = 0\n",
])
def test_invalid_config_rejected(tmp_path, body):
    p = tmp_path / "tdsnap.toml"
    p.write_text(body)
    with pytest.raises(ValueError):
        load_config(p)


def test_find_config_explicit_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        find_config(str(tmp_path / "nope.toml"))


def test_find_config_explicit(tmp_path):
    p = tmp_path / "tdsnap.toml"
    p.write_text("")
    assert find_config(str(p)) == p
