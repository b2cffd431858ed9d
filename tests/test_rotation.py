"""
Tests for generation directory rotation.
"""
from tdsnap.rotation import BackupRotator


def layout(root, gens):
    for n in gens:
        d = root / str(n)
        d.mkdir(parents=True)
        (d / "marker").write_text(f"gen{n}\n")


def contents(root):
    return {
        int(p.name): (p / "marker").read_text().strip() if (p / "marker").exists() else None
        for p in root.iterdir()
    }


def test_rotate_fresh_root_creates_generation_0(tmp_path):
    root = tmp_path / "host" / "home"
    gen0 = BackupRotator(root, 8).rotate()
    assert gen0 == root / "0"
    assert gen0.is_dir()
    assert contents(root) == {0: None}


def test_rotate_shifts_every_generation(tmp_path):
    layout(tmp_path, [0, 1, 2])
    BackupRotator(tmp_path, 8).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen0", 2: "gen1", 3: "gen2"}


def test_rotate_is_noop_on_empty_generation_0(tmp_path):
    layout(tmp_path, [1, 2])
    (tmp_path / "0").mkdir()
    r = BackupRotator(tmp_path, 8)
    r.rotate()
    r.rotate()
    assert contents(tmp_path) == {0: None, 1: "gen1", 2: "gen2"}


def test_rotate_prunes_beyond_max_cycles(tmp_path):
    layout(tmp_path, [0, 1, 2, 3])
    BackupRotator(tmp_path, 3).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen0", 2: "gen1", 3: "gen2"}


def test_rotate_with_max_cycles_1_keeps_one_finished_cycle(tmp_path):
    layout(tmp_path, [0, 1])
    BackupRotator(tmp_path, 1).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen0"}


def test_rotate_closes_gaps(tmp_path):
    layout(tmp_path, [0, 2, 3])
    BackupRotator(tmp_path, 8).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen0", 2: "gen2", 3: "gen3"}


def test_rotate_without_generation_0(tmp_path):
    layout(tmp_path, [1, 2])
    BackupRotator(tmp_path, 8).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen1", 2: "gen2"}


def test_rotate_mixed_gaps_never_collide(tmp_path):
    layout(tmp_path, [2, 3, 5])
    BackupRotator(tmp_path, 8).rotate()
    assert contents(tmp_path) == {0: None, 1: "gen2", 2: "gen3", 3: "gen5"}


def test_generations_ignore_other_entries(tmp_path):
    layout(tmp_path, [0, 1])
    (tmp_path / "notes").mkdir()
    (tmp_path / "7").write_text("a file\n")
    assert BackupRotator(tmp_path, 8).generations() == [0, 1]
