"""Tests for the on-disk instance and snapshot registry."""
from __future__ import annotations

import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

from siderdb.state import StateRegistry
from siderdb.storage import FileRegistry, StorageError, is_valid_name


def test_clone_copies_snapshot_and_registers_instance(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    read_tree: Callable[[Path], dict[str, str]],
) -> None:
    """Cloning copies the snapshot tree and records port and lineage."""
    snapshot_dir = make_snapshot("base", {"dump.rdb": "payload", "conf/extra.conf": "x"})

    record = file_registry.clone_snapshot_to_db("alpha", "base", 6400)

    assert record.name == "alpha"
    assert record.path == file_registry.instances_dir / "alpha"
    assert record.port == 6400
    assert record.snapshot == "base"
    assert record.created_at is not None
    assert read_tree(record.path) == read_tree(snapshot_dir)

    stored = file_registry.state.get_instance("alpha")
    assert stored == {
        "name": "alpha",
        "path": str(file_registry.instances_dir / "alpha"),
        "port": 6400,
        "snapshot": "base",
    }


def test_clone_leaves_snapshot_untouched(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """Writes to a cloned instance never reach the snapshot."""
    snapshot_dir = make_snapshot("base", {"dump.rdb": "original"})
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    (record.path / "dump.rdb").write_text("changed", encoding="utf-8")

    assert (snapshot_dir / "dump.rdb").read_text(encoding="utf-8") == "original"


def test_clone_missing_snapshot_raises(file_registry: FileRegistry) -> None:
    """Cloning from an unknown snapshot fails without creating anything."""
    with pytest.raises(StorageError, match="does not exist"):
        file_registry.clone_snapshot_to_db("alpha", "ghost", 6379)

    assert file_registry.get_db("alpha") is None
    assert not (file_registry.instances_dir / "alpha").exists()


def test_clone_refuses_existing_directory(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """A stray directory with the instance name is never overwritten."""
    make_snapshot("base")
    stray = file_registry.instances_dir / "alpha"
    stray.mkdir(parents=True)
    (stray / "keep.txt").write_text("keep", encoding="utf-8")

    with pytest.raises(StorageError, match="already exists"):
        file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    assert (stray / "keep.txt").read_text(encoding="utf-8") == "keep"
    assert file_registry.get_db("alpha") is None


def test_clone_cleans_up_when_registry_write_fails(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed registry write removes the freshly copied directory."""
    make_snapshot("base")

    def fail_add(self: StateRegistry, entry: object) -> None:  # noqa: ARG001
        raise OSError("disk full")

    monkeypatch.setattr(StateRegistry, "add_instance", fail_add)

    with pytest.raises(OSError, match="disk full"):
        file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    assert not (file_registry.instances_dir / "alpha").exists()


def test_interrupted_clone_leaves_name_cloneable(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    read_tree: Callable[[Path], dict[str, str]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A Ctrl-C halfway through the copy removes the partial directory."""
    snapshot_dir = make_snapshot("base")
    real_copytree = shutil.copytree

    def interrupted_copy(src: Path, dst: Path, **kwargs: object) -> None:  # noqa: ARG001
        Path(dst).mkdir(parents=True)
        (Path(dst) / "partial.rdb").write_text("half", encoding="utf-8")
        raise KeyboardInterrupt

    monkeypatch.setattr("siderdb.storage.shutil.copytree", interrupted_copy)

    with pytest.raises(KeyboardInterrupt):
        file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    assert not (file_registry.instances_dir / "alpha").exists()
    assert file_registry.get_db("alpha") is None

    monkeypatch.setattr("siderdb.storage.shutil.copytree", real_copytree)
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    assert read_tree(record.path) == read_tree(snapshot_dir)


def test_remove_deletes_directory_and_entry(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """Removing an instance deletes both its record and its data."""
    make_snapshot("base")
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)

    file_registry.remove_db("alpha")

    assert file_registry.get_db("alpha") is None
    assert not record.path.exists()


def test_remove_tolerates_missing_directory(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """An entry whose directory vanished can still be removed."""
    make_snapshot("base")
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)
    shutil.rmtree(record.path)

    file_registry.remove_db("alpha")

    assert file_registry.get_db("alpha") is None


def test_remove_unknown_instance_raises(file_registry: FileRegistry) -> None:
    """Removing an unregistered instance is an error."""
    with pytest.raises(StorageError, match="not registered"):
        file_registry.remove_db("ghost")


def test_get_db_reports_missing_directory_times_as_none(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """Stat-derived timestamps are None when the directory is gone."""
    make_snapshot("base")
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)
    shutil.rmtree(record.path)

    reloaded = file_registry.get_db("alpha")

    assert reloaded is not None
    assert reloaded.created_at is None
    assert reloaded.last_used_at is None


def test_get_dbs_returns_registry_order(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """get_dbs lists every registered instance."""
    make_snapshot("base")
    for name in ("alpha", "beta", "gamma"):
        file_registry.clone_snapshot_to_db(name, "base", 6379)

    assert [record.name for record in file_registry.get_dbs()] == ["alpha", "beta", "gamma"]


def test_out_of_band_snapshot_directories_are_discovered(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
) -> None:
    """Any valid directory under the snapshots root is a snapshot."""
    make_snapshot("seeded")
    make_snapshot("base")
    (file_registry.snapshots_dir / ".staging").mkdir()
    (file_registry.snapshots_dir / "notes.txt").write_text("ignored", encoding="utf-8")

    assert file_registry.get_snapshot("seeded") is not None
    assert file_registry.get_snapshot("notes.txt") is None
    assert file_registry.get_snapshot("../dbs") is None
    assert [snapshot.name for snapshot in file_registry.list_snapshots()] == ["base", "seeded"]


def test_add_snapshot_copies_source(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    read_tree: Callable[[Path], dict[str, str]],
) -> None:
    """Promoting copies the source; later source writes are not reflected."""
    make_snapshot("base", {"dump.rdb": "v1"})
    record = file_registry.clone_snapshot_to_db("alpha", "base", 6379)
    (record.path / "dump.rdb").write_text("v2", encoding="utf-8")

    snapshot = file_registry.add_snapshot("promoted", record.path)
    (record.path / "dump.rdb").write_text("v3", encoding="utf-8")

    assert snapshot.path == file_registry.snapshots_dir / "promoted"
    assert read_tree(snapshot.path) == {"dump.rdb": "v2"}


def test_add_snapshot_overwrites_existing(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    read_tree: Callable[[Path], dict[str, str]],
) -> None:
    """An existing snapshot is replaced wholesale, leaving no stale files."""
    make_snapshot("base", {"dump.rdb": "old", "stale.aof": "old"})
    source = file_registry.instances_dir / "source"
    source.mkdir(parents=True)
    (source / "dump.rdb").write_text("new", encoding="utf-8")

    file_registry.add_snapshot("base", source)

    assert read_tree(file_registry.snapshots_dir / "base") == {"dump.rdb": "new"}
    leftovers = [path.name for path in file_registry.snapshots_dir.iterdir()]
    assert leftovers == ["base"]


def test_add_snapshot_failure_keeps_previous_snapshot(
    file_registry: FileRegistry,
    make_snapshot: Callable[..., Path],
    read_tree: Callable[[Path], dict[str, str]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed copy leaves the previous snapshot intact."""
    make_snapshot("base", {"dump.rdb": "old"})
    source = file_registry.instances_dir / "source"
    source.mkdir(parents=True)

    def fail_copy(*args: object, **kwargs: object) -> None:  # noqa: ARG001
        raise OSError("read error")

    monkeypatch.setattr("siderdb.storage.shutil.copytree", fail_copy)

    with pytest.raises(StorageError, match="read error"):
        file_registry.add_snapshot("base", source)

    assert read_tree(file_registry.snapshots_dir / "base") == {"dump.rdb": "old"}
    assert [path.name for path in file_registry.snapshots_dir.iterdir()] == ["base"]


def test_add_snapshot_requires_directory_source(
    file_registry: FileRegistry,
    tmp_path: Path,
) -> None:
    """Promoting from a missing directory is an error."""
    with pytest.raises(StorageError, match="not a directory"):
        file_registry.add_snapshot("base", tmp_path / "missing")


@pytest.mark.parametrize(
    ("name", "valid"),
    [
        ("alpha", True),
        ("feature-42", True),
        ("v1.2_rc", True),
        ("", False),
        (".hidden", False),
        ("../escape", False),
        ("a/b", False),
        ("with space", False),
    ],
)
def test_is_valid_name(name: str, valid: bool) -> None:
    """Names must be a single safe path component."""
    assert is_valid_name(name) is valid


def test_instance_path_rejects_invalid_names(file_registry: FileRegistry) -> None:
    """Path helpers refuse names that would escape their directory."""
    with pytest.raises(StorageError, match="Invalid name"):
        file_registry.instance_path("../../etc")
