"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from pathlib import Path

import pytest

from siderdb.state import StateRegistry
from siderdb.storage import FileRegistry

SnapshotFactory = Callable[..., Path]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def file_registry(tmp_path: Path) -> FileRegistry:
    """Return a registry whose directories live under the temporary path."""
    registry = FileRegistry(
        state=StateRegistry(tmp_path / "registry"),
        instances_dir=tmp_path / "dbs",
        snapshots_dir=tmp_path / "snapshots",
    )
    registry.ensure_dirs()
    return registry


@pytest.fixture
def make_snapshot(file_registry: FileRegistry) -> SnapshotFactory:
    """Return a helper that writes a snapshot directory with the given files."""

    def _make(name: str, files: Mapping[str, str] | None = None) -> Path:
        root = file_registry.snapshots_dir / name
        root.mkdir(parents=True, exist_ok=True)
        for relative, content in (files or {"dump.rdb": f"{name}-data"}).items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return root

    return _make


def _read_tree(root: Path) -> dict[str, str]:
    return {
        str(path.relative_to(root)): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def read_tree() -> Callable[[Path], dict[str, str]]:
    """Return a helper mapping each file below a directory to its text."""
    return _read_tree
