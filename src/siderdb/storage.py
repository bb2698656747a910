"""On-disk registry of instances and snapshots.

Layout under the configured directories::

    <instances_dir>/<name>/        data directory owned by one instance
    <snapshots_dir>/<name>/        frozen copy used as a clone source
    <registry_dir>/instances.yml   port and snapshot lineage per instance

Snapshots carry no metadata besides their directory, so a directory copied into
``snapshots_dir`` by hand is a valid snapshot. Creation and last-used times are
read from directory stat data and never stored.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .state import StateRegistry

LOGGER = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


class StorageError(RuntimeError):
    """Raised when instance or snapshot directories cannot be managed."""


@dataclass(frozen=True, slots=True)
class SnapshotRecord:
    """A named clone source."""

    name: str
    path: Path
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """A registered instance and what its directory reports about it."""

    name: str
    path: Path
    port: int
    snapshot: str | None = None
    created_at: datetime | None = None
    last_used_at: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "name": self.name,
            "path": str(self.path),
            "port": self.port,
            "snapshot": self.snapshot,
            "created_at": _iso(self.created_at),
            "last_used_at": _iso(self.last_used_at),
        }


def is_valid_name(name: str) -> bool:
    """Return ``True`` when *name* is usable as a single directory component."""
    return bool(_NAME_PATTERN.fullmatch(name))


@dataclass(slots=True)
class FileRegistry:
    """Persist instances and snapshots as directories plus ``instances.yml``."""

    state: StateRegistry
    instances_dir: Path
    snapshots_dir: Path

    def __post_init__(self) -> None:
        """Normalise directory paths after initialisation."""
        self.instances_dir = self.instances_dir.expanduser()
        self.snapshots_dir = self.snapshots_dir.expanduser()

    def ensure_dirs(self) -> None:
        """Create the instance, snapshot and registry directories."""
        try:
            self.instances_dir.mkdir(parents=True, exist_ok=True)
            self.snapshots_dir.mkdir(parents=True, exist_ok=True)
            self.state.ensure_root()
        except OSError as exc:
            raise StorageError(f"Failed to prepare data directories: {exc}") from exc

    def instance_path(self, name: str) -> Path:
        """Return the data directory assigned to instance *name*."""
        return self.instances_dir / _check_name(name)

    def snapshot_path(self, name: str) -> Path:
        """Return the directory holding snapshot *name*."""
        return self.snapshots_dir / _check_name(name)

    # Lookups -------------------------------------------------------------
    def get_db(self, name: str) -> InstanceRecord | None:
        """Return the instance registered as *name*, if any."""
        entry = self.state.get_instance(name)
        if entry is None:
            return None
        return self._record_from_entry(entry)

    def get_dbs(self) -> list[InstanceRecord]:
        """Return every registered instance in registry order."""
        return [self._record_from_entry(entry) for entry in self.state.list_instances()]

    def get_snapshot(self, name: str) -> SnapshotRecord | None:
        """Return snapshot *name* when its directory exists."""
        if not is_valid_name(name):
            return None
        path = self.snapshots_dir / name
        if not path.is_dir():
            return None
        created_at, _ = _stat_times(path)
        return SnapshotRecord(name=name, path=path, created_at=created_at)

    def list_snapshots(self) -> list[SnapshotRecord]:
        """Return all snapshots sorted by name."""
        if not self.snapshots_dir.is_dir():
            return []
        records: list[SnapshotRecord] = []
        for child in sorted(self.snapshots_dir.iterdir()):
            # Staging directories from an interrupted promote start with a dot.
            if child.is_dir() and is_valid_name(child.name):
                created_at, _ = _stat_times(child)
                records.append(SnapshotRecord(name=child.name, path=child, created_at=created_at))
        return records

    # Mutations -----------------------------------------------------------
    def clone_snapshot_to_db(self, name: str, snapshot_name: str, port: int) -> InstanceRecord:
        """Copy snapshot *snapshot_name* into a new instance called *name*."""
        snapshot = self.get_snapshot(snapshot_name)
        if snapshot is None:
            raise StorageError(f"Snapshot '{snapshot_name}' does not exist.")
        if self.state.get_instance(name) is not None:
            raise StorageError(f"Instance '{name}' is already registered.")
        destination = self.instance_path(name)
        if destination.exists():
            raise StorageError(f"Instance directory {destination} already exists.")

        entry = {
            "name": name,
            "path": str(destination),
            "port": int(port),
            "snapshot": snapshot_name,
        }
        self.instances_dir.mkdir(parents=True, exist_ok=True)
        registered = False
        try:
            try:
                shutil.copytree(snapshot.path, destination, symlinks=True)
            except OSError as exc:
                raise StorageError(
                    f"Failed to clone snapshot '{snapshot_name}' into {destination}: {exc}"
                ) from exc
            self.state.add_instance(entry)
            registered = True
        finally:
            # Interrupts included: an unregistered name must stay cloneable.
            if not registered:
                shutil.rmtree(destination, ignore_errors=True)
        LOGGER.debug("Cloned snapshot %s into %s on port %s", snapshot_name, destination, port)
        return self._record_from_entry(entry)

    def remove_db(self, name: str) -> None:
        """Delete the registry entry and the data directory of *name*."""
        entry = self.state.get_instance(name)
        if entry is None:
            raise StorageError(f"Instance '{name}' is not registered.")
        path = _entry_path(entry, self.instances_dir)
        try:
            if path.exists():
                shutil.rmtree(path)
        except OSError as exc:
            raise StorageError(f"Failed to delete instance directory {path}: {exc}") from exc
        self.state.remove_instance(name)
        LOGGER.debug("Removed instance %s (%s)", name, path)

    def add_snapshot(self, name: str, source_path: Path) -> SnapshotRecord:
        """Create or replace snapshot *name* with a copy of *source_path*.

        The copy is staged next to the final location and swapped in, so the
        previous snapshot survives a failed copy.
        """
        destination = self.snapshot_path(name)
        source = Path(source_path)
        if not source.is_dir():
            raise StorageError(f"Snapshot source {source} is not a directory.")

        self.snapshots_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=str(self.snapshots_dir), prefix=f".{name}."))
        staged_copy = staging / "data"
        retired = staging / "previous"
        try:
            try:
                shutil.copytree(source, staged_copy, symlinks=True)
            except OSError as exc:
                raise StorageError(
                    f"Failed to copy {source} into snapshot '{name}': {exc}"
                ) from exc
            try:
                if destination.exists():
                    os.replace(destination, retired)
                os.replace(staged_copy, destination)
            except OSError as exc:
                if retired.exists() and not destination.exists():
                    os.replace(retired, destination)
                raise StorageError(f"Failed to publish snapshot '{name}': {exc}") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        LOGGER.debug("Published snapshot %s from %s", name, source)
        created_at, _ = _stat_times(destination)
        return SnapshotRecord(name=name, path=destination, created_at=created_at)

    # Internal helpers -------------------------------------------------
    def _record_from_entry(self, entry: dict[str, object]) -> InstanceRecord:
        name = str(entry["name"])
        path = _entry_path(entry, self.instances_dir)
        created_at, last_used_at = _stat_times(path)
        snapshot = entry.get("snapshot")
        return InstanceRecord(
            name=name,
            path=path,
            port=_coerce_port(entry.get("port")),
            snapshot=str(snapshot) if snapshot not in (None, "") else None,
            created_at=created_at,
            last_used_at=last_used_at,
        )


def _check_name(name: str) -> str:
    if not is_valid_name(name):
        raise StorageError(f"Invalid name {name!r}; use letters, digits, '.', '_' or '-'.")
    return name


def _entry_path(entry: dict[str, object], instances_dir: Path) -> Path:
    raw = entry.get("path")
    if isinstance(raw, str) and raw.strip():
        return Path(raw).expanduser()
    return instances_dir / str(entry["name"])


def _coerce_port(value: object) -> int:
    if isinstance(value, bool):
        raise StorageError(f"Invalid port value in registry: {value!r}.")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise StorageError(f"Invalid port value in registry: {value!r}.") from exc


def _stat_times(path: Path) -> tuple[datetime | None, datetime | None]:
    """Return (created, modified) for *path*, or ``(None, None)`` when missing."""
    try:
        stats = path.stat()
    except OSError:
        return None, None
    # st_birthtime is only reported on some platforms; ctime is the closest fallback.
    born = getattr(stats, "st_birthtime", None) or stats.st_ctime
    return (
        datetime.fromtimestamp(born, tz=UTC),
        datetime.fromtimestamp(stats.st_mtime, tz=UTC),
    )


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat(timespec="seconds").replace("+00:00", "Z")


__all__ = [
    "FileRegistry",
    "InstanceRecord",
    "SnapshotRecord",
    "StorageError",
    "is_valid_name",
]
