"""YAML-backed registry of instance metadata.

``<registry_dir>/instances.yml`` holds what the data directories cannot tell
us on their own: the port each instance was cloned with and the snapshot it
came from::

    instances:
      - name: scratch
        path: /home/me/.sider/dbs/scratch
        port: 6379
        snapshot: baseline

Every write lands in a sibling temporary file that is then renamed over the
target, so readers see either the old or the new document and never a
partial one.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

INSTANCES_FILE = "instances.yml"
FILE_MODE = 0o640


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """Read and atomically rewrite the YAML files under *root*."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    # Raw documents ------------------------------------------------------
    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Return the parsed document *name*, or a copy of *default* when absent or empty."""
        path = self.path_for(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Registry file {path} is not valid YAML: {exc}") from exc
        return deepcopy(default) if data is None else data

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace document *name* with *payload* in one rename."""
        self.ensure_root()
        target = self.path_for(name)
        fd, staged = tempfile.mkstemp(dir=str(self.root), prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.chmod(staged, FILE_MODE)
            os.replace(staged, target)
        finally:
            Path(staged).unlink(missing_ok=True)

    def read_instances(self) -> Mapping[str, object]:
        """Return the ``instances.yml`` document; anything but a mapping reads as empty."""
        document = self.read(INSTANCES_FILE)
        return document if isinstance(document, Mapping) else {"instances": []}

    def write_instances(self, instances: Iterable[object]) -> None:
        """Persist instance entries to ``instances.yml``."""
        self.write(INSTANCES_FILE, {"instances": list(instances)})

    # Instance entries ---------------------------------------------------
    def list_instances(self) -> list[dict[str, Any]]:
        """Return every entry that carries a usable name, in file order."""
        return [dict(entry) for entry in self._raw_entries() if _entry_name(entry)]

    def get_instance(self, name: str) -> dict[str, Any] | None:
        """Return the instance mapping for *name* if registered."""
        return next((entry for entry in self.list_instances() if entry["name"] == name), None)

    def add_instance(self, entry: Mapping[str, object]) -> None:
        """Append *entry*; its name must be present and not yet registered."""
        name = _entry_name(entry)
        if name is None:
            raise StateRegistryError("Instance entry missing 'name'.")
        entries = self._raw_entries()
        if any(_entry_name(existing) == name for existing in entries):
            raise StateRegistryError(f"Instance '{name}' already registered")
        self.write_instances([*entries, dict(entry)])

    def remove_instance(self, name: str) -> None:
        """Drop the entry for *name*; unknown names are an error."""
        entries = self._raw_entries()
        kept = [entry for entry in entries if _entry_name(entry) != name]
        if len(kept) == len(entries):
            raise StateRegistryError(f"Instance '{name}' not found in registry")
        self.write_instances(kept)

    def _raw_entries(self) -> list[object]:
        entries = self.read_instances().get("instances")
        return list(entries) if isinstance(entries, list) else []


def _entry_name(entry: object) -> str | None:
    if not isinstance(entry, Mapping):
        return None
    name = entry.get("name")
    return name if isinstance(name, str) and name.strip() else None


__all__ = ["INSTANCES_FILE", "StateRegistry", "StateRegistryError"]
