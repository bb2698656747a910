"""Instance lifecycle rules.

:class:`LifecycleOrchestrator` decides whether an operation may run and in
which order the registry and the engine supervisor are called. It never prints
and never exits the process: every refusal is a :class:`LifecycleError`
subclass, and the CLI turns those into a diagnostic and an exit status.

Checks run before side effects wherever the ordering allows it. ``start``
validates the snapshot and the instance name before cloning, and ``reset``
confirms the origin snapshot still exists before deleting anything.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from .config import DEFAULT_PORT
from .storage import InstanceRecord, SnapshotRecord, is_valid_name

LOGGER = logging.getLogger(__name__)

SORT_KEYS = ("name", "port", "created", "last-used")


class LifecycleError(RuntimeError):
    """Base class for refusals raised by the orchestrator."""


class SnapshotNotFoundError(LifecycleError):
    """The requested snapshot does not exist."""

    def __init__(self, name: str | None) -> None:
        """Build the message for snapshot *name*."""
        self.name = name
        if name is None:
            super().__init__("Snapshot does not exist: the instance has no recorded snapshot.")
        else:
            super().__init__(f"Snapshot '{name}' does not exist.")


class InstanceNotFoundError(LifecycleError):
    """The requested instance is not registered."""

    def __init__(self, name: str) -> None:
        """Build the message for instance *name*."""
        self.name = name
        super().__init__(f"Instance '{name}' not found.")


class InstanceAlreadyExistsError(LifecycleError):
    """An instance with the requested name is already registered."""

    def __init__(self, name: str) -> None:
        """Build the message for instance *name*."""
        self.name = name
        super().__init__(f"Instance '{name}' already exists.")


class InvalidNameError(LifecycleError):
    """A name cannot be used as an instance or snapshot identifier."""

    def __init__(self, kind: str, name: str) -> None:
        """Build the message for the rejected *name*."""
        self.name = name
        super().__init__(
            f"Invalid {kind} name {name!r}; use letters, digits, '.', '_' or '-' "
            "and start with a letter or digit."
        )


class Registry(Protocol):
    """Storage operations the orchestrator relies on."""

    def get_db(self, name: str) -> InstanceRecord | None: ...

    def get_dbs(self) -> list[InstanceRecord]: ...

    def get_snapshot(self, name: str) -> SnapshotRecord | None: ...

    def clone_snapshot_to_db(self, name: str, snapshot_name: str, port: int) -> InstanceRecord: ...

    def remove_db(self, name: str) -> None: ...

    def add_snapshot(self, name: str, source_path: Path) -> SnapshotRecord: ...


class Supervisor(Protocol):
    """Runs the engine for one instance in the foreground."""

    def run_single_db(self, parent_dir: Path, name: str, port: int) -> int: ...


@dataclass(frozen=True, slots=True)
class StartPlan:
    """Everything needed to launch an instance, resolved before launch."""

    instance: InstanceRecord
    port: int
    parent_dir: Path
    cloned: bool


def resolve_port(explicit: int | None, stored: int) -> int:
    """Return the port to bind: an explicit request wins over the stored one."""
    return explicit if explicit is not None else stored


class LifecycleOrchestrator:
    """Apply the instance lifecycle rules on top of a registry."""

    def __init__(
        self,
        registry: Registry,
        supervisor: Supervisor,
        *,
        default_port: int = DEFAULT_PORT,
    ) -> None:
        """Bind the orchestrator to its collaborators."""
        self.registry = registry
        self.supervisor = supervisor
        self.default_port = default_port

    # start ---------------------------------------------------------------
    def prepare_start(
        self,
        name: str,
        snapshot: str | None = None,
        port: int | None = None,
    ) -> StartPlan:
        """Clone when asked to, then resolve what ``start`` will launch."""
        validate_name("instance", name)
        cloned = False
        if snapshot is not None:
            self.clone(name, snapshot, port)
            cloned = True

        instance = self.registry.get_db(name)
        if instance is None:
            raise InstanceNotFoundError(name)

        # The supervisor rejoins the parent with the instance name.
        return StartPlan(
            instance=instance,
            port=resolve_port(port, instance.port),
            parent_dir=instance.path.parent,
            cloned=cloned,
        )

    def start(
        self,
        name: str,
        snapshot: str | None = None,
        port: int | None = None,
        *,
        on_ready: Callable[[StartPlan], None] | None = None,
    ) -> int:
        """Prepare and run the instance in the foreground; return the engine status.

        *on_ready* is called with the plan right before the engine launches.
        """
        plan = self.prepare_start(name, snapshot, port)
        if on_ready is not None:
            on_ready(plan)
        LOGGER.debug("Launching %s on port %s from %s", name, plan.port, plan.parent_dir)
        return self.supervisor.run_single_db(plan.parent_dir, name, plan.port)

    def clone(self, name: str, snapshot: str, port: int | None = None) -> InstanceRecord:
        """Create instance *name* from *snapshot* without starting it."""
        validate_name("instance", name)
        validate_name("snapshot", snapshot)
        if self.registry.get_snapshot(snapshot) is None:
            raise SnapshotNotFoundError(snapshot)
        if self.registry.get_db(name) is not None:
            raise InstanceAlreadyExistsError(name)
        return self.registry.clone_snapshot_to_db(
            name,
            snapshot,
            port if port is not None else self.default_port,
        )

    # remove --------------------------------------------------------------
    def remove(self, name: str) -> InstanceRecord:
        """Delete instance *name* and its data directory; return what was removed."""
        instance = self._require_instance(name)
        self.registry.remove_db(name)
        return instance

    # list ----------------------------------------------------------------
    def list_instances(
        self,
        *,
        sort: str = "name",
        descending: bool = True,
    ) -> list[InstanceRecord]:
        """Return all instances, sorted by *sort* (descending by default)."""
        if sort not in SORT_KEYS:
            raise ValueError(f"Unknown sort key '{sort}'. Choose from: {', '.join(SORT_KEYS)}.")
        instances = self.registry.get_dbs()
        if sort == "name":
            return sorted(instances, key=lambda item: item.name, reverse=descending)
        if sort == "port":
            return sorted(instances, key=lambda item: (item.port, item.name), reverse=descending)

        attribute = "created_at" if sort == "created" else "last_used_at"
        dated = [item for item in instances if getattr(item, attribute) is not None]
        undated = [item for item in instances if getattr(item, attribute) is None]
        dated.sort(key=lambda item: _timestamp(getattr(item, attribute)), reverse=descending)
        undated.sort(key=lambda item: item.name, reverse=descending)
        return dated + undated

    # promote -------------------------------------------------------------
    def promote(self, name: str, snapshot: str) -> SnapshotRecord:
        """Create or overwrite *snapshot* from the current data of instance *name*."""
        validate_name("snapshot", snapshot)
        instance = self._require_instance(name)
        return self.registry.add_snapshot(snapshot, instance.path)

    # reset ---------------------------------------------------------------
    def reset(self, name: str) -> InstanceRecord:
        """Re-clone *name* from its recorded snapshot and port."""
        instance = self._require_instance(name)
        origin = instance.snapshot
        if origin is None or self.registry.get_snapshot(origin) is None:
            raise SnapshotNotFoundError(origin)
        self.registry.remove_db(name)
        return self.registry.clone_snapshot_to_db(name, origin, instance.port)

    # ---------------------------------------------------------------------
    def _require_instance(self, name: str) -> InstanceRecord:
        validate_name("instance", name)
        instance = self.registry.get_db(name)
        if instance is None:
            raise InstanceNotFoundError(name)
        return instance


def validate_name(kind: str, name: str) -> str:
    """Return *name* unchanged, or raise :class:`InvalidNameError`."""
    if not is_valid_name(name):
        raise InvalidNameError(kind, name)
    return name


def _timestamp(value: datetime) -> float:
    return value.timestamp()


__all__ = [
    "InstanceAlreadyExistsError",
    "InstanceNotFoundError",
    "InvalidNameError",
    "LifecycleError",
    "LifecycleOrchestrator",
    "Registry",
    "SORT_KEYS",
    "SnapshotNotFoundError",
    "StartPlan",
    "Supervisor",
    "resolve_port",
    "validate_name",
]
