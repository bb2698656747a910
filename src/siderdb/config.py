"""Configuration loader for siderdb.

Four layers are merged, later layers winning:

1. Built-in defaults.
2. ``~/.sider/config.yml`` (or the path given by ``--config-file`` or
   ``SIDER_CONFIG_FILE``).
3. Environment variables prefixed with ``SIDER_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

A double underscore in an environment key descends into a nested section::

    export SIDER_PORTS__DEFAULT=6400
    export SIDER_ENGINE__COMMAND="/usr/local/bin/redis-server --protected-mode no"

Environment values are parsed with PyYAML's ``safe_load``, so ``6400`` arrives
as an integer and ``[a, b]`` as a list. Directory keys left unset hang off
``data_root``, so relocating ``data_root`` moves the whole tree.
"""
from __future__ import annotations

import copy
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import yaml

ENV_PREFIX = "SIDER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"

DEFAULT_PORT = 6379


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port defaults applied when cloning instances."""

    default: int = DEFAULT_PORT

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"default": self.default}


@dataclass(frozen=True)
class EngineConfig:
    """How the store engine process is launched."""

    command: tuple[str, ...] = ("redis-server",)
    args: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"command": list(self.command), "args": list(self.args)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for siderdb."""

    config_file: Path
    data_root: Path
    instances_dir: Path
    snapshots_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    ports: PortsConfig
    engine: EngineConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        data: dict[str, object] = {
            key: str(getattr(self, key)) for key in ("config_file", "data_root", *_DIRECTORIES)
        }
        data["lock_timeout"] = self.lock_timeout
        data["ports"] = self.ports.to_dict()
        data["engine"] = self.engine.to_dict()
        return data


# Directory keys and the folder each one defaults to beneath data_root.
_DIRECTORIES: dict[str, str] = {
    "instances_dir": "dbs",
    "snapshots_dir": "snapshots",
    "registry_dir": "registry",
    "logs_dir": "logs",
    "runtime_dir": "run",
}

DEFAULTS: dict[str, object] = {
    "config_file": "~/.sider/config.yml",
    "data_root": "~/.sider",
    **{key: None for key in _DIRECTORIES},
    "lock_timeout": 2.0,
    "ports": {"default": DEFAULT_PORT},
    "engine": {"command": ["redis-server"], "args": []},
}

_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"default"},
    "engine": {"command", "args"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file).expanduser()
    elif environ.get(CONFIG_ENV_VAR):
        path = Path(environ[CONFIG_ENV_VAR]).expanduser()
    else:
        path = Path(str(DEFAULTS["config_file"])).expanduser()

    merged = copy.deepcopy(DEFAULTS)
    for layer in (_read_file(path), _env_layer(environ), dict(overrides or {})):
        _merge_into(merged, layer)
    merged["config_file"] = str(path)
    return _resolve(merged)


def _read_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return dict(data)


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in environ.items():
        if key == CONFIG_ENV_VAR or not key.startswith(ENV_PREFIX):
            continue
        parts = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not parts:
            continue
        node = layer
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"{key} conflicts with the scalar set by {ENV_PREFIX}{part.upper()}."
                )
            node = child
        node[parts[-1]] = _parse_env_value(raw)
    return layer


def _parse_env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_into(target: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = value


def _resolve(raw: dict[str, object]) -> AppConfig:
    unknown = set(raw) - set(DEFAULTS)
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}.")
    sections = {name: _section(raw, name) for name in _SECTION_KEYS}

    data_root = _path(raw["data_root"], "data_root")
    directories = {
        key: _path(raw[key], key) if raw[key] else data_root / folder
        for key, folder in _DIRECTORIES.items()
    }

    port = _integer(sections["ports"].get("default", DEFAULT_PORT), "ports.default")
    if not 1 <= port <= 65535:
        raise ConfigError(f"ports.default must be between 1 and 65535. Got {port}.")

    command = _argv(sections["engine"].get("command"), "engine.command")
    if not command:
        raise ConfigError("engine.command must name the engine executable.")

    return AppConfig(
        config_file=_path(raw["config_file"], "config_file"),
        data_root=data_root,
        lock_timeout=_positive_number(raw["lock_timeout"], "lock_timeout"),
        ports=PortsConfig(default=port),
        engine=EngineConfig(
            command=command,
            args=_argv(sections["engine"].get("args"), "engine.args"),
        ),
        **directories,
    )


def _section(raw: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = raw.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {name} to be a mapping. Got {type(value).__name__}.")
    unknown = set(value) - _SECTION_KEYS[name]
    if unknown:
        raise ConfigError(f"Unknown {name} configuration keys: {', '.join(sorted(unknown))}.")
    return value


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _integer(value: object, label: str) -> int:
    # bool is an int subclass; "true" in YAML must not become port 1.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ConfigError(f"Expected {label} to be an integer. Got {value!r}.")


def _positive_number(value: object, label: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        number = float(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number:g}.")
    return number


def _argv(value: object, label: str) -> tuple[str, ...]:
    """Return *value* as an argv tuple, splitting plain strings shell-style."""
    if value is None:
        return ()
    if isinstance(value, str):
        try:
            return tuple(shlex.split(value))
        except ValueError as exc:
            raise ConfigError(f"Invalid command line for {label}: {exc}.") from exc
    if not isinstance(value, Sequence):
        raise ConfigError(
            f"Expected {label} to be a string or a list. Got {type(value).__name__}."
        )
    if any(isinstance(item, (Mapping, list)) or item is None for item in value):
        raise ConfigError(f"Every item of {label} must be a scalar value.")
    return tuple(str(item) for item in value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_PORT",
    "EngineConfig",
    "PortsConfig",
    "load_config",
]
