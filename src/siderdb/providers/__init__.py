"""Provider interfaces for siderdb."""
from __future__ import annotations

from .engine import EngineError, EngineSupervisor, SignalForwarder, forwarding_signals

__all__ = [
    "EngineError",
    "EngineSupervisor",
    "SignalForwarder",
    "forwarding_signals",
]
