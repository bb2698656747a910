"""Foreground supervision of the store engine process."""
from __future__ import annotations

import logging
import signal
import subprocess
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import FrameType

LOGGER = logging.getLogger(__name__)

FORWARDED_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

# redis-server ignores SIGHUP, so a closed terminal is relayed as a shutdown request.
RELAYED_AS: dict[int, signal.Signals] = {signal.SIGHUP: signal.SIGTERM}


class EngineError(RuntimeError):
    """Raised when the engine process cannot be launched."""


class SignalForwarder:
    """Relay termination signals received by this process to the engine.

    The engine runs in its own session, so a Ctrl-C or a terminal hangup
    reaches only this process. Each delivery is forwarded exactly once, and
    this process keeps running until the engine has exited. Signals that
    arrive before the child is attached are queued and replayed on
    :meth:`attach`.
    """

    def __init__(self, signals: Sequence[signal.Signals] = FORWARDED_SIGNALS) -> None:
        """Remember which signals to intercept."""
        self.signals = tuple(signals)
        self.received: list[int] = []
        self._process: subprocess.Popen[bytes] | None = None
        self._pending: list[int] = []
        self._previous: dict[int, object] = {}

    def install(self) -> None:
        """Replace the handlers for the forwarded signals."""
        for signum in self.signals:
            self._previous[signum] = signal.signal(signum, self._handle)

    def restore(self) -> None:
        """Put the original handlers back."""
        while self._previous:
            signum, handler = self._previous.popitem()
            signal.signal(signum, handler)  # type: ignore[arg-type]

    def attach(self, process: subprocess.Popen[bytes]) -> None:
        """Start forwarding to *process* and flush queued signals."""
        self._process = process
        pending, self._pending = self._pending, []
        for signum in pending:
            self._forward(signum)

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self.received.append(signum)
        if self._process is None:
            self._pending.append(signum)
            return
        self._forward(signum)

    def _forward(self, signum: int) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            return
        relayed = RELAYED_AS.get(signum, signum)
        try:
            process.send_signal(relayed)
        except ProcessLookupError:
            return
        LOGGER.debug("Forwarded %s to engine pid %s", signal.Signals(relayed).name, process.pid)


@contextmanager
def forwarding_signals(forwarder: SignalForwarder) -> Iterator[SignalForwarder]:
    """Install *forwarder* for the duration of the block."""
    forwarder.install()
    try:
        yield forwarder
    finally:
        forwarder.restore()


@dataclass(slots=True)
class EngineSupervisor:
    """Launch the engine for one instance and wait for it to exit."""

    command: Sequence[str] = ("redis-server",)
    extra_args: Sequence[str] = field(default_factory=tuple)

    def build_command(self, data_dir: Path, port: int) -> list[str]:
        """Return the argv used to run the engine on *data_dir* and *port*."""
        return [
            *self.command,
            "--port",
            str(port),
            "--dir",
            str(data_dir),
            *self.extra_args,
        ]

    def run_single_db(self, parent_dir: Path, name: str, port: int) -> int:
        """Run the engine for instance *name* under *parent_dir* in the foreground.

        Returns the engine's exit status once it has exited.
        """
        data_dir = Path(parent_dir) / name
        if not data_dir.is_dir():
            raise EngineError(f"Data directory {data_dir} does not exist.")
        args = self.build_command(data_dir, port)

        with forwarding_signals(SignalForwarder()) as forwarder:
            try:
                process = subprocess.Popen(  # noqa: S603
                    args,
                    cwd=str(data_dir),
                    start_new_session=True,
                )
            except FileNotFoundError as exc:
                raise EngineError(f"{args[0]} not found: {exc}") from exc
            except PermissionError as exc:
                raise EngineError(f"{args[0]} is not executable: {exc}") from exc
            LOGGER.debug("Started engine pid %s: %s", process.pid, " ".join(args))
            forwarder.attach(process)
            returncode = process.wait()

        LOGGER.debug("Engine pid %s exited with %s", process.pid, returncode)
        return returncode


__all__ = ["EngineError", "EngineSupervisor", "SignalForwarder", "forwarding_signals"]
