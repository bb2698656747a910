"""Classify the verb of a command line before any command runs."""
from __future__ import annotations

import difflib
from collections.abc import Sequence
from dataclasses import dataclass

KNOWN_VERBS: tuple[str, ...] = ("start", "remove", "list", "promote", "reset")


@dataclass(frozen=True, slots=True)
class MatchedCommand:
    """A known verb and the arguments that follow it."""

    verb: str
    args: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class UnmatchedCommand:
    """A verb that is not part of the CLI; *verb* is ``None`` when none was given."""

    verb: str | None
    suggestions: tuple[str, ...] = ()


CommandMatch = MatchedCommand | UnmatchedCommand


def match_command(args: Sequence[str], known: Sequence[str] = KNOWN_VERBS) -> CommandMatch:
    """Return which verb *args* (global options already removed) selects."""
    if not args:
        return UnmatchedCommand(verb=None)
    verb, rest = args[0], tuple(args[1:])
    if verb in known:
        return MatchedCommand(verb=verb, args=rest)
    suggestions = tuple(difflib.get_close_matches(verb, list(known), n=2, cutoff=0.6))
    return UnmatchedCommand(verb=verb, suggestions=suggestions)


def format_unknown_command(match: UnmatchedCommand, known: Sequence[str] = KNOWN_VERBS) -> str:
    """Return the help text printed for an unknown verb."""
    lines = [f"Unknown command '{match.verb}'."]
    if match.suggestions:
        lines.append(f"Did you mean: {', '.join(match.suggestions)}?")
    lines.append(f"Known commands: {', '.join(known)}")
    return "\n".join(lines)


__all__ = [
    "CommandMatch",
    "KNOWN_VERBS",
    "MatchedCommand",
    "UnmatchedCommand",
    "format_unknown_command",
    "match_command",
]
