"""Run toolchain commands for real, or record them for dry runs and tests."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import logging
import os
import shlex
import subprocess

logger = logging.getLogger(__name__)

# Exit status a POSIX shell reports for a command it cannot find.
EXIT_NOT_FOUND = 127


def format_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(part)) for part in command)


@dataclass
class CommandResult:
    """Exit status and captured output of one command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Text worth showing for a failure: stderr, else stdout, else a short note."""

        for text in (self.stderr, self.stdout):
            if text.strip():
                return text.strip()
        if self.streamed:
            return "output already streamed to the terminal"
        return f"exit code {self.returncode}"


class CommandError(RuntimeError):
    """A checked command exited non-zero; ``result`` holds what it produced."""

    def __init__(self, result: CommandResult):
        lines = [f"`{format_command(result.command)}` exited with status {result.returncode}"]
        if not result.streamed:
            lines.append(result.diagnostic)
        super().__init__("\n".join(lines))
        self.result = result


class CommandRunner:
    """Interface shared by the real and the recording runner.

    ``dry_run`` tells callers whether commands actually take effect, so they
    can skip persisting results that were never produced.
    """

    dry_run: bool = False

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        raise NotImplementedError

    @staticmethod
    def _checked(result: CommandResult, check: bool) -> CommandResult:
        if check and not result.ok:
            raise CommandError(result)
        return result


class SubprocessCommandRunner(CommandRunner):
    """Executes commands with :func:`subprocess.run`.

    Output is captured unless ``stream`` is set, in which case the child
    shares the terminal. ``env`` extends the current environment, or
    replaces it when ``inherit_env`` is false.
    """

    def __init__(self, *, inherit_env: bool = True) -> None:
        self._inherit_env = inherit_env

    def _environment(self, env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        base = dict(os.environ) if self._inherit_env else {}
        base.update(env)
        return base

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        argv = [str(part) for part in command]
        logger.debug("%s%s (cwd=%s)", f"{note}: " if note else "", format_command(argv), cwd or ".")

        options: Dict[str, Any] = {"cwd": str(cwd) if cwd else None, "env": self._environment(env), "check": False}
        if not stream:
            options.update(capture_output=True, text=True)
        try:
            process = subprocess.run(argv, **options)
        except FileNotFoundError as exc:
            return self._checked(CommandResult(argv, EXIT_NOT_FOUND, "", str(exc)), check)

        result = CommandResult(
            command=argv,
            returncode=process.returncode,
            stdout="" if stream else process.stdout,
            stderr="" if stream else process.stderr,
            streamed=stream,
        )
        return self._checked(result, check)


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    stream: bool


CommandHandler = Callable[[RecordedCommand], CommandResult | None]


@dataclass
class RecordingCommandRunner(CommandRunner):
    """Remembers every command instead of executing it.

    A ``handler`` can simulate outcomes: it receives each record and returns
    a :class:`CommandResult`, or ``None`` for plain success. Tests that need
    stages to persist their output pass ``dry_run=False``.
    """

    handler: CommandHandler | None = None
    dry_run: bool = True
    commands: List[RecordedCommand] = field(default_factory=list)

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
    ) -> CommandResult:
        record = RecordedCommand(
            command=[str(part) for part in command],
            cwd=str(cwd) if cwd else None,
            env=dict(env or {}),
            note=note,
            stream=stream,
        )
        self.commands.append(record)
        result = self.handler(record) if self.handler is not None else None
        return self._checked(result or CommandResult(record.command, 0, "", ""), check)

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        """Yield ``[dry-run] <note> (cwd=...) <command>`` lines in execution order."""

        for record in self.commands:
            cwd = record.cwd or (str(workspace) if workspace else None)
            parts = ["[dry-run]"]
            if record.note:
                parts.append(record.note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(format_command(record.command))
            yield " ".join(parts)


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "EXIT_NOT_FOUND",
    "RecordedCommand",
    "RecordingCommandRunner",
    "SubprocessCommandRunner",
    "format_command",
]
