"""Command execution abstraction shared by local and SSH transports.

Build and validation stages issue every command through a ``Shell`` so the
same orchestration code runs on the build host itself or from the driver
over SSH.
"""

from __future__ import annotations

import logging
import shlex
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TextIO

logger = logging.getLogger(__name__)

Command = str | Sequence[str]

# Exit status reported for commands killed by a timeout (matches coreutils timeout)
TIMEOUT_EXIT_CODE = 124


@dataclass
class CommandResult:
    """Result of a finished command.

    Attributes:
        command: The composed command line that was executed.
        exit_code: Process exit status.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def lines(self) -> list[str]:
        """Non-empty stdout lines."""
        return [line for line in self.stdout.splitlines() if line.strip()]


class CommandError(Exception):
    """Raised when a checked command exits non-zero."""

    def __init__(self, result: CommandResult, code: str = "command_failed") -> None:
        detail = (result.stderr or result.stdout).strip().splitlines()
        tail = detail[-1] if detail else ""
        message = f"Command failed with exit code {result.exit_code}: {result.command}"
        if tail:
            message += f" ({tail})"
        super().__init__(message)
        self.result = result
        self.code = code


def compose_command(
    command: Command,
    *,
    sudo: bool = False,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Compose a single bash command line.

    Argument lists are quoted; strings are passed through verbatim so callers
    can use globs, pipes and redirections.

    Args:
        command: Argument list or raw shell string.
        sudo: Run the command through ``sudo``.
        cwd: Directory to change into first.
        env: Extra environment variables.

    Returns:
        Command line suitable for ``bash -c``.
    """
    if isinstance(command, str):
        line = command
        if env:
            exports = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
            line = f"export {exports}; {line}"
        if sudo:
            line = f"sudo bash -c {shlex.quote(line)}"
    else:
        argv = list(command)
        if env:
            argv = ["env", *(f"{k}={v}" for k, v in env.items()), *argv]
        if sudo:
            argv = ["sudo", *argv]
        line = shlex.join(argv)

    if cwd:
        line = f"cd {shlex.quote(cwd)} && {line}"
    return line


class Shell(ABC):
    """Executes commands and transfers files on one host."""

    host: str = "localhost"

    def __init__(self) -> None:
        self._transcript: TextIO | None = None

    @abstractmethod
    def _execute(
        self,
        line: str,
        *,
        timeout: float | None,
        stream: bool,
    ) -> CommandResult:
        """Run a composed command line and capture its result."""

    @abstractmethod
    def write_text(self, path: str, content: str, mode: int | None = None) -> None:
        """Write a text file on the host."""

    @abstractmethod
    def put_file(self, local_path: Path, remote_path: str, mode: int | None = None) -> None:
        """Copy a local file onto the host."""

    def close(self) -> None:  # noqa: B027
        """Release transport resources."""

    def run(
        self,
        command: Command,
        *,
        check: bool = True,
        sudo: bool = False,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        stream: bool = False,
    ) -> CommandResult:
        """Run a command.

        Args:
            command: Argument list or raw shell string.
            check: Raise CommandError on non-zero exit.
            sudo: Run through sudo.
            cwd: Working directory.
            env: Extra environment variables.
            timeout: Timeout in seconds (None = no timeout).
            stream: Log output lines as they arrive.

        Returns:
            CommandResult for the finished command.

        Raises:
            CommandError: If check is set and the command failed.
        """
        line = compose_command(command, sudo=sudo, cwd=cwd, env=env)
        logger.debug("[%s] $ %s", self.host, line)
        result = self._execute(line, timeout=timeout, stream=stream)
        self._record(result)
        if check and not result.ok:
            raise CommandError(result)
        return result

    def which(self, name: str) -> bool:
        """Check whether an executable is on PATH."""
        return self.run(f"command -v {shlex.quote(name)}", check=False).ok

    def exists(self, path: str) -> bool:
        return self.run(["test", "-e", path], check=False).ok

    def is_dir(self, path: str) -> bool:
        return self.run(["test", "-d", path], check=False).ok

    def glob(self, pattern: str) -> list[str]:
        """List paths matching a shell glob, newest first.

        ``pattern`` is interpolated unquoted; quote any directory part with
        ``shlex.quote`` before appending the wildcard.
        """
        result = self.run(f"ls -1td -- {pattern} 2>/dev/null", check=False)
        return result.lines if result.ok else []

    def read_text(self, path: str, sudo: bool = False) -> str:
        return self.run(["cat", path], sudo=sudo).stdout

    @contextmanager
    def capture_to(self, log_path: Path) -> Iterator[Path]:
        """Append a transcript of every command to ``log_path``.

        Args:
            log_path: Log file to append to (parent directories are created).

        Yields:
            The log path.
        """
        log_path.parent.mkdir(parents=True, exist_ok=True)
        previous = self._transcript
        started_at = datetime.now(timezone.utc)
        with log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# Host: {self.host}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()
            self._transcript = log_file
            try:
                yield log_path
            finally:
                self._transcript = previous
                finished_at = datetime.now(timezone.utc)
                duration = (finished_at - started_at).total_seconds()
                log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
                log_file.write(f"# Duration: {duration:.1f}s\n")

    def _record(self, result: CommandResult) -> None:
        if self._transcript is None:
            return
        self._transcript.write(f"$ {result.command}\n")
        if result.stdout:
            self._transcript.write(result.stdout.rstrip("\n") + "\n")
        if result.stderr:
            self._transcript.write(result.stderr.rstrip("\n") + "\n")
        if not result.ok:
            self._transcript.write(f"# exit code {result.exit_code}\n")
        self._transcript.flush()

    def __enter__(self) -> Shell:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


__all__ = [
    "TIMEOUT_EXIT_CODE",
    "Command",
    "CommandError",
    "CommandResult",
    "Shell",
    "compose_command",
]
