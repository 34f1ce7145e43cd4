"""Shell implementation running commands on the local machine."""

from __future__ import annotations

import logging
import os
import shutil
import socket
import subprocess
import threading
from pathlib import Path

from capi_imagegen.shell.base import TIMEOUT_EXIT_CODE, CommandResult, Shell

logger = logging.getLogger(__name__)


class LocalShell(Shell):
    """Run commands through ``bash -c`` with subprocess."""

    def __init__(self) -> None:
        super().__init__()
        self.host = socket.gethostname()

    def _execute(
        self,
        line: str,
        *,
        timeout: float | None,
        stream: bool,
    ) -> CommandResult:
        if stream:
            return self._execute_streaming(line, timeout=timeout)
        try:
            result = subprocess.run(
                ["bash", "-c", line],
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out after %ss: %s", timeout, line)
            return CommandResult(
                command=line,
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_decode(e.stdout),
                stderr=f"timed out after {timeout}s",
            )
        return CommandResult(
            command=line,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def _execute_streaming(self, line: str, *, timeout: float | None) -> CommandResult:
        output: list[str] = []
        timed_out = threading.Event()
        with subprocess.Popen(
            ["bash", "-c", line],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        ) as proc:

            def _kill() -> None:
                timed_out.set()
                proc.kill()

            timer = threading.Timer(timeout, _kill) if timeout else None
            if timer is not None:
                timer.start()
            try:
                for raw in proc.stdout or ():
                    text = raw.rstrip()
                    output.append(text)
                    if text:
                        logger.info("  %s", text)
                exit_code = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()

        if timed_out.is_set():
            logger.error("Command timed out after %ss: %s", timeout, line)
            exit_code = TIMEOUT_EXIT_CODE
        return CommandResult(command=line, exit_code=exit_code, stdout="\n".join(output))

    def write_text(self, path: str, content: str, mode: int | None = None) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(target), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o666 if mode is None else mode)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            # O_CREAT mode does not apply to an existing file
            if mode is not None:
                os.fchmod(f.fileno(), mode)
            f.write(content)
        logger.debug("Wrote %s (%d bytes)", target, len(content))

    def put_file(self, local_path: Path, remote_path: str, mode: int | None = None) -> None:
        target = Path(remote_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(local_path, target)
        if mode is not None:
            os.chmod(target, mode)
        logger.debug("Copied %s -> %s", local_path, target)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


__all__ = ["LocalShell"]
