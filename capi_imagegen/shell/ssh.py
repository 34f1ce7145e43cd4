"""Shell implementation over SSH using paramiko.

Commands run through ``exec_command``; files are transferred with SFTP.
stdout and stderr are drained concurrently from non-blocking channels so
long-running builds with verbose output cannot deadlock the transport.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import paramiko

from capi_imagegen.retry import poll
from capi_imagegen.shell.base import TIMEOUT_EXIT_CODE, CommandResult, Shell

logger = logging.getLogger(__name__)

# Bytes read from a channel per recv call
RECV_CHUNK_SIZE = 4096

# Seconds between channel polls while a command runs
CHANNEL_POLL_INTERVAL = 0.1


class SSHShell(Shell):
    """Run commands on a remote host through a connected paramiko client."""

    def __init__(self, client: paramiko.SSHClient, host: str) -> None:
        super().__init__()
        self.client = client
        self.host = host
        self._sftp: paramiko.SFTPClient | None = None

    @property
    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self.client.open_sftp()
        return self._sftp

    def _execute(
        self,
        line: str,
        *,
        timeout: float | None,
        stream: bool,
    ) -> CommandResult:
        _stdin, stdout, _stderr = self.client.exec_command(line, get_pty=False)
        channel = stdout.channel
        channel.setblocking(0)

        out_lines: list[str] = []
        err_lines: list[str] = []
        out_buffer = _LineBuffer(out_lines, logging.INFO if stream else None)
        err_buffer = _LineBuffer(err_lines, logging.WARNING if stream else None)

        deadline = time.monotonic() + timeout if timeout is not None else None
        while not channel.exit_status_ready():
            received = False
            while channel.recv_ready():
                out_buffer.feed(channel.recv(RECV_CHUNK_SIZE))
                received = True
            while channel.recv_stderr_ready():
                err_buffer.feed(channel.recv_stderr(RECV_CHUNK_SIZE))
                received = True
            if deadline is not None and time.monotonic() > deadline:
                channel.close()
                logger.error("Command timed out after %ss on %s: %s", timeout, self.host, line)
                out_buffer.flush()
                err_buffer.flush()
                return CommandResult(
                    command=line,
                    exit_code=TIMEOUT_EXIT_CODE,
                    stdout="\n".join(out_lines),
                    stderr="\n".join([*err_lines, f"timed out after {timeout}s"]),
                )
            if not received:
                time.sleep(CHANNEL_POLL_INTERVAL)

        # Drain whatever arrived after the exit status
        while channel.recv_ready():
            out_buffer.feed(channel.recv(RECV_CHUNK_SIZE))
        while channel.recv_stderr_ready():
            err_buffer.feed(channel.recv_stderr(RECV_CHUNK_SIZE))
        out_buffer.flush()
        err_buffer.flush()

        return CommandResult(
            command=line,
            exit_code=channel.recv_exit_status(),
            stdout="\n".join(out_lines),
            stderr="\n".join(err_lines),
        )

    def write_text(self, path: str, content: str, mode: int | None = None) -> None:
        with self.sftp.open(path, "w") as f:
            if mode is not None:
                self.sftp.chmod(path, mode)
            f.write(content)
        logger.debug("Wrote %s:%s (%d bytes)", self.host, path, len(content))

    def put_file(self, local_path: Path, remote_path: str, mode: int | None = None) -> None:
        self.sftp.put(str(local_path), remote_path)
        if mode is not None:
            self.sftp.chmod(remote_path, mode)
        logger.info("Copied %s -> %s:%s", local_path.name, self.host, remote_path)

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        self.client.close()


class _LineBuffer:
    """Split decoded channel data into lines, optionally logging each one."""

    def __init__(self, sink: list[str], level: int | None) -> None:
        self.sink = sink
        self.level = level
        self._partial = ""

    def feed(self, data: bytes) -> None:
        text = self._partial + data.decode("utf-8", errors="replace")
        *complete, self._partial = text.split("\n")
        for line in complete:
            self._emit(line)

    def flush(self) -> None:
        if self._partial:
            self._emit(self._partial)
            self._partial = ""

    def _emit(self, line: str) -> None:
        line = line.rstrip()
        if not line:
            return
        self.sink.append(line)
        if self.level is not None:
            logger.log(self.level, "  %s", line)


def connect_ssh(
    host: str,
    username: str,
    key_filename: str | Path,
    *,
    attempts: int = 30,
    interval: float = 10,
    connect_timeout: float = 10,
) -> SSHShell:
    """Wait for SSH on ``host`` and return a connected shell.

    Args:
        host: Host name or IP address.
        username: SSH user.
        key_filename: Path to the private key.
        attempts: Maximum connection attempts.
        interval: Seconds between attempts.
        connect_timeout: Per-attempt TCP/banner timeout.

    Returns:
        Connected SSHShell.

    Raises:
        RetryExhaustedError: If no attempt succeeded.
    """
    logger.info("Waiting for SSH on %s@%s...", username, host)

    def _attempt() -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=host,
                username=username,
                key_filename=str(key_filename),
                timeout=connect_timeout,
                banner_timeout=connect_timeout,
            )
        except (paramiko.SSHException, OSError):
            client.close()
            raise
        transport = client.get_transport()
        if transport is not None:
            # Keep the session alive during long silent build phases
            transport.set_keepalive(30)
        return client

    client = poll(
        _attempt,
        attempts=attempts,
        interval=interval,
        description=f"SSH connection to {host}",
        retry_on=(paramiko.SSHException, OSError),
    )
    logger.info("SSH connection established to %s", host)
    return SSHShell(client, host)


__all__ = ["SSHShell", "connect_ssh"]
