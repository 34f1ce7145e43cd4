"""Command transports.

This module handles:
- Composing command lines (sudo, cwd, env)
- Running commands locally (subprocess) or remotely (paramiko)
- Transferring files and recording command transcripts
"""

from capi_imagegen.shell.base import (
    CommandError,
    CommandResult,
    Shell,
    compose_command,
)
from capi_imagegen.shell.local import LocalShell

__all__ = ["CommandError", "CommandResult", "LocalShell", "Shell", "compose_command"]

# SSHShell lives in capi_imagegen.shell.ssh so paramiko is imported only
# when a remote connection is made.
