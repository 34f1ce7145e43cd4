"""PXE boot file extraction.

The kernel and initrd are copied out of the built qcow2 by attaching it as a
network block device and mounting its first partition.
"""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from capi_imagegen.builds.artifacts import INITRD_PATTERNS, KERNEL_PATTERNS
from capi_imagegen.retry import RetryExhaustedError, poll
from capi_imagegen.shell import CommandError, Shell

logger = logging.getLogger(__name__)

NBD_DEVICE = "/dev/nbd0"
NBD_MAX_PARTITIONS = 8
BOOT_MOUNT_POINT = "/mnt/capi-boot"

# Partition node appears asynchronously after qemu-nbd connects
PARTITION_WAIT_ATTEMPTS = 10
PARTITION_WAIT_INTERVAL = 1


class BootFileExtractionError(Exception):
    """Raised when the kernel or initrd cannot be extracted."""

    def __init__(self, message: str, code: str = "boot_files_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BootFiles:
    kernel: str
    initrd: str


def _teardown(shell: Shell, command: list[str], what: str) -> None:
    result = shell.run(command, sudo=True, check=False)
    if not result.ok:
        logger.warning("Failed to %s: %s", what, result.stderr.strip() or result.exit_code)


@contextmanager
def attached_image(
    shell: Shell,
    image: str,
    *,
    device: str = NBD_DEVICE,
    mount_point: str = BOOT_MOUNT_POINT,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """Attach a qcow2 image and mount its first partition.

    The partition is unmounted and the device disconnected on every exit
    path, including failures while the mount is in use.

    Yields:
        The mount point.
    """
    partition = f"{device}p1"
    shell.run(["modprobe", "nbd", f"max_part={NBD_MAX_PARTITIONS}"], sudo=True)
    shell.run(["qemu-nbd", f"--connect={device}", image], sudo=True)
    mounted = False
    try:
        try:
            poll(
                lambda: shell.run(["test", "-b", partition], check=False).ok,
                attempts=PARTITION_WAIT_ATTEMPTS,
                interval=PARTITION_WAIT_INTERVAL,
                description=f"partition {partition}",
                sleep=sleep,
            )
        except RetryExhaustedError as e:
            raise BootFileExtractionError(str(e), code="nbd_partition_missing") from e
        shell.run(["mkdir", "-p", mount_point], sudo=True)
        shell.run(["mount", partition, mount_point], sudo=True)
        mounted = True
        yield mount_point
    finally:
        if mounted:
            _teardown(shell, ["umount", mount_point], f"unmount {mount_point}")
        _teardown(shell, ["qemu-nbd", "--disconnect", device], f"disconnect {device}")


def find_boot_file(shell: Shell, root: str, prefixes: list[str]) -> str | None:
    """Find one boot file by prefix, looking in /boot before the root."""
    for directory in (f"{root}/boot", root):
        for prefix in prefixes:
            pattern = f"{shlex.quote(directory)}/{prefix}*"
            result = shell.run(f"ls -1td -- {pattern} 2>/dev/null", sudo=True, check=False)
            if result.ok and result.lines:
                return result.lines[0]
    return None


def extract_boot_files(
    shell: Shell,
    image: str,
    pxe_dir: str,
    owner: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> BootFiles:
    """Copy exactly one kernel and one initrd from the image into ``pxe_dir``.

    Args:
        shell: Build host shell.
        image: qcow2 image path.
        pxe_dir: Destination directory.
        owner: User that should own the copied files.

    Returns:
        Paths of the copied kernel and initrd.

    Raises:
        BootFileExtractionError: If either file is missing or cannot be copied.
    """
    logger.info("Extracting PXE boot files...")
    shell.run(["mkdir", "-p", pxe_dir], sudo=True)

    copied: dict[str, str] = {}
    with attached_image(shell, image, sleep=sleep) as root:
        for kind, prefixes in (("kernel", KERNEL_PATTERNS), ("initrd", INITRD_PATTERNS)):
            source = find_boot_file(shell, root, prefixes)
            if source is None:
                raise BootFileExtractionError(
                    f"No {kind} found in {image}", code=f"{kind}_missing"
                )
            target = f"{pxe_dir}/{source.rsplit('/', 1)[-1]}"
            try:
                shell.run(["cp", "-L", source, target], sudo=True)
            except CommandError as e:
                raise BootFileExtractionError(
                    f"Failed to copy {kind} {source}: {e}", code="copy_failed"
                ) from e
            copied[kind] = target

    paths = list(copied.values())
    shell.run(["chmod", "644", *paths], sudo=True)
    shell.run(["chown", f"{owner}:{owner}", *paths], sudo=True)
    logger.info("PXE files extracted: %s", ", ".join(paths))
    return BootFiles(kernel=copied["kernel"], initrd=copied["initrd"])


__all__ = [
    "BOOT_MOUNT_POINT",
    "NBD_DEVICE",
    "BootFileExtractionError",
    "BootFiles",
    "attached_image",
    "extract_boot_files",
    "find_boot_file",
]
