"""Disposable libvirt VM for boot tests.

This module handles:
- A host-local ed25519 key pair used to reach the guest
- Creating the VM from a copy of the image with a cloud-init seed ISO
- Guaranteed teardown of the domain, disk copy and seed ISO
- Waiting for the guest to boot and accept SSH
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from capi_imagegen.builds.templates import render_meta_data, render_test_user_data
from capi_imagegen.retry import RetryExhaustedError, poll
from capi_imagegen.shell import CommandResult, Shell
from capi_imagegen.validation.probes import ValidationError

logger = logging.getLogger(__name__)

GUEST_KEY_NAME = "capi-test-ed25519"
GUEST_SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "LogLevel=ERROR",
    "-o", "BatchMode=yes",
    "-o", "ConnectTimeout=5",
]

IPV4_PATTERN = re.compile(r"\b((?:\d{1,3}\.){3}\d{1,3})(?:/\d+)?\b")


class VMStoppedError(ValidationError):
    """Raised when the test VM leaves the running state during boot."""

    def __init__(self, name: str, state: str) -> None:
        super().__init__(f"VM {name} stopped unexpectedly (state: {state or 'unknown'})", code="vm_stopped")
        self.state = state


class BootTimeoutError(ValidationError):
    """Raised when the guest never became reachable."""

    def __init__(self, name: str, timeout: float) -> None:
        super().__init__(f"VM {name} did not boot within {timeout}s", code="vm_boot_timeout")


@dataclass(frozen=True)
class VMSpec:
    """Disposable VM definition.

    Attributes:
        name: libvirt domain name.
        image: Source qcow2; never modified.
        work_dir: Directory for the disk copy and seed ISO.
        memory: Memory in MiB.
        cpus: vCPU count.
    """

    name: str
    image: str
    work_dir: str
    memory: int = 4096
    cpus: int = 4
    os_variant: str = "ubuntu22.04"
    network: str = "default"

    @property
    def disk_path(self) -> str:
        return f"{self.work_dir}/{self.name}.qcow2"

    @property
    def seed_iso(self) -> str:
        return f"{self.work_dir}/{self.name}-cidata.iso"

    @property
    def seed_dir(self) -> str:
        return f"{self.work_dir}/cloud-init"


def ensure_guest_keypair(shell: Shell, work_dir: str) -> tuple[str, str]:
    """Generate the guest key pair if missing.

    Returns:
        (private key path, public key text).
    """
    private = f"{work_dir}/{GUEST_KEY_NAME}"
    if not shell.exists(private):
        logger.info("Generating guest SSH key %s", private)
        shell.run(["ssh-keygen", "-q", "-t", "ed25519", "-N", "", "-C", "capi-imagegen-test", "-f", private])
    public = shell.read_text(f"{private}.pub").strip()
    return private, public


class GuestSession:
    """Run commands inside the guest via ssh from the test host."""

    def __init__(self, shell: Shell, address: str, user: str, key_path: str) -> None:
        self.shell = shell
        self.address = address
        self.user = user
        self.key_path = key_path

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        argv = ["ssh", "-i", self.key_path, *GUEST_SSH_OPTIONS, f"{self.user}@{self.address}", command]
        return self.shell.run(argv, check=False, timeout=timeout)

    def reachable(self) -> bool:
        return self.run("echo ok", timeout=30).ok


def _virsh(shell: Shell, *args: str) -> CommandResult:
    return shell.run(["virsh", *args], sudo=True, check=False)


def domain_exists(shell: Shell, name: str) -> bool:
    return _virsh(shell, "dominfo", name).ok


def destroy_vm(shell: Shell, name: str) -> None:
    """Destroy and undefine a domain with its storage (best effort)."""
    if not domain_exists(shell, name):
        return
    logger.info("Cleaning up VM %s...", name)
    # Fails harmlessly when the domain is already shut off
    _virsh(shell, "destroy", name)
    result = _virsh(shell, "undefine", name, "--remove-all-storage", "--nvram")
    if not result.ok:
        logger.warning("Failed to undefine VM %s: %s", name, result.stderr.strip())


def _remove_files(shell: Shell, *paths: str) -> None:
    result = shell.run(["rm", "-f", *paths], sudo=True, check=False)
    if not result.ok:
        logger.warning("Failed to remove %s: %s", " ".join(paths), result.stderr.strip())


def create_vm(shell: Shell, spec: VMSpec, public_key: str, user: str) -> None:
    """Copy the image, render the seed ISO and define the domain."""
    logger.info("Creating test VM %s (%d MiB, %d vCPUs) from %s", spec.name, spec.memory, spec.cpus, spec.image)
    shell.run(["cp", spec.image, spec.disk_path])

    shell.run(["mkdir", "-p", spec.seed_dir])
    user_data = f"{spec.seed_dir}/user-data"
    meta_data = f"{spec.seed_dir}/meta-data"
    shell.write_text(user_data, render_test_user_data(public_key, user=user))
    shell.write_text(meta_data, render_meta_data("test-instance", "capi-test"))
    shell.run(["cloud-localds", spec.seed_iso, user_data, meta_data])

    shell.run(
        [
            "virt-install",
            "--name", spec.name,
            "--memory", str(spec.memory),
            "--vcpus", str(spec.cpus),
            "--disk", f"path={spec.disk_path},format=qcow2",
            "--disk", f"path={spec.seed_iso},device=cdrom",
            "--os-variant", spec.os_variant,
            "--network", f"network={spec.network}",
            "--graphics", "none",
            "--console", "pty,target_type=serial",
            "--noautoconsole",
            "--boot", "uefi",
        ],
        sudo=True,
    )


@contextmanager
def disposable_vm(shell: Shell, spec: VMSpec, public_key: str, user: str = "ubuntu") -> Iterator[VMSpec]:
    """Create a VM that is torn down on every exit path.

    Any leftover domain with the same name is removed first.

    Yields:
        The VM spec.
    """
    destroy_vm(shell, spec.name)
    try:
        create_vm(shell, spec, public_key, user)
        yield spec
    finally:
        destroy_vm(shell, spec.name)
        _remove_files(shell, spec.disk_path, spec.seed_iso)


def domain_address(shell: Shell, name: str) -> str | None:
    """First IPv4 address reported by ``virsh domifaddr``."""
    result = _virsh(shell, "domifaddr", name)
    if not result.ok:
        return None
    match = IPV4_PATTERN.search(result.stdout)
    return match.group(1) if match else None


def wait_for_boot(
    shell: Shell,
    spec: VMSpec,
    session_factory: Callable[[str], GuestSession],
    *,
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> GuestSession:
    """Wait until the guest has an address and accepts SSH.

    Raises:
        VMStoppedError: If the domain stops running.
        BootTimeoutError: If the guest is not reachable within ``timeout``.
    """
    logger.info("Waiting for VM to boot (timeout: %ss)...", timeout)

    def _ready() -> GuestSession | None:
        state = _virsh(shell, "domstate", spec.name).stdout.strip()
        if "running" not in state:
            raise VMStoppedError(spec.name, state)
        address = domain_address(shell, spec.name)
        if address is None:
            return None
        session = session_factory(address)
        return session if session.reachable() else None

    attempts = max(1, int(timeout // interval))
    try:
        session = poll(_ready, attempts=attempts, interval=interval, description=f"boot of {spec.name}", sleep=sleep)
    except RetryExhaustedError as e:
        raise BootTimeoutError(spec.name, timeout) from e
    logger.info("VM booted, SSH reachable at %s", session.address)
    return session


__all__ = [
    "GUEST_KEY_NAME",
    "BootTimeoutError",
    "GuestSession",
    "VMSpec",
    "VMStoppedError",
    "create_vm",
    "destroy_vm",
    "disposable_vm",
    "domain_address",
    "ensure_guest_keypair",
    "wait_for_boot",
]
