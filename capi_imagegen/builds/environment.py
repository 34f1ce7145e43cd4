"""Build host environment setup.

This module handles:
- Creating the build, output and PXE directories
- Making /dev/kvm usable by the build user
- Installing packer, qemu, ansible and helpers only when missing
- Cloning kubernetes-sigs/image-builder only when absent
- Idempotent ARM64 patches to image-builder roles

Every step checks before acting, so re-running on a prepared host is safe.
apt is the only step retried (mirror flakiness and dpkg lock contention).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import yaml

from capi_imagegen.retry import RetryExhaustedError, poll
from capi_imagegen.shell import CommandResult, Shell

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

logger = logging.getLogger(__name__)

BUILD_PACKAGES = [
    "sshpass",
    "genisoimage",
    "qemu-system-arm",
    "qemu-efi-aarch64",
    "qemu-utils",
    "ansible",
    "python3-pip",
    "cloud-image-utils",
]

# Executables whose presence marks a prepared host
MARKER_BINARIES = ["packer", "sshpass"]

HASHICORP_KEYRING = "/usr/share/keyrings/hashicorp-archive-keyring.gpg"
HASHICORP_LIST = "/etc/apt/sources.list.d/hashicorp.list"
HASHICORP_REPO = "https://apt.releases.hashicorp.com"

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}

# Patch markers; a file containing its marker is already patched
QEMU_TASKS_MARKER = "ignore_errors: true"
BASH_COMPLETION_MARKER = "Create bash-completion directory"
KUBECTL_COMPLETION_TASK = "- name: Generate kubectl bash completion"

SYSPREP_OVERRIDES = {
    "sysprep-main.yml": "tasks/main.yml",
    "sysprep-handlers.yml": "handlers/main.yml",
}


class EnvironmentSetupError(Exception):
    """Raised when the build host cannot be prepared."""

    def __init__(self, message: str, code: str = "environment_error") -> None:
        super().__init__(message)
        self.code = code


def run_with_retry(
    shell: Shell,
    command: list[str],
    *,
    attempts: int,
    delay: float,
    description: str,
    sudo: bool = True,
) -> CommandResult:
    """Run a command, retrying on non-zero exit with a fixed delay.

    Raises:
        EnvironmentSetupError: If every attempt failed.
    """

    def _attempt() -> CommandResult | None:
        result = shell.run(command, sudo=sudo, env=APT_ENV, check=False)
        if result.ok:
            return result
        logger.warning("%s failed (exit %d), will retry", description, result.exit_code)
        return None

    try:
        return poll(_attempt, attempts=attempts, interval=delay, description=description)
    except RetryExhaustedError as e:
        raise EnvironmentSetupError(str(e), code="apt_failed") from e


def _apt_install(shell: Shell, settings: Settings, packages: list[str]) -> None:
    run_with_retry(
        shell,
        ["apt-get", "update", "-qq"],
        attempts=settings.apt_attempts,
        delay=settings.apt_retry_delay,
        description="apt-get update",
    )
    run_with_retry(
        shell,
        ["apt-get", "install", "-y", "-qq", "-o", "DPkg::Lock::Timeout=120", *packages],
        attempts=settings.apt_attempts,
        delay=settings.apt_retry_delay,
        description=f"apt-get install {' '.join(packages)}",
    )


def prepare_directories(shell: Shell, settings: Settings) -> None:
    shell.run(
        ["mkdir", "-p", settings.build_dir, settings.output_dir, settings.pxe_dir],
        sudo=True,
    )
    user = settings.ssh_user
    shell.run(["chown", "-R", f"{user}:{user}", settings.build_dir], sudo=True)


def ensure_kvm_access(shell: Shell) -> None:
    if not shell.run(["test", "-w", "/dev/kvm"], check=False).ok:
        logger.info("Granting access to /dev/kvm")
        shell.run(["chmod", "666", "/dev/kvm"], sudo=True)


def install_packer(shell: Shell, settings: Settings) -> None:
    logger.info("Installing Packer from the HashiCorp apt repository...")
    shell.run(
        f"wget -q -O- {HASHICORP_REPO}/gpg"
        f" | sudo gpg --batch --yes --dearmor -o {HASHICORP_KEYRING}"
    )
    entry = f"deb [signed-by={HASHICORP_KEYRING}] {HASHICORP_REPO} $(lsb_release -cs) main"
    shell.run(f'echo "{entry}" | sudo tee {HASHICORP_LIST} > /dev/null')
    _apt_install(shell, settings, ["packer"])


def install_packages(shell: Shell, settings: Settings) -> bool:
    """Install build packages unless the marker binaries are present.

    Returns:
        True if anything was installed.
    """
    if all(shell.which(name) for name in MARKER_BINARIES):
        logger.info("Build packages already installed")
        return False

    logger.info("Installing required packages...")
    _apt_install(shell, settings, BUILD_PACKAGES)
    if not shell.which("packer"):
        install_packer(shell, settings)
    return True


def clone_image_builder(shell: Shell, settings: Settings) -> bool:
    """Clone image-builder if absent.

    Returns:
        True if the repository was cloned.
    """
    target = settings.image_builder_dir
    if shell.is_dir(target):
        logger.info("image-builder already present at %s", target)
        return False

    logger.info("Cloning image-builder repository...")
    parent = target.rsplit("/", 1)[0] or "/"
    shell.run(["mkdir", "-p", parent], sudo=True)
    shell.run(
        ["git", "clone", "--depth", "1", settings.image_builder_repo, target],
        sudo=True,
    )
    user = settings.ssh_user
    shell.run(["chown", "-R", f"{user}:{user}", parent], sudo=True)
    return True


def _qemu_provider_tasks() -> str:
    tasks = [
        {
            "name": "Install cloud-init packages",
            "ansible.builtin.apt": {"name": "{{ qemu_debs }}", "state": "present"},
            "when": 'ansible_os_family == "Debian"',
        },
        {
            "name": "Enable hv-kvp-daemon",
            "ansible.builtin.systemd": {
                "name": "hv-kvp-daemon",
                "enabled": True,
                "state": "started",
            },
            "when": [
                'ansible_os_family == "Debian"',
                "enable_hv_kvp_daemon | default(false)",
            ],
            "ignore_errors": True,
        },
    ]
    return yaml.safe_dump(tasks, sort_keys=False)


def patch_qemu_provider_tasks(shell: Shell, settings: Settings) -> bool:
    """Replace the qemu provider tasks with an ARM64-safe version."""
    path = f"{settings.image_builder_dir}/images/capi/ansible/roles/providers/tasks/qemu.yml"
    if not shell.exists(path):
        return False
    if QEMU_TASKS_MARKER in shell.read_text(path):
        return False

    logger.info("Patching qemu provider tasks for ARM64...")
    shell.run(["cp", path, f"{path}.bak"])
    shell.write_text(path, _qemu_provider_tasks())
    return True


def patch_bash_completion(shell: Shell, settings: Settings) -> bool:
    """Create the bash-completion directory before kubectl completion runs."""
    path = f"{settings.image_builder_dir}/images/capi/ansible/roles/kubernetes/tasks/main.yml"
    if not shell.exists(path):
        return False
    content = shell.read_text(path)
    if BASH_COMPLETION_MARKER in content or KUBECTL_COMPLETION_TASK not in content:
        return False

    logger.info("Patching kubernetes tasks to create bash-completion directory...")
    task = (
        f"- name: {BASH_COMPLETION_MARKER}\n"
        "  ansible.builtin.file:\n"
        '    path: "{{ sysusr_prefix }}/share/bash-completion/completions"\n'
        "    state: directory\n"
        '    mode: "0755"\n'
        "\n"
    )
    shell.write_text(path, content.replace(KUBECTL_COMPLETION_TASK, task + KUBECTL_COMPLETION_TASK, 1))
    return True


def install_sysprep_overrides(shell: Shell, settings: Settings) -> list[str]:
    """Install patched sysprep files tolerating the post-sysprep SSH drop.

    Returns:
        Remote paths that were replaced.
    """
    if settings.sysprep_files_dir is None:
        return []

    role_dir = f"{settings.image_builder_dir}/images/capi/ansible/roles/sysprep"
    installed: list[str] = []
    for local_name, role_path in SYSPREP_OVERRIDES.items():
        local = settings.sysprep_files_dir / local_name
        if not local.is_file():
            logger.debug("No sysprep override %s", local)
            continue
        target = f"{role_dir}/{role_path}"
        logger.info("Installing patched sysprep file %s", role_path)
        shell.put_file(local, target)
        installed.append(target)
    return installed


def setup_environment(shell: Shell, settings: Settings) -> None:
    """Prepare the build host (safe to re-run)."""
    logger.info("Setting up build environment on %s...", shell.host)
    prepare_directories(shell, settings)
    ensure_kvm_access(shell)
    install_packages(shell, settings)
    clone_image_builder(shell, settings)
    patch_qemu_provider_tasks(shell, settings)
    patch_bash_completion(shell, settings)
    install_sysprep_overrides(shell, settings)
    logger.info("Build environment ready")


__all__ = [
    "BUILD_PACKAGES",
    "MARKER_BINARIES",
    "EnvironmentSetupError",
    "clone_image_builder",
    "ensure_kvm_access",
    "install_packages",
    "install_packer",
    "install_sysprep_overrides",
    "patch_bash_completion",
    "patch_qemu_provider_tasks",
    "prepare_directories",
    "run_with_retry",
    "setup_environment",
]
