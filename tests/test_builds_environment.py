"""Tests for builds/environment.py module.

Uses a scripted shell; nothing runs on the host.
"""

from pathlib import Path

import pytest

from capi_imagegen.builds.environment import (
    BASH_COMPLETION_MARKER,
    KUBECTL_COMPLETION_TASK,
    EnvironmentSetupError,
    clone_image_builder,
    ensure_kvm_access,
    install_packages,
    install_sysprep_overrides,
    patch_bash_completion,
    patch_qemu_provider_tasks,
    run_with_retry,
    setup_environment,
)
from capi_imagegen.config import Settings
from fakes import FakeShell

QEMU_TASKS = "/opt/test-images/image-builder/images/capi/ansible/roles/providers/tasks/qemu.yml"
K8S_TASKS = "/opt/test-images/image-builder/images/capi/ansible/roles/kubernetes/tasks/main.yml"


class TestRunWithRetry:
    def test_retries_until_success(self, shell: FakeShell) -> None:
        shell.on_sequence(r"apt-get update", [(100, ""), (100, ""), (0, "")])

        result = run_with_retry(
            shell, ["apt-get", "update"], attempts=3, delay=0, description="apt-get update"
        )

        assert result.ok
        assert len([c for c in shell.commands if "apt-get update" in c]) == 3

    def test_exhausted(self, shell: FakeShell) -> None:
        shell.on(r"apt-get install", exit_code=100)

        with pytest.raises(EnvironmentSetupError) as exc_info:
            run_with_retry(
                shell, ["apt-get", "install", "x"], attempts=2, delay=0, description="install"
            )
        assert exc_info.value.code == "apt_failed"

    def test_noninteractive_sudo(self, shell: FakeShell) -> None:
        run_with_retry(shell, ["apt-get", "update"], attempts=1, delay=0, description="u")
        assert shell.commands[0] == "sudo env DEBIAN_FRONTEND=noninteractive apt-get update"


class TestInstallPackages:
    def test_prepared_host_installs_nothing(self, shell: FakeShell, settings: Settings) -> None:
        assert install_packages(shell, settings) is False
        assert not shell.ran(r"apt-get")

    def test_fresh_host_installs_packages_and_packer(
        self, shell: FakeShell, settings: Settings
    ) -> None:
        shell.on(r"command -v (packer|sshpass)", exit_code=1)

        assert install_packages(shell, settings) is True

        assert shell.ran(r"apt-get install .*qemu-system-arm")
        assert shell.ran(r"hashicorp-archive-keyring")
        assert shell.ran(r"apt-get install .* packer$")

    def test_packer_from_distro_skips_hashicorp_repo(
        self, shell: FakeShell, settings: Settings
    ) -> None:
        shell.on(r"command -v sshpass", exit_code=1)

        install_packages(shell, settings)

        assert not shell.ran(r"hashicorp")


class TestKvmAccess:
    def test_writable_device_untouched(self, shell: FakeShell) -> None:
        ensure_kvm_access(shell)
        assert not shell.ran(r"chmod")

    def test_grants_access(self, shell: FakeShell) -> None:
        shell.on(r"test -w /dev/kvm", exit_code=1)
        ensure_kvm_access(shell)
        assert shell.ran(r"sudo chmod 666 /dev/kvm")


class TestCloneImageBuilder:
    def test_existing_checkout(self, shell: FakeShell, settings: Settings) -> None:
        assert clone_image_builder(shell, settings) is False
        assert not shell.ran(r"git clone")

    def test_clones_when_absent(self, shell: FakeShell, settings: Settings) -> None:
        shell.on(r"test -d /opt/test-images/image-builder", exit_code=1)

        assert clone_image_builder(shell, settings) is True
        assert shell.ran(
            r"git clone --depth 1 https://github.com/kubernetes-sigs/image-builder.git "
            r"/opt/test-images/image-builder"
        )
        assert shell.ran(r"chown -R ubuntu:ubuntu /opt/test-images$")


class TestPatches:
    def test_qemu_tasks_replaced_once(self, shell: FakeShell, settings: Settings) -> None:
        shell.on(rf"cat {QEMU_TASKS}", stdout="- name: Install hv-kvp-daemon\n")

        assert patch_qemu_provider_tasks(shell, settings) is True
        assert shell.ran(rf"cp {QEMU_TASKS} {QEMU_TASKS}\.bak")
        assert "ignore_errors: true" in shell.files[QEMU_TASKS]
        assert "{{ qemu_debs }}" in shell.files[QEMU_TASKS]

    def test_qemu_tasks_already_patched(self, shell: FakeShell, settings: Settings) -> None:
        shell.on(rf"cat {QEMU_TASKS}", stdout="  ignore_errors: true\n")
        assert patch_qemu_provider_tasks(shell, settings) is False
        assert QEMU_TASKS not in shell.files

    def test_qemu_tasks_missing(self, shell: FakeShell, settings: Settings) -> None:
        shell.on(r"test -e .*qemu\.yml", exit_code=1)
        assert patch_qemu_provider_tasks(shell, settings) is False

    def test_bash_completion_inserted_before_kubectl(
        self, shell: FakeShell, settings: Settings
    ) -> None:
        original = f"- name: Install kubectl\n  debug:\n\n{KUBECTL_COMPLETION_TASK}\n  shell: x\n"
        shell.on(rf"cat {K8S_TASKS}", stdout=original)

        assert patch_bash_completion(shell, settings) is True

        patched = shell.files[K8S_TASKS]
        assert patched.index(BASH_COMPLETION_MARKER) < patched.index(KUBECTL_COMPLETION_TASK)
        assert patched.count(KUBECTL_COMPLETION_TASK) == 1

    def test_bash_completion_idempotent(self, shell: FakeShell, settings: Settings) -> None:
        shell.on(
            rf"cat {K8S_TASKS}",
            stdout=f"- name: {BASH_COMPLETION_MARKER}\n{KUBECTL_COMPLETION_TASK}\n",
        )
        assert patch_bash_completion(shell, settings) is False


class TestSysprepOverrides:
    def test_not_configured(self, shell: FakeShell, settings: Settings) -> None:
        assert install_sysprep_overrides(shell, settings) == []

    def test_installs_present_files(self, shell: FakeShell, tmp_path: Path) -> None:
        (tmp_path / "sysprep-main.yml").write_text("- name: main\n")
        settings = Settings(_env_file=None, sysprep_files_dir=tmp_path)

        installed = install_sysprep_overrides(shell, settings)

        assert installed == [
            "/opt/test-images/image-builder/images/capi/ansible/roles/sysprep/tasks/main.yml"
        ]
        assert shell.put_files == [(tmp_path / "sysprep-main.yml", installed[0])]


class TestSetupEnvironment:
    def test_prepared_host_is_noop(self, shell: FakeShell, settings: Settings) -> None:
        """A second run on a prepared host changes nothing."""
        shell.on(rf"cat {QEMU_TASKS}", stdout="ignore_errors: true\n")
        shell.on(rf"cat {K8S_TASKS}", stdout=f"{BASH_COMPLETION_MARKER}\n")

        setup_environment(shell, settings)

        assert shell.ran(r"sudo mkdir -p /opt/capi-build /opt/capi-build/output")
        assert not shell.ran(r"apt-get|git clone|chmod 666")
        assert shell.files == {}
