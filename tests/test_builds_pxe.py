"""Tests for builds/pxe.py module."""

import pytest
from fakes import FakeShell

from capi_imagegen.builds.pxe import (
    BootFileExtractionError,
    attached_image,
    extract_boot_files,
    find_boot_file,
)

IMAGE = "/opt/capi-build/output/img.qcow2"
PXE = "/opt/capi-build/pxe-files"
KERNEL = "/mnt/capi-boot/boot/vmlinuz-5.15.0-125-generic"
INITRD = "/mnt/capi-boot/boot/initrd.img-5.15.0-125-generic"


def no_sleep(_: float) -> None:
    pass


@pytest.fixture
def boot_shell(shell: FakeShell) -> FakeShell:
    shell.on(r"/mnt/capi-boot/boot/vmlinuz\*", stdout=f"{KERNEL}\n")
    shell.on(r"/mnt/capi-boot/boot/initrd\*", stdout=f"{INITRD}\n")
    return shell


class TestAttachedImage:
    def test_attach_and_release(self, shell: FakeShell) -> None:
        with attached_image(shell, IMAGE, sleep=no_sleep) as root:
            assert root == "/mnt/capi-boot"
            assert shell.ran(r"sudo mount /dev/nbd0p1 /mnt/capi-boot")

        assert shell.commands[0] == "sudo modprobe nbd max_part=8"
        assert shell.commands[1] == f"sudo qemu-nbd --connect=/dev/nbd0 {IMAGE}"
        assert shell.commands[-2:] == [
            "sudo umount /mnt/capi-boot",
            "sudo qemu-nbd --disconnect /dev/nbd0",
        ]

    def test_waits_for_partition(self, shell: FakeShell) -> None:
        shell.on_sequence(r"test -b /dev/nbd0p1", [(1, ""), (1, ""), (0, "")])
        sleeps: list[float] = []

        with attached_image(shell, IMAGE, sleep=sleeps.append):
            pass

        assert len(sleeps) == 2

    def test_partition_never_appears(self, shell: FakeShell) -> None:
        shell.on(r"test -b /dev/nbd0p1", exit_code=1)

        with pytest.raises(BootFileExtractionError) as exc_info:
            with attached_image(shell, IMAGE, sleep=no_sleep):
                pass

        assert exc_info.value.code == "nbd_partition_missing"
        assert not shell.ran(r"umount")
        assert shell.commands[-1] == "sudo qemu-nbd --disconnect /dev/nbd0"

    def test_released_when_body_fails(self, shell: FakeShell) -> None:
        with pytest.raises(RuntimeError):
            with attached_image(shell, IMAGE, sleep=no_sleep):
                raise RuntimeError("boom")

        assert shell.index(r"umount") < shell.index(r"--disconnect")


class TestFindBootFile:
    def test_prefers_boot_directory(self, boot_shell: FakeShell) -> None:
        assert find_boot_file(boot_shell, "/mnt/capi-boot", ["vmlinuz"]) == KERNEL

    def test_falls_back_to_root(self, shell: FakeShell) -> None:
        shell.on(r"/mnt/capi-boot/vmlinuz\*", stdout="/mnt/capi-boot/vmlinuz\n")
        assert find_boot_file(shell, "/mnt/capi-boot", ["vmlinuz"]) == "/mnt/capi-boot/vmlinuz"

    def test_not_found(self, shell: FakeShell) -> None:
        assert find_boot_file(shell, "/mnt/capi-boot", ["vmlinuz"]) is None


class TestExtractBootFiles:
    def test_copies_kernel_and_initrd(self, boot_shell: FakeShell) -> None:
        files = extract_boot_files(boot_shell, IMAGE, PXE, "ubuntu", sleep=no_sleep)

        assert files.kernel == f"{PXE}/vmlinuz-5.15.0-125-generic"
        assert files.initrd == f"{PXE}/initrd.img-5.15.0-125-generic"
        assert boot_shell.ran(rf"sudo cp -L {KERNEL} {PXE}/vmlinuz-5.15.0-125-generic")
        assert boot_shell.ran(rf"sudo chown ubuntu:ubuntu {files.kernel} {files.initrd}")
        assert boot_shell.ran(rf"sudo chmod 644 {files.kernel} {files.initrd}")

    def test_permissions_fixed_after_release(self, boot_shell: FakeShell) -> None:
        extract_boot_files(boot_shell, IMAGE, PXE, "ubuntu", sleep=no_sleep)
        assert boot_shell.index(r"--disconnect") < boot_shell.index(r"chmod 644")

    def test_missing_kernel(self, shell: FakeShell) -> None:
        with pytest.raises(BootFileExtractionError) as exc_info:
            extract_boot_files(shell, IMAGE, PXE, "ubuntu", sleep=no_sleep)

        assert exc_info.value.code == "kernel_missing"
        assert shell.ran(r"umount /mnt/capi-boot")
        assert shell.ran(r"--disconnect")

    def test_copy_failure_unmounts(self, boot_shell: FakeShell) -> None:
        boot_shell.on(r"cp -L", exit_code=1, stderr="Input/output error")

        with pytest.raises(BootFileExtractionError) as exc_info:
            extract_boot_files(boot_shell, IMAGE, PXE, "ubuntu", sleep=no_sleep)

        assert exc_info.value.code == "copy_failed"
        assert boot_shell.index(r"cp -L") < boot_shell.index(r"umount /mnt/capi-boot")
        assert boot_shell.commands[-1] == "sudo qemu-nbd --disconnect /dev/nbd0"
