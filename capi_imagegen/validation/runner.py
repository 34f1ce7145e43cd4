"""Boot-test runner.

Sequence on the ARM64 test host:
    preflight (arch, /dev/kvm, kvm-ok) -> resolve image -> disposable VM
      -> boot wait -> ordered probe checklist

The VM is torn down on every exit path. A boot failure records ``vm_boot``
as failed and the guest probes are not run.
"""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Callable
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.shell import Shell
from capi_imagegen.types import ProbeOutcome
from capi_imagegen.validation.probes import (
    Probe,
    ValidationError,
    ValidationReport,
    default_checklist,
)
from capi_imagegen.validation.vm import (
    BootTimeoutError,
    GuestSession,
    VMSpec,
    VMStoppedError,
    disposable_vm,
    ensure_guest_keypair,
    wait_for_boot,
)

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

logger = logging.getLogger(__name__)

EXPECTED_ARCH = "aarch64"
REQUIRED_TOOLS = ["virsh", "virt-install", "cloud-localds"]


def check_host(shell: Shell, report: ValidationReport) -> bool:
    """Host preflight.

    Returns:
        False if /dev/kvm is missing (no VM may be created).

    Raises:
        ValidationError: If the host is not ARM64 or lacks libvirt tooling.
    """
    arch = shell.run(["uname", "-m"]).stdout.strip()
    if arch != EXPECTED_ARCH:
        raise ValidationError(
            f"Validation must run on ARM64 hardware (current architecture: {arch})",
            code="wrong_architecture",
        )

    missing = [tool for tool in REQUIRED_TOOLS if not shell.which(tool)]
    if missing:
        raise ValidationError(
            f"Missing tools on {shell.host}: {', '.join(missing)}", code="missing_tools"
        )

    if shell.exists("/dev/kvm"):
        report.record("kvm_device", ProbeOutcome.PASS)
    else:
        report.record("kvm_device", ProbeOutcome.FAIL, "/dev/kvm not found")
        return False

    kvm_ok = shell.run("kvm-ok 2>/dev/null", check=False)
    if "can be used" in kvm_ok.stdout:
        report.record("kvm_acceleration", ProbeOutcome.PASS)
    else:
        report.record("kvm_acceleration", ProbeOutcome.WARN, "KVM acceleration may not be available")
    return True


def resolve_image(
    shell: Shell,
    test_dir: str,
    *,
    bucket: str | None = None,
    prefix: str = "images",
    region: str | None = None,
    exclude: tuple[str, ...] = (),
) -> str:
    """Find the image to test.

    The newest local ``*.qcow2`` in ``test_dir`` wins; otherwise the newest
    qcow2 under ``s3://<bucket>/<prefix>/`` is downloaded into ``test_dir``.

    Raises:
        ValidationError: If no image can be found.
    """
    for path in shell.glob(f"{shlex.quote(test_dir)}/*.qcow2"):
        if PurePosixPath(path).name not in exclude:
            logger.info("Using local image %s", path)
            return path

    if not bucket:
        raise ValidationError(
            f"No test image found; copy one to {test_dir}/ or set S3_BUCKET",
            code="no_image",
        )

    logger.warning("No local image found, checking s3://%s/%s/", bucket, prefix)
    region_args = ["--region", region] if region else []
    listing = shell.run(["aws", "s3", "ls", f"s3://{bucket}/{prefix}/", *region_args], check=False)
    # "2025-01-01 12:00:00  1234 name.qcow2"; lines sort by upload time
    entries = sorted(
        line for line in listing.lines if line.endswith(".qcow2") and "latest" not in line
    )
    if not listing.ok or not entries:
        raise ValidationError(
            f"No qcow2 image found in s3://{bucket}/{prefix}/", code="no_image"
        )

    name = entries[-1].split()[-1]
    target = f"{test_dir}/{name}"
    logger.info("Downloading %s", name)
    shell.run(["aws", "s3", "cp", f"s3://{bucket}/{prefix}/{name}", target, "--no-progress", *region_args])
    return target


def run_checklist(session: GuestSession, probes: list[Probe], report: ValidationReport) -> None:
    for probe in probes:
        logger.info("Probing %s...", probe.name)
        result = session.run(probe.command, timeout=probe.timeout)
        outcome, detail = probe.evaluate(result)
        report.record(probe.name, outcome, detail)


def run_validation(
    shell: Shell,
    settings: Settings,
    params: BuildParameters,
    *,
    bucket: str | None = None,
    image: str | None = None,
    probes: list[Probe] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ValidationReport:
    """Boot-test an image on the host behind ``shell``.

    Args:
        shell: Test host shell.
        settings: Settings providing VM sizing, paths and timeouts.
        params: Build parameters (expected kubelet series).
        bucket: Bucket to fetch the image from when none is local.
        image: Explicit image path on the test host.
        probes: Checklist override.
        sleep: Sleep function for the boot wait.

    Returns:
        ValidationReport; its outcome is ``fail`` if any probe failed.

    Raises:
        ValidationError: If validation cannot start (wrong host, no image).
    """
    logger.info("ARM64 CAPI image test suite")
    report = ValidationReport()

    if not check_host(shell, report):
        logger.error("Results: %s", report.summary_line)
        return report

    test_dir = settings.test_dir
    user = settings.ssh_user
    shell.run(["mkdir", "-p", test_dir], sudo=True)
    shell.run(["chown", f"{user}:{user}", test_dir], sudo=True)

    report.image = image or resolve_image(
        shell,
        test_dir,
        bucket=bucket,
        prefix=settings.s3_prefix,
        region=settings.aws_region,
        exclude=(f"{settings.vm_name}.qcow2",),
    )
    key_path, public_key = ensure_guest_keypair(shell, test_dir)
    spec = VMSpec(
        name=settings.vm_name,
        image=report.image,
        work_dir=test_dir,
        memory=settings.vm_memory,
        cpus=settings.vm_cpus,
    )

    with disposable_vm(shell, spec, public_key, user=user):
        try:
            session = wait_for_boot(
                shell,
                spec,
                lambda address: GuestSession(shell, address, user, key_path),
                timeout=settings.vm_boot_timeout,
                interval=settings.poll_interval,
                sleep=sleep,
            )
        except (BootTimeoutError, VMStoppedError) as e:
            report.record("vm_boot", ProbeOutcome.FAIL, str(e))
        else:
            report.vm_ip = session.address
            report.record("vm_boot", ProbeOutcome.PASS)
            run_checklist(session, probes if probes is not None else default_checklist(params), report)

    logger.info("Results: %s", report.summary_line)
    return report


__all__ = [
    "EXPECTED_ARCH",
    "check_host",
    "resolve_image",
    "run_checklist",
    "run_validation",
]
