"""Build service module.

This module provides the high-level build API:
- run_build_pipeline(): run every build stage on one host, in order
- Per-stage timing collected into a BuildReport

Stages: environment-setup, config-render, build-tool-invoke,
format-conversion, boot-file-extraction. Any stage failure aborts the
pipeline; the builder credential is removed regardless.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from capi_imagegen.builds.convert import convert_formats
from capi_imagegen.builds.environment import setup_environment
from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.builds.pxe import BootFiles, extract_boot_files
from capi_imagegen.builds.runner import build_log_path, builder_credentials, run_packer
from capi_imagegen.shell import Shell
from capi_imagegen.types import ImageFormat, StageTiming

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

logger = logging.getLogger(__name__)

STAGES = [
    "environment-setup",
    "config-render",
    "build-tool-invoke",
    "format-conversion",
    "boot-file-extraction",
]


@dataclass
class BuildReport:
    """Outcome of a completed build.

    Attributes:
        params: Versions the image was built with.
        artifacts: Disk image path per format.
        boot_files: Extracted kernel and initrd.
        log_path: Packer log on the build host.
        timings: Stage durations in execution order.
    """

    params: BuildParameters
    artifacts: dict[ImageFormat, str] = field(default_factory=dict)
    boot_files: BootFiles | None = None
    log_path: str | None = None
    timings: list[StageTiming] = field(default_factory=list)

    @property
    def total_seconds(self) -> float:
        return sum(t.seconds for t in self.timings)


@contextmanager
def _stage(name: str, report: BuildReport) -> Iterator[None]:
    logger.info("==> %s", name)
    start = time.monotonic()
    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        report.timings.append(StageTiming(name=name, seconds=elapsed))
        logger.debug("%s took %.1fs", name, elapsed)


def run_build_pipeline(
    shell: Shell,
    params: BuildParameters,
    settings: Settings,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> BuildReport:
    """Build the CAPI image and derived artifacts on the host behind ``shell``.

    Args:
        shell: Build host shell.
        params: Build parameters.
        settings: Settings providing remote paths, retries and timeouts.
        sleep: Sleep function for the NBD partition wait.

    Returns:
        BuildReport describing produced artifacts.

    Raises:
        EnvironmentSetupError: If the host cannot be prepared.
        BuildExecutionError: If Packer fails.
        ConversionError: If format conversion fails.
        BootFileExtractionError: If kernel/initrd extraction fails.
    """
    logger.info(
        "Building %s (containerd %s, CNI %s, crictl %s, runc %s)",
        params.image_name,
        params.containerd_version,
        params.cni_version,
        params.crictl_version,
        params.runc_version,
    )
    report = BuildReport(params=params, log_path=build_log_path(settings))

    with _stage("environment-setup", report):
        setup_environment(shell, settings)

    # config-render and build-tool-invoke share the builder credential scope
    logger.info("==> config-render")
    start = time.monotonic()
    with builder_credentials(shell, params, settings) as files:
        report.timings.append(StageTiming("config-render", time.monotonic() - start))
        with _stage("build-tool-invoke", report):
            packer = run_packer(shell, params, settings, files)

    with _stage("format-conversion", report):
        report.artifacts = convert_formats(
            shell, params, settings.output_dir, packer.primary_artifact
        )

    with _stage("boot-file-extraction", report):
        report.boot_files = extract_boot_files(
            shell,
            report.artifacts[ImageFormat.QCOW2],
            settings.pxe_dir,
            settings.ssh_user,
            sleep=sleep,
        )

    logger.info(
        "Build complete in %dm %ds",
        int(report.total_seconds) // 60,
        int(report.total_seconds) % 60,
    )
    return report


__all__ = ["STAGES", "BuildReport", "run_build_pipeline"]
