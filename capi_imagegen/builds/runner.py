"""Packer runner for the CAPI image build.

This module handles:
- Writing the Packer template and seed files into the build directory
- Composing `packer build` commands from build parameters
- Executing the build with output teed to a log file
- Removing the per-run builder credential afterwards

Packer failures are fatal; retries are left to Packer itself.
"""

from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.builds.templates import (
    ARM64_VARS_NAME,
    PACKER_CONFIG_NAME,
    PACKER_TEMPLATE,
    SECRET_VARS_NAME,
    generate_builder_password,
    render_arm64_vars,
    render_builder_user_data,
    render_meta_data,
    render_secret_vars,
)
from capi_imagegen.shell import Shell
from capi_imagegen.shell.base import TIMEOUT_EXIT_CODE

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

logger = logging.getLogger(__name__)

BUILD_LOG_NAME = "build.log"


class BuildExecutionError(Exception):
    """Raised when the Packer build fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: str | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_path = log_path
        self.code = code


@dataclass
class BuildFiles:
    """Files rendered for one build.

    Attributes:
        packer_config: Packer HCL template path.
        user_data: cloud-init user-data (contains the builder password).
        meta_data: cloud-init meta-data.
        arm64_vars: Ansible extra-vars file.
        secret_vars: Packer var-file with the builder password.
    """

    packer_config: str
    user_data: str
    meta_data: str
    arm64_vars: str
    secret_vars: str

    @property
    def credential_files(self) -> list[str]:
        return [self.secret_vars, self.user_data]


@dataclass
class PackerResult:
    """Result of a Packer build.

    Attributes:
        exit_code: Process exit code.
        primary_artifact: Path of the produced qcow2 (no extension yet).
        log_path: Remote build log.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
    """

    exit_code: int
    primary_artifact: str
    log_path: str
    started_at: datetime
    finished_at: datetime
    command: str

    @property
    def duration(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


def build_log_path(settings: Settings) -> str:
    return f"{settings.build_dir}/{BUILD_LOG_NAME}"


def build_file_paths(settings: Settings) -> BuildFiles:
    """Paths of the files rendered for a build in ``settings.build_dir``."""
    build_dir = settings.build_dir
    seed_dir = f"{build_dir}/cloud-init"
    return BuildFiles(
        packer_config=f"{build_dir}/{PACKER_CONFIG_NAME}",
        user_data=f"{seed_dir}/user-data",
        meta_data=f"{seed_dir}/meta-data",
        arm64_vars=f"{build_dir}/{ARM64_VARS_NAME}",
        secret_vars=f"{build_dir}/{SECRET_VARS_NAME}",
    )


def write_build_files(
    shell: Shell,
    params: BuildParameters,
    settings: Settings,
    password: str,
) -> BuildFiles:
    """Render the Packer template and seed files onto the build host.

    Args:
        shell: Build host shell.
        params: Build parameters.
        settings: Settings providing the build directory.
        password: Builder password for this run.

    Returns:
        Paths of the written files.
    """
    files = build_file_paths(settings)
    shell.run(["mkdir", "-p", f"{settings.build_dir}/cloud-init"])

    logger.info("Creating Packer configuration in %s", settings.build_dir)
    shell.write_text(files.packer_config, PACKER_TEMPLATE)
    shell.write_text(files.secret_vars, render_secret_vars(password), mode=0o600)
    shell.write_text(files.user_data, render_builder_user_data(password), mode=0o600)
    shell.write_text(
        files.meta_data,
        render_meta_data(f"capi-build-{int(time.time())}", "capi-builder"),
    )
    shell.write_text(files.arm64_vars, render_arm64_vars(params))
    return files


@contextmanager
def builder_credentials(
    shell: Shell,
    params: BuildParameters,
    settings: Settings,
) -> Iterator[BuildFiles]:
    """Render build files with a fresh password and remove it afterwards.

    The password lives only in the var-file and user-data for the duration
    of the block; both are deleted on every exit path.
    """
    password = generate_builder_password()
    # Removed even when rendering stops partway
    credential_files = build_file_paths(settings).credential_files
    try:
        yield write_build_files(shell, params, settings, password)
    finally:
        result = shell.run(["rm", "-f", *credential_files], check=False)
        if not result.ok:
            logger.warning("Failed to remove builder credential files: %s", result.stderr)


def compose_packer_command(
    params: BuildParameters,
    settings: Settings,
    files: BuildFiles,
) -> list[str]:
    """Compose the `packer build` command.

    Args:
        params: Build parameters.
        settings: Settings providing remote paths.
        files: Rendered build files.

    Returns:
        Command as list of strings.
    """
    variables = {
        **params.packer_vars(),
        "build_dir": settings.build_dir,
        "image_builder_dir": settings.image_builder_dir,
        "output_directory": settings.output_dir,
    }
    cmd = ["packer", "build"]
    for key, value in variables.items():
        cmd.extend(["-var", f"{key}={value}"])
    cmd.extend(["-var-file", files.secret_vars])
    cmd.append(files.packer_config)
    return cmd


def run_packer(
    shell: Shell,
    params: BuildParameters,
    settings: Settings,
    files: BuildFiles,
) -> PackerResult:
    """Execute the Packer build.

    Args:
        shell: Build host shell.
        params: Build parameters.
        settings: Settings providing paths and timeout.
        files: Rendered build files.

    Returns:
        PackerResult with execution details.

    Raises:
        BuildExecutionError: If Packer fails or produces no image.
    """
    build_dir = settings.build_dir
    log_path = build_log_path(settings)

    # Packer refuses to write into an existing output directory
    shell.run(["rm", "-rf", settings.output_dir], sudo=True)
    shell.run(["packer", "init", files.packer_config], cwd=build_dir)

    cmd = compose_packer_command(params, settings, files)
    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)
    logger.info("Build log: %s", log_path)

    line = (
        "set -o pipefail; "
        'export PATH="$HOME/.local/bin:$PATH"; '
        f"{cmd_str} 2>&1 | tee {shlex.quote(log_path)}"
    )

    started_at = datetime.now(timezone.utc)
    result = shell.run(
        line,
        cwd=build_dir,
        check=False,
        stream=True,
        timeout=settings.build_timeout,
    )
    finished_at = datetime.now(timezone.utc)

    if not result.ok:
        message = f"Packer build failed with exit code {result.exit_code}"
        logger.error("%s. See log: %s", message, log_path)
        raise BuildExecutionError(
            message,
            exit_code=result.exit_code,
            log_path=log_path,
            code="build_timeout" if result.exit_code == TIMEOUT_EXIT_CODE else "build_failed",
        )

    primary = f"{settings.output_dir}/{params.image_name}"
    if not shell.exists(primary):
        raise BuildExecutionError(
            f"Packer finished but produced no image at {primary}",
            exit_code=result.exit_code,
            log_path=log_path,
            code="missing_image",
        )

    duration = (finished_at - started_at).total_seconds()
    logger.info("Packer build completed in %.0fs", duration)
    return PackerResult(
        exit_code=result.exit_code,
        primary_artifact=primary,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
    )


__all__ = [
    "BUILD_LOG_NAME",
    "BuildExecutionError",
    "BuildFiles",
    "PackerResult",
    "build_log_path",
    "build_file_paths",
    "builder_credentials",
    "compose_packer_command",
    "run_packer",
    "write_build_files",
]
