"""End-to-end pipeline driver.

This module provides the top-level API behind ``capi-imagegen run``:
- check_prerequisites(): terraform on PATH and working AWS credentials
- run_pipeline(): infra -> build -> upload -> validation -> cleanup

Each stage failure aborts the sequence. Requested cleanup runs after the
main sequence whether or not the later stages passed, but never when
provisioning itself failed.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from capi_imagegen.builds.artifacts import expected_artifacts
from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.infra import ComputeFlags, InfraOutputs, Terraform, save_ssh_key
from capi_imagegen.retry import RetryExhaustedError, poll
from capi_imagegen.shell import Shell
from capi_imagegen.transfer.stores import s3_uri
from capi_imagegen.types import CleanupMode, ImageFormat, RunOutcome, StageTiming

if TYPE_CHECKING:
    from capi_imagegen.builds.service import BuildReport
    from capi_imagegen.config import Settings
    from capi_imagegen.transfer.service import UploadReport
    from capi_imagegen.validation.probes import ValidationReport

logger = logging.getLogger(__name__)


class PreconditionError(Exception):
    """Raised before any side effect when a prerequisite is missing."""

    def __init__(self, message: str, code: str = "precondition_failed") -> None:
        super().__init__(message)
        self.code = code


class PipelineError(Exception):
    """Raised when stage outputs are unusable by the next stage."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class PipelineOptions:
    """Flags of one pipeline invocation.

    Attributes:
        profile: AWS profile.
        region: AWS region.
        k8s_version: Kubernetes version override.
        skip_infra: Re-read existing Terraform outputs instead of applying.
        skip_build: Skip the remote build and upload.
        skip_test: Skip validation.
        cleanup: Destroy all infrastructure afterwards (bucket included).
        cleanup_vms_only: Remove compute instances afterwards, keep the bucket.
    """

    profile: str
    region: str
    k8s_version: str | None = None
    skip_infra: bool = False
    skip_build: bool = False
    skip_test: bool = False
    cleanup: bool = False
    cleanup_vms_only: bool = False

    @property
    def cleanup_mode(self) -> CleanupMode:
        if self.cleanup:
            return CleanupMode.ALL
        if self.cleanup_vms_only:
            return CleanupMode.COMPUTE_ONLY
        return CleanupMode.NONE


@dataclass
class PipelineResult:
    """Everything a pipeline run produced."""

    params: BuildParameters
    prefix: str
    outputs: InfraOutputs | None = None
    build: BuildReport | None = None
    upload: UploadReport | None = None
    validation: ValidationReport | None = None
    cleanup: CleanupMode = CleanupMode.NONE
    cleanup_done: bool = False
    timings: list[StageTiming] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def bucket(self) -> str | None:
        return self.outputs.s3_bucket_name if self.outputs else None

    @property
    def ok(self) -> bool:
        return self.validation is None or self.validation.outcome is not RunOutcome.FAIL

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    def artifact_uris(self) -> list[str]:
        """S3 URIs of the disk images named after this run's version."""
        if not self.bucket:
            return []
        return [
            s3_uri(self.bucket, f"{self.prefix}/{name}")
            for name in expected_artifacts(self.params.image_name)
        ]


@contextmanager
def _stage(name: str, result: PipelineResult) -> Iterator[None]:
    logger.info("━━ %s", name)
    start = time.monotonic()
    try:
        yield
    finally:
        result.timings.append(StageTiming(name=name, seconds=time.monotonic() - start))


def check_prerequisites(
    profile: str,
    region: str,
    *,
    which: Callable[[str], str | None] = shutil.which,
    session_factory: Callable[..., Any] = boto3.Session,
) -> str:
    """Verify local tooling and AWS credentials.

    Returns:
        The AWS account id of the profile.

    Raises:
        PreconditionError: If terraform is missing or credentials are invalid.
    """
    logger.info("Checking prerequisites...")
    if which("terraform") is None:
        raise PreconditionError("terraform not found on PATH", code="missing_tool")

    try:
        session = session_factory(profile_name=profile, region_name=region)
        identity = session.client("sts").get_caller_identity()
    except (BotoCoreError, ClientError) as e:
        raise PreconditionError(
            f"AWS credentials not configured for profile '{profile}': {e}",
            code="aws_credentials",
        ) from e

    account = identity["Account"]
    logger.info("All prerequisites met (account %s)", account)
    return account


def wait_for_cloud_init(
    shell: Shell,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Wait for cloud-init on the host to finish.

    An unfinished cloud-init is logged and tolerated; the build installs
    anything it needs itself.

    Returns:
        The final status line, or None on timeout.
    """
    logger.info("Waiting for cloud-init to complete on %s...", shell.host)

    def _finished() -> str | None:
        status = shell.run(["cloud-init", "status"], check=False).stdout.strip()
        return status if ("done" in status or "error" in status) else None

    try:
        status = poll(
            _finished, attempts=attempts, interval=interval, description="cloud-init", sleep=sleep
        )
    except RetryExhaustedError as e:
        logger.warning("%s; continuing", e)
        return None
    if "error" in status:
        logger.warning("cloud-init finished with errors: %s", status)
    else:
        logger.info("cloud-init completed")
    return status


def provision(terraform: Terraform, settings: Settings, *, skip: bool) -> InfraOutputs:
    """Apply the topology (or re-read it) and make the SSH key available."""
    key_path = settings.effective_ssh_key_path
    if skip:
        logger.warning("Skipping infrastructure creation")
        outputs = terraform.read_outputs()
        if outputs.ssh_private_key and not key_path.exists():
            save_ssh_key(outputs.ssh_private_key, key_path)
        return outputs

    terraform.init()
    terraform.apply(
        ComputeFlags(
            enable_test_host=True,
            enable_build_host=settings.enable_build_host,
            enable_pxe_server=settings.enable_pxe_server,
        )
    )
    outputs = terraform.outputs()
    if not outputs.test_host_public_ip:
        raise PipelineError("Terraform did not report a test host address", code="missing_output")
    if not outputs.ssh_private_key:
        raise PipelineError("Terraform did not report an SSH private key", code="missing_output")
    save_ssh_key(outputs.ssh_private_key, key_path)
    logger.info("Test host: %s", outputs.test_host_public_ip)
    logger.info("S3 bucket: %s", outputs.s3_bucket_name)
    return outputs


def ssh_connector(settings: Settings) -> Callable[[str], Shell]:
    """Return a function opening an SSH shell to a host with the configured key."""
    from capi_imagegen.shell.ssh import connect_ssh

    def _connect(host: str) -> Shell:
        return connect_ssh(
            host,
            settings.ssh_user,
            settings.effective_ssh_key_path,
            attempts=settings.ssh_attempts,
            interval=settings.ssh_interval,
        )

    return _connect


def run_cleanup(terraform: Terraform, mode: CleanupMode) -> None:
    if mode is CleanupMode.ALL:
        terraform.destroy_all()
    elif mode is CleanupMode.COMPUTE_ONLY:
        terraform.destroy_compute_only()


def run_pipeline(
    options: PipelineOptions,
    settings: Settings,
    *,
    terraform: Terraform | None = None,
    connect: Callable[[str], Shell] | None = None,
    which: Callable[[str], str | None] = shutil.which,
    session_factory: Callable[..., Any] = boto3.Session,
    sleep: Callable[[float], None] = time.sleep,
) -> PipelineResult:
    """Run the full provision/build/upload/validate/cleanup sequence.

    Args:
        options: Invocation flags.
        settings: Base settings; profile, region and version are overridden
            from ``options``.
        terraform: Terraform wrapper (default: one for ``settings.terraform_dir``).
        connect: Returns a Shell for a host address (default: SSH).
        which: PATH lookup used by the prerequisite check.
        session_factory: boto3 session factory used by the prerequisite check.
        sleep: Sleep function for bounded waits.

    Returns:
        PipelineResult. ``result.ok`` is False when validation failed.

    Raises:
        PreconditionError: Before any side effect.
        NoInfrastructureError: On --skip-infra without prior outputs.
        TerraformError, EnvironmentSetupError, BuildExecutionError,
        ConversionError, BootFileExtractionError, TransferError,
        ValidationError: When a stage fails.
    """
    updates: dict[str, Any] = {"aws_profile": options.profile, "aws_region": options.region}
    if options.k8s_version:
        updates["k8s_version"] = options.k8s_version
    settings = settings.model_copy(update=updates)
    params = BuildParameters.from_settings(settings)
    check_prerequisites(options.profile, options.region, which=which, session_factory=session_factory)

    if terraform is None:
        terraform = Terraform(settings.terraform_dir, options.profile, options.region)
    if connect is None:
        connect = ssh_connector(settings)

    result = PipelineResult(params=params, prefix=settings.s3_prefix.strip("/"), cleanup=options.cleanup_mode)
    logger.info("Kubernetes %s, image %s", params.k8s_version, params.image_name)

    with _stage("infrastructure", result):
        result.outputs = provision(terraform, settings, skip=options.skip_infra)

    try:
        _run_host_stages(options, settings, params, result, connect, sleep)
    finally:
        if result.cleanup is not CleanupMode.NONE:
            with _stage(f"cleanup ({result.cleanup.value})", result):
                run_cleanup(terraform, result.cleanup)
            result.cleanup_done = True
        result.finished_at = datetime.now(timezone.utc)

    return result


def _run_host_stages(
    options: PipelineOptions,
    settings: Settings,
    params: BuildParameters,
    result: PipelineResult,
    connect: Callable[[str], Shell],
    sleep: Callable[[float], None],
) -> None:
    if options.skip_build:
        logger.warning("Skipping image build")
    if options.skip_test:
        logger.warning("Skipping tests")
    if options.skip_build and options.skip_test:
        return

    outputs = result.outputs
    host = outputs.test_host_public_ip if outputs else None
    if not host:
        raise PipelineError("No test host address available", code="missing_output")
    bucket = (outputs.s3_bucket_name if outputs else None) or settings.s3_bucket

    from capi_imagegen.builds.service import run_build_pipeline
    from capi_imagegen.transfer.service import upload_from_settings
    from capi_imagegen.transfer.stores import ShellS3Store
    from capi_imagegen.validation.runner import run_validation

    with connect(host) as shell:
        if not options.skip_build:
            with shell.capture_to(settings.build_log_path):
                with _stage("build", result):
                    wait_for_cloud_init(
                        shell, settings.cloud_init_attempts, settings.ssh_interval, sleep
                    )
                    result.build = run_build_pipeline(shell, params, settings, sleep=sleep)
                with _stage("upload", result):
                    if bucket:
                        store = ShellS3Store(shell, bucket, settings.aws_region)
                        result.upload = upload_from_settings(shell, store, settings)
                    else:
                        logger.warning("No S3 bucket known; skipping upload")

        if not options.skip_test:
            image = result.build.artifacts.get(ImageFormat.QCOW2) if result.build else None
            with shell.capture_to(settings.test_log_path):
                with _stage("validation", result):
                    result.validation = run_validation(
                        shell, settings, params, bucket=bucket, image=image, sleep=sleep
                    )


__all__ = [
    "PipelineError",
    "PipelineOptions",
    "PipelineResult",
    "PreconditionError",
    "check_prerequisites",
    "provision",
    "run_cleanup",
    "run_pipeline",
    "wait_for_cloud_init",
]
