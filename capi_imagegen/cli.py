"""Thin CLI wrapper for capi_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from capi_imagegen import __version__
from capi_imagegen.config import Settings, get_settings, print_settings_json

if TYPE_CHECKING:
    from capi_imagegen.validation.probes import ValidationReport

app = typer.Typer(
    name="capi-imagegen",
    help="ARM64 CAPI image builder - provision, build, upload and boot-test",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"capi-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route log records through rich (once per process)."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=False, show_path=False)],
        force=True,
    )
    # boto and paramiko are noisy at INFO
    for name in ("botocore", "boto3", "paramiko", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (default: from settings)"),
    ] = None,
) -> None:
    """ARM64 CAPI image builder - provision, build, upload and boot-test."""
    configure_logging((log_level or _load_settings().log_level).upper())


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]Error: {escape(message)}[/red]")
    return typer.Exit(code=1)


def _load_settings(**overrides: object) -> Settings:
    from pydantic import ValidationError as PydanticValidationError

    try:
        return get_settings(**overrides)
    except PydanticValidationError as e:
        raise _fail(f"Invalid configuration: {e}") from None


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = _load_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]AWS:[/bold]")
    console.print(f"  Profile:             {settings.aws_profile or '(not set)'}")
    console.print(f"  Region:              {settings.aws_region or '(not set)'}")
    console.print(f"  S3 bucket:           {settings.s3_bucket or '(from terraform)'}")
    console.print(f"  S3 prefix:           {settings.s3_prefix}")
    console.print()
    console.print("[bold]Versions:[/bold]")
    console.print(f"  Kubernetes:          {settings.k8s_version}")
    console.print(f"  containerd:          {settings.containerd_version}")
    console.print(f"  CNI:                 {settings.cni_version}")
    console.print(f"  crictl:              {settings.crictl_version}")
    console.print(f"  runc:                {settings.runc_version}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Terraform directory: {settings.terraform_dir}")
    console.print(f"  SSH key:             {settings.effective_ssh_key_path}")
    console.print(f"  Remote build dir:    {settings.build_dir}")
    console.print(f"  Remote test dir:     {settings.test_dir}")
    console.print(f"  Logs:                {settings.work_dir}")
    console.print()
    console.print("[bold]Test VM:[/bold]")
    console.print(f"  Name:                {settings.vm_name}")
    console.print(f"  Memory (MiB):        {settings.vm_memory}")
    console.print(f"  vCPUs:               {settings.vm_cpus}")
    console.print(f"  Boot timeout (s):    {settings.vm_boot_timeout}")


def _print_validation(report: "ValidationReport") -> None:
    from capi_imagegen.types import ProbeOutcome

    marks = {
        ProbeOutcome.PASS: "[green]✓[/green]",
        ProbeOutcome.FAIL: "[red]✗[/red]",
        ProbeOutcome.WARN: "[yellow]![/yellow]",
    }
    console.print("[bold]Test Summary:[/bold]")
    for result in report.results:
        suffix = f" ({escape(result.detail)})" if result.detail else ""
        console.print(f"  {marks[result.outcome]} {result.name}{suffix}")
    console.print()
    console.print(f"Results: {report.summary_line}")
    console.print(f"Outcome: {report.outcome.value}")


@app.command()
def run(
    profile: Annotated[str, typer.Option("--profile", help="AWS CLI profile name")],
    region: Annotated[str, typer.Option("--region", help="AWS region")],
    k8s_version: Annotated[
        str | None,
        typer.Option("--k8s-version", help="Kubernetes version (default: v1.32.4)"),
    ] = None,
    skip_infra: Annotated[
        bool, typer.Option("--skip-infra", help="Skip terraform infrastructure creation")
    ] = False,
    skip_build: Annotated[
        bool, typer.Option("--skip-build", help="Skip image build")
    ] = False,
    skip_test: Annotated[
        bool, typer.Option("--skip-test", help="Skip validation tests")
    ] = False,
    cleanup: Annotated[
        bool,
        typer.Option("--cleanup", help="Destroy ALL infrastructure (including S3 bucket)"),
    ] = False,
    cleanup_vms_only: Annotated[
        bool,
        typer.Option("--cleanup-vms-only", help="Terminate VMs but keep S3 bucket with images"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the run summary as JSON"),
    ] = False,
) -> None:
    """Provision, build, upload and validate an ARM64 CAPI image."""
    from pydantic import ValidationError as PydanticValidationError

    from capi_imagegen.builds.convert import ConversionError
    from capi_imagegen.builds.environment import EnvironmentSetupError
    from capi_imagegen.builds.pxe import BootFileExtractionError
    from capi_imagegen.builds.runner import BuildExecutionError
    from capi_imagegen.infra import NoInfrastructureError, TerraformError
    from capi_imagegen.pipeline import (
        PipelineError,
        PipelineOptions,
        PreconditionError,
        run_pipeline,
    )
    from capi_imagegen.retry import RetryExhaustedError
    from capi_imagegen.shell import CommandError
    from capi_imagegen.transfer.stores import TransferError
    from capi_imagegen.validation.probes import ValidationError

    settings = _load_settings()
    options = PipelineOptions(
        profile=profile,
        region=region,
        k8s_version=k8s_version,
        skip_infra=skip_infra,
        skip_build=skip_build,
        skip_test=skip_test,
        cleanup=cleanup,
        cleanup_vms_only=cleanup_vms_only,
    )

    try:
        result = run_pipeline(options, settings)
    except PydanticValidationError as e:
        raise _fail(f"Invalid build parameters: {e}") from None
    except PreconditionError as e:
        raise _fail(str(e)) from None
    except NoInfrastructureError as e:
        raise _fail(str(e)) from None
    except BuildExecutionError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        if e.log_path:
            console.print(f"See log: {e.log_path} (local transcript: {settings.build_log_path})")
        raise typer.Exit(code=1) from None
    except (
        TerraformError,
        EnvironmentSetupError,
        ConversionError,
        BootFileExtractionError,
        TransferError,
        ValidationError,
        PipelineError,
        CommandError,
        RetryExhaustedError,
    ) as e:
        raise _fail(f"{e} [{e.code}]") from None

    if json_output:
        output = {
            "k8s_version": result.params.k8s_version,
            "image_name": result.params.image_name,
            "duration_seconds": round(result.duration, 1),
            "cleanup": result.cleanup.value,
            "artifacts": result.artifact_uris(),
            "uploaded": result.upload.uris if result.upload else [],
            "validation": (
                {
                    "outcome": result.validation.outcome.value,
                    "summary": result.validation.summary_line,
                    "probes": [
                        {"name": r.name, "outcome": r.outcome.value, "detail": r.detail}
                        for r in result.validation.results
                    ],
                }
                if result.validation
                else None
            ),
        }
        console.print(json.dumps(output, indent=2))
    else:
        if result.validation:
            _print_validation(result.validation)
            console.print()
        minutes, seconds = divmod(int(result.duration), 60)
        if result.ok:
            console.print("[bold green]BUILD COMPLETE[/bold green]")
        else:
            console.print("[bold red]VALIDATION FAILED[/bold red]")
        console.print(f"  Duration: {minutes}m {seconds}s")
        if result.cleanup_done and result.cleanup.value == "all":
            console.print("  All infrastructure destroyed.")
        else:
            uris = result.artifact_uris()
            if uris:
                console.print("  Artifacts in S3:")
                for uri in uris:
                    console.print(f"    {uri}")
            if result.cleanup_done:
                console.print("  VMs terminated. S3 bucket preserved.")
            elif result.outputs and result.outputs.test_host_public_ip:
                console.print(f"  Test Host: {settings.ssh_user}@{result.outputs.test_host_public_ip}")
                console.print(f"  SSH Key:   {settings.effective_ssh_key_path}")

    if not result.ok:
        raise typer.Exit(code=1)


infra_app = typer.Typer(help="Manage the Terraform infrastructure")
app.add_typer(infra_app, name="infra")


def _terraform(profile: str | None, region: str | None, terraform_dir: Path | None):  # noqa: ANN202
    from capi_imagegen.infra import Terraform

    settings = _load_settings(aws_profile=profile, aws_region=region, terraform_dir=terraform_dir)
    if not settings.aws_profile or not settings.aws_region:
        raise _fail("--profile and --region are required (or set AWS_PROFILE / AWS_REGION)")
    return settings, Terraform(settings.terraform_dir, settings.aws_profile, settings.aws_region)


ProfileOption = Annotated[str | None, typer.Option("--profile", help="AWS CLI profile name")]
RegionOption = Annotated[str | None, typer.Option("--region", help="AWS region")]
TerraformDirOption = Annotated[
    Path | None, typer.Option("--terraform-dir", help="Terraform working directory")
]


@infra_app.command("apply")
def infra_apply(
    profile: ProfileOption = None,
    region: RegionOption = None,
    terraform_dir: TerraformDirOption = None,
    build_host: Annotated[
        bool, typer.Option("--build-host", help="Also provision the x86 build host")
    ] = False,
    pxe_server: Annotated[
        bool, typer.Option("--pxe-server", help="Also provision the PXE server")
    ] = False,
) -> None:
    """Create or update the infrastructure and save the SSH key."""
    from capi_imagegen.infra import ComputeFlags, TerraformError, save_ssh_key

    settings, tf = _terraform(profile, region, terraform_dir)
    try:
        tf.init()
        tf.apply(
            ComputeFlags(
                enable_test_host=True,
                enable_build_host=build_host or settings.enable_build_host,
                enable_pxe_server=pxe_server or settings.enable_pxe_server,
            )
        )
        outputs = tf.outputs()
    except TerraformError as e:
        raise _fail(str(e)) from None

    if outputs.ssh_private_key:
        save_ssh_key(outputs.ssh_private_key, settings.effective_ssh_key_path)
    console.print("[green]Infrastructure ready[/green]")
    console.print(f"  Test host: {outputs.test_host_public_ip}")
    console.print(f"  S3 bucket: {outputs.s3_bucket_name}")


@infra_app.command("outputs")
def infra_outputs(
    profile: ProfileOption = None,
    region: RegionOption = None,
    terraform_dir: TerraformDirOption = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show outputs of the current infrastructure."""
    from capi_imagegen.infra import NoInfrastructureError

    _, tf = _terraform(profile, region, terraform_dir)
    try:
        outputs = tf.read_outputs()
    except NoInfrastructureError as e:
        raise _fail(str(e)) from None

    data = outputs.model_dump(exclude={"ssh_private_key"})
    if json_output:
        console.print(json.dumps(data, indent=2))
        return

    table = Table(title="Infrastructure outputs")
    table.add_column("Output")
    table.add_column("Value")
    for name, value in data.items():
        table.add_row(name, value or "-")
    console.print(table)


@infra_app.command("destroy-all")
def infra_destroy_all(
    profile: ProfileOption = None,
    region: RegionOption = None,
    terraform_dir: TerraformDirOption = None,
    yes: Annotated[
        bool, typer.Option("--yes", "-y", help="Do not ask for confirmation")
    ] = False,
) -> None:
    """Destroy ALL infrastructure, including the S3 bucket and its images."""
    from capi_imagegen.infra import TerraformError

    _, tf = _terraform(profile, region, terraform_dir)
    if not yes:
        typer.confirm("Destroy all infrastructure including the S3 bucket?", abort=True)
    try:
        tf.destroy_all()
    except TerraformError as e:
        raise _fail(str(e)) from None
    console.print("[green]All infrastructure destroyed[/green]")


@infra_app.command("destroy-compute-only")
def infra_destroy_compute_only(
    profile: ProfileOption = None,
    region: RegionOption = None,
    terraform_dir: TerraformDirOption = None,
) -> None:
    """Terminate compute instances, keeping the S3 bucket with images."""
    from capi_imagegen.infra import TerraformError

    _, tf = _terraform(profile, region, terraform_dir)
    try:
        tf.destroy_compute_only()
    except TerraformError as e:
        raise _fail(str(e)) from None
    console.print("[green]VMs terminated. S3 bucket preserved.[/green]")


@app.command()
def build(
    k8s_version: Annotated[
        str | None,
        typer.Option("--k8s-version", help="Kubernetes version"),
    ] = None,
    build_dir: Annotated[
        str | None,
        typer.Option("--build-dir", help="Build root on this host"),
    ] = None,
) -> None:
    """Build the image on this host (run on the ARM64 build host)."""
    from pydantic import ValidationError as PydanticValidationError

    from capi_imagegen.builds.convert import ConversionError
    from capi_imagegen.builds.environment import EnvironmentSetupError
    from capi_imagegen.builds.params import BuildParameters
    from capi_imagegen.builds.pxe import BootFileExtractionError
    from capi_imagegen.builds.runner import BuildExecutionError
    from capi_imagegen.builds.service import run_build_pipeline
    from capi_imagegen.shell import CommandError, LocalShell

    settings = _load_settings(k8s_version=k8s_version, build_dir=build_dir)
    try:
        params = BuildParameters.from_settings(settings)
    except PydanticValidationError as e:
        raise _fail(f"Invalid build parameters: {e}") from None

    with LocalShell() as shell:
        try:
            report = run_build_pipeline(shell, params, settings)
        except BuildExecutionError as e:
            console.print(f"[red]Error: {escape(str(e))}[/red]")
            if e.log_path:
                console.print(f"See log: {e.log_path}")
            raise typer.Exit(code=1) from None
        except (
            EnvironmentSetupError,
            ConversionError,
            BootFileExtractionError,
            CommandError,
        ) as e:
            raise _fail(f"{e} [{e.code}]") from None

    console.print("[bold green]BUILD COMPLETE[/bold green]")
    minutes, seconds = divmod(int(report.total_seconds), 60)
    console.print(f"  Total time: {minutes}m {seconds}s")
    table = Table(title="Artifacts")
    table.add_column("Format")
    table.add_column("Path")
    for fmt, path in report.artifacts.items():
        table.add_row(fmt.value, path)
    if report.boot_files:
        table.add_row("kernel", report.boot_files.kernel)
        table.add_row("initrd", report.boot_files.initrd)
    console.print(table)


@app.command()
def upload(
    bucket: Annotated[
        str | None,
        typer.Option("--bucket", help="Destination bucket (default: S3_BUCKET)"),
    ] = None,
    prefix: Annotated[
        str | None,
        typer.Option("--prefix", help="Key prefix for images (default: images)"),
    ] = None,
    output_dir: Annotated[
        str | None,
        typer.Option("--output-dir", help="Directory holding the images"),
    ] = None,
    pxe_dir: Annotated[
        str | None,
        typer.Option("--pxe-dir", help="Directory holding kernel and initrd"),
    ] = None,
    latest: Annotated[
        bool, typer.Option("--latest", help="Also update the '-latest' alias keys")
    ] = False,
) -> None:
    """Upload build outputs on this host to S3."""
    import boto3

    from capi_imagegen.builds.runner import build_log_path
    from capi_imagegen.shell import LocalShell
    from capi_imagegen.transfer.service import upload_artifacts
    from capi_imagegen.transfer.stores import Boto3S3Store, TransferError

    settings = _load_settings(s3_bucket=bucket, s3_prefix=prefix)
    if not settings.s3_bucket:
        console.print("[red]Error: S3_BUCKET not set[/red]")
        console.print("Set it via --bucket or: export S3_BUCKET=your-bucket-name")
        raise typer.Exit(code=1)

    session = boto3.Session(profile_name=settings.aws_profile, region_name=settings.aws_region)
    store = Boto3S3Store(session.client("s3"), settings.s3_bucket)
    with LocalShell() as shell:
        try:
            report = upload_artifacts(
                shell,
                store,
                output_dir=output_dir or settings.output_dir,
                pxe_dir=pxe_dir or settings.pxe_dir,
                prefix=settings.s3_prefix,
                log_path=build_log_path(settings),
                latest_alias=latest or settings.upload_latest_alias,
            )
        except TransferError as e:
            raise _fail(f"{e} [{e.code}]") from None

    console.print(f"[bold]Uploaded {len(report.uploaded)} object(s) to s3://{settings.s3_bucket}[/bold]")
    for uri in report.uris:
        console.print(f"  {uri}")
    for warning in report.warnings:
        console.print(f"[yellow]  ! {warning}[/yellow]")
    if report.listing:
        console.print(f"\n[bold]s3://{settings.s3_bucket}[/bold]")
        for line in report.listing:
            console.print(f"  {escape(line)}")


@app.command()
def validate(
    image: Annotated[
        str | None,
        typer.Option("--image", help="qcow2 image on this host (default: newest in test dir or S3)"),
    ] = None,
    bucket: Annotated[
        str | None,
        typer.Option("--bucket", help="Bucket to fetch the image from"),
    ] = None,
    k8s_version: Annotated[
        str | None,
        typer.Option("--k8s-version", help="Expected Kubernetes version"),
    ] = None,
) -> None:
    """Boot-test an image on this host (run on the ARM64 test host)."""
    from pydantic import ValidationError as PydanticValidationError

    from capi_imagegen.builds.params import BuildParameters
    from capi_imagegen.shell import CommandError, LocalShell
    from capi_imagegen.types import RunOutcome
    from capi_imagegen.validation.probes import ValidationError
    from capi_imagegen.validation.runner import run_validation

    settings = _load_settings(k8s_version=k8s_version, s3_bucket=bucket)
    try:
        params = BuildParameters.from_settings(settings)
    except PydanticValidationError as e:
        raise _fail(f"Invalid build parameters: {e}") from None

    with LocalShell() as shell:
        try:
            report = run_validation(shell, settings, params, bucket=settings.s3_bucket, image=image)
        except (ValidationError, CommandError) as e:
            raise _fail(f"{e} [{e.code}]") from None

    _print_validation(report)
    if report.outcome is RunOutcome.FAIL:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
