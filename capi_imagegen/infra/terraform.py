"""Terraform wrapper for the transient build/test infrastructure.

This module handles:
- Initializing and applying the Terraform configuration
- Reading named outputs (host addresses, bucket, SSH key)
- Full teardown versus compute-only teardown
- Saving the generated SSH key with owner-only permissions

Resource definitions live in the Terraform directory; this module only
invokes the tool. Any non-zero exit aborts the caller (no recovery).
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path

from capi_imagegen.infra.models import ComputeFlags, InfraOutputs

logger = logging.getLogger(__name__)


class TerraformError(Exception):
    """Raised when a terraform command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "terraform_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class NoInfrastructureError(Exception):
    """Raised when no provisioned test host is recorded in Terraform state."""

    def __init__(self, terraform_dir: Path, code: str = "no_infrastructure") -> None:
        super().__init__(
            f"No existing infrastructure found in {terraform_dir}. "
            "Run without --skip-infra to provision it."
        )
        self.terraform_dir = terraform_dir
        self.code = code


class Terraform:
    """Run terraform in a fixed working directory for one profile/region."""

    def __init__(
        self,
        working_dir: Path,
        profile: str,
        region: str,
        timeout: int | None = None,
    ) -> None:
        self.working_dir = working_dir
        self.profile = profile
        self.region = region
        self.timeout = timeout

    def _base_vars(self) -> dict[str, str]:
        return {"aws_profile": self.profile, "aws_region": self.region}

    def _run(self, args: list[str], action: str) -> subprocess.CompletedProcess[str]:
        if not self.working_dir.is_dir():
            raise TerraformError(
                f"Terraform directory not found: {self.working_dir}",
                code="terraform_dir_missing",
            )

        cmd = ["terraform", *args]
        logger.debug("Executing: %s (cwd=%s)", " ".join(cmd), self.working_dir)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.working_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise TerraformError(
                f"Terraform {action} timed out after {self.timeout}s",
                code="terraform_timeout",
            ) from e
        except OSError as e:
            raise TerraformError(
                f"Failed to execute terraform: {e}",
                code="execution_error",
            ) from e

        if result.returncode != 0:
            logger.error("Terraform %s failed: %s", action, result.stderr.strip())
            raise TerraformError(
                f"Terraform {action} failed: {result.stderr.strip()}",
                exit_code=result.returncode,
            )
        return result

    @staticmethod
    def _var_args(variables: dict[str, str]) -> list[str]:
        args: list[str] = []
        for key, value in variables.items():
            args.extend(["-var", f"{key}={value}"])
        return args

    def init(self) -> None:
        logger.info("Initializing Terraform in %s...", self.working_dir)
        self._run(["init", "-input=false"], "init")

    def apply(self, flags: ComputeFlags) -> None:
        """Converge the topology to ``flags`` (idempotent)."""
        logger.info(
            "Applying Terraform (profile=%s, region=%s, test_host=%s, build_host=%s, pxe=%s)...",
            self.profile,
            self.region,
            flags.enable_test_host,
            flags.enable_build_host,
            flags.enable_pxe_server,
        )
        variables = {**self._base_vars(), **flags.as_tf_vars()}
        self._run(
            ["apply", "-input=false", "-auto-approve", *self._var_args(variables)],
            "apply",
        )
        logger.info("Terraform apply complete")

    def destroy_all(self) -> None:
        """Destroy every resource, including the S3 bucket and its images."""
        logger.warning("Destroying ALL infrastructure (including S3 bucket)...")
        self._run(
            ["destroy", "-input=false", "-auto-approve", *self._var_args(self._base_vars())],
            "destroy",
        )
        logger.info("All infrastructure destroyed")

    def destroy_compute_only(self) -> None:
        """Remove compute instances, keeping the bucket, IAM and network."""
        logger.info("Terminating compute instances (keeping S3 bucket)...")
        self.apply(ComputeFlags.none())
        logger.info("Compute instances terminated; bucket preserved")

    def outputs(self) -> InfraOutputs:
        result = self._run(["output", "-json"], "output")
        try:
            raw = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise TerraformError(
                f"Invalid terraform output JSON: {e}",
                code="invalid_output",
            ) from e
        return InfraOutputs.from_terraform(raw)

    def read_outputs(self) -> InfraOutputs:
        """Re-read outputs of a previous apply.

        Raises:
            NoInfrastructureError: If state has no test host address.
        """
        try:
            outputs = self.outputs()
        except TerraformError as e:
            logger.debug("Could not read terraform outputs: %s", e)
            raise NoInfrastructureError(self.working_dir) from e
        if not outputs.test_host_public_ip:
            raise NoInfrastructureError(self.working_dir)
        return outputs

    def state_resources(self) -> list[str]:
        """List resource addresses recorded in Terraform state."""
        result = self._run(["state", "list"], "state list")
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def save_ssh_key(private_key_pem: str, key_path: Path) -> Path:
    """Write the SSH private key with owner-only permissions.

    Args:
        private_key_pem: Key material in PEM format.
        key_path: Destination path.

    Returns:
        The key path.
    """
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(key_path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_key_pem)
        if not private_key_pem.endswith("\n"):
            f.write("\n")
    # O_CREAT mode does not apply to an existing file
    os.chmod(key_path, 0o600)
    logger.info("SSH private key saved to %s", key_path)
    return key_path


__all__ = [
    "NoInfrastructureError",
    "Terraform",
    "TerraformError",
    "save_ssh_key",
]
