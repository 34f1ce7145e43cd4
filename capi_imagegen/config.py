"""Configuration settings for capi_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Version and bucket settings also accept the bare variable names used by the
build scripts (``K8S_VERSION``, ``S3_BUCKET``, ...).
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CAPI_IMG_"


def _aliases(name: str, *bare: str) -> AliasChoices:
    """Accept both the prefixed and the bare environment variable names."""
    return AliasChoices(name, f"{ENV_PREFIX}{name.upper()}", *bare)


def _default_terraform_dir() -> Path:
    """Return the default Terraform working directory."""
    return Path.cwd() / "terraform"


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the CAPI_IMG_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # AWS
    aws_profile: str | None = Field(
        default=None,
        validation_alias=_aliases("aws_profile", "AWS_PROFILE"),
        description="AWS CLI profile name",
    )
    aws_region: str | None = Field(
        default=None,
        validation_alias=_aliases("aws_region", "AWS_REGION"),
        description="AWS region",
    )
    s3_bucket: str | None = Field(
        default=None,
        validation_alias=_aliases("s3_bucket", "S3_BUCKET"),
        description="Bucket for image artifacts (normally a Terraform output)",
    )
    s3_prefix: str = Field(
        default="images",
        validation_alias=_aliases("s3_prefix", "S3_PREFIX"),
        description="Key prefix for disk image artifacts",
    )
    upload_latest_alias: bool = Field(
        default=False,
        description="Also copy each uploaded image to a '-latest' alias key",
    )

    # Build versions
    k8s_version: str = Field(
        default="v1.32.4",
        validation_alias=_aliases("k8s_version", "K8S_VERSION"),
        description="Kubernetes version",
    )
    containerd_version: str = Field(
        default="2.0.4",
        validation_alias=_aliases("containerd_version", "CONTAINERD_VERSION"),
        description="containerd version",
    )
    cni_version: str = Field(
        default="1.6.0",
        validation_alias=_aliases("cni_version", "CNI_VERSION"),
        description="CNI plugins version",
    )
    crictl_version: str = Field(
        default="1.32.0",
        validation_alias=_aliases("crictl_version", "CRICTL_VERSION"),
        description="crictl version",
    )
    runc_version: str = Field(
        default="1.2.8",
        validation_alias=_aliases("runc_version", "RUNC_VERSION"),
        description="runc version",
    )

    # Local paths
    terraform_dir: Path = Field(
        default_factory=_default_terraform_dir,
        description="Terraform working directory",
    )
    ssh_key_path: Path | None = Field(
        default=None,
        validation_alias=_aliases("ssh_key_path", "SSH_KEY"),
        description="Private key file for the test host (default: <terraform_dir>/ssh-key.pem)",
    )
    work_dir: Path = Field(
        default_factory=Path.cwd,
        description="Directory for build.log and test.log",
    )
    sysprep_files_dir: Path | None = Field(
        default=None,
        description="Directory with patched sysprep-main.yml / sysprep-handlers.yml",
    )

    # Remote host layout
    ssh_user: str = Field(default="ubuntu", description="SSH user on the test host")
    build_dir: str = Field(default="/opt/capi-build", description="Remote build root")
    image_builder_dir: str = Field(
        default="/opt/test-images/image-builder",
        description="kubernetes-sigs/image-builder checkout",
    )
    image_builder_repo: str = Field(
        default="https://github.com/kubernetes-sigs/image-builder.git",
        description="image-builder git repository",
    )
    test_dir: str = Field(
        default="/opt/test-images",
        description="Working directory for boot tests on the test host",
    )

    # Infrastructure toggles
    enable_build_host: bool = Field(
        default=False, description="Provision the optional x86 build host"
    )
    enable_pxe_server: bool = Field(
        default=False, description="Provision the optional PXE server"
    )

    # Test VM
    vm_name: str = Field(default="capi-test-vm", description="Test VM name")
    vm_memory: int = Field(default=4096, ge=512, description="Test VM memory (MiB)")
    vm_cpus: int = Field(default=4, ge=1, description="Test VM vCPUs")

    # Polling and retries
    ssh_attempts: int = Field(default=30, ge=1, description="SSH wait attempts")
    ssh_interval: int = Field(default=10, ge=0, description="Seconds between SSH attempts")
    cloud_init_attempts: int = Field(
        default=60, ge=1, description="cloud-init wait attempts"
    )
    vm_boot_timeout: int = Field(
        default=300, ge=10, description="Test VM boot timeout in seconds"
    )
    poll_interval: int = Field(
        default=10, ge=1, description="Seconds between VM boot polls"
    )
    apt_attempts: int = Field(default=3, ge=1, description="apt install attempts")
    apt_retry_delay: int = Field(
        default=10, ge=0, description="Seconds between apt attempts"
    )
    build_timeout: int = Field(
        default=7200, ge=60, description="Timeout for the packer build"
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @property
    def effective_ssh_key_path(self) -> Path:
        """Private key path, defaulting to the Terraform directory."""
        return self.ssh_key_path or self.terraform_dir / "ssh-key.pem"

    @property
    def output_dir(self) -> str:
        """Remote directory receiving disk images."""
        return f"{self.build_dir}/output"

    @property
    def pxe_dir(self) -> str:
        """Remote directory receiving kernel and initrd."""
        return f"{self.build_dir}/pxe-files"

    @property
    def build_log_path(self) -> Path:
        return self.work_dir / "build.log"

    @property
    def test_log_path(self) -> Path:
        return self.work_dir / "test.log"


def get_settings(**overrides: object) -> Settings:
    """Get the application settings.

    Args:
        overrides: Field values taking precedence over the environment
            (used for CLI flags). ``None`` values are ignored.

    Returns:
        Settings instance loaded from environment.
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    return Settings(**values)


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["ENV_PREFIX", "Settings", "get_settings", "print_settings_json"]
