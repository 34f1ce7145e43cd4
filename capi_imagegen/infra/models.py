"""Pydantic models for Terraform inputs and outputs."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ComputeFlags(BaseModel):
    """Which compute instances the Terraform topology should contain.

    Attributes:
        enable_test_host: ARM64 bare-metal build/test host.
        enable_build_host: Optional x86 build host.
        enable_pxe_server: Optional PXE server.
    """

    model_config = ConfigDict(frozen=True)

    enable_test_host: bool = True
    enable_build_host: bool = False
    enable_pxe_server: bool = False

    @classmethod
    def none(cls) -> "ComputeFlags":
        """Flags that remove every compute instance."""
        return cls(enable_test_host=False, enable_build_host=False, enable_pxe_server=False)

    def as_tf_vars(self) -> dict[str, str]:
        return {name: str(value).lower() for name, value in self.model_dump().items()}


class InfraOutputs(BaseModel):
    """Named Terraform outputs consumed by later stages.

    Read-only for the remainder of a run.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    test_host_public_ip: str | None = None
    s3_bucket_name: str | None = None
    ssh_private_key: str | None = Field(default=None, repr=False)
    build_host_public_ip: str | None = None
    pxe_server_public_ip: str | None = None

    @classmethod
    def from_terraform(cls, raw: dict[str, Any]) -> "InfraOutputs":
        """Build from ``terraform output -json``, unwrapping each ``value``."""
        values = {
            name: entry.get("value") if isinstance(entry, dict) else entry
            for name, entry in raw.items()
        }
        return cls.model_validate(values)


__all__ = ["ComputeFlags", "InfraOutputs"]
