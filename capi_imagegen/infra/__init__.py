"""Infrastructure provisioning module.

This module handles:
- Terraform apply/destroy of the transient EC2 topology
- Compute-only teardown that preserves the S3 bucket
- Reading named outputs for later stages
"""

from capi_imagegen.infra.models import ComputeFlags, InfraOutputs
from capi_imagegen.infra.terraform import (
    NoInfrastructureError,
    Terraform,
    TerraformError,
    save_ssh_key,
)

__all__ = [
    "ComputeFlags",
    "InfraOutputs",
    "NoInfrastructureError",
    "Terraform",
    "TerraformError",
    "save_ssh_key",
]
