"""CAPI Image Generator - ARM64 Cluster API image build automation.

This package provides orchestration around Terraform, Packer, QEMU and
libvirt for provisioning transient EC2 capacity, building ARM64 CAPI node
images, uploading them to S3 and boot-testing them.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
