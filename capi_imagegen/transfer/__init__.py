"""Artifact transfer module.

This module handles:
- Uploading disk images, the build log and PXE files to S3
- aws CLI (remote) and boto3 (local) object stores
- Optional "latest" aliases
"""

from capi_imagegen.transfer.service import UploadReport, upload_artifacts
from capi_imagegen.transfer.stores import (
    Boto3S3Store,
    ObjectStore,
    ShellS3Store,
    TransferError,
)

__all__ = [
    "Boto3S3Store",
    "ObjectStore",
    "ShellS3Store",
    "TransferError",
    "UploadReport",
    "upload_artifacts",
]
