"""S3 object stores.

Two ways of writing build artifacts to the bucket:
- ShellS3Store runs the aws CLI through a Shell, so files never leave the
  host they were built on (the build host's instance role grants access).
- Boto3S3Store uploads files on this machine with a boto3 client.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError

from capi_imagegen.builds.artifacts import compute_file_hash
from capi_imagegen.shell import CommandError, Shell
from capi_imagegen.types import UploadedObject

logger = logging.getLogger(__name__)


class TransferError(Exception):
    """Raised when an object cannot be written to or read from S3."""

    def __init__(self, message: str, code: str = "transfer_error") -> None:
        super().__init__(message)
        self.code = code


def s3_uri(bucket: str, key: str = "") -> str:
    return f"s3://{bucket}/{key}"


class ObjectStore(ABC):
    """Destination bucket for build artifacts."""

    bucket: str

    @abstractmethod
    def check_access(self) -> None:
        """Raise TransferError unless the bucket is reachable."""

    @abstractmethod
    def upload(self, source: str, key: str, metadata: Mapping[str, str]) -> UploadedObject:
        """Upload one file to ``key``."""

    @abstractmethod
    def copy(self, source_key: str, dest_key: str) -> None:
        """Server-side copy within the bucket."""

    @abstractmethod
    def listing(self, prefix: str) -> list[str]:
        """Human-readable listing of objects under ``prefix``."""


class ShellS3Store(ObjectStore):
    """Upload with the aws CLI on the host behind ``shell``."""

    def __init__(self, shell: Shell, bucket: str, region: str | None = None) -> None:
        self.shell = shell
        self.bucket = bucket
        self.region = region

    def _aws(self, *args: str) -> list[str]:
        cmd = ["aws", "s3", *args]
        if self.region:
            cmd.extend(["--region", self.region])
        return cmd

    def check_access(self) -> None:
        if not self.shell.which("aws"):
            raise TransferError(f"AWS CLI not found on {self.shell.host}", code="aws_cli_missing")
        result = self.shell.run(self._aws("ls", s3_uri(self.bucket)), check=False)
        if not result.ok:
            raise TransferError(
                f"Cannot access S3 bucket: {self.bucket}", code="bucket_inaccessible"
            )

    def upload(self, source: str, key: str, metadata: Mapping[str, str]) -> UploadedObject:
        meta = ",".join(f"{k}={v}" for k, v in metadata.items())
        cmd = self._aws("cp", source, s3_uri(self.bucket, key), "--no-progress")
        if meta:
            cmd.extend(["--metadata", meta])
        try:
            self.shell.run(cmd)
        except CommandError as e:
            raise TransferError(f"Upload of {source} failed: {e}", code="upload_failed") from e
        return UploadedObject(key=key, source=source, metadata=dict(metadata))

    def copy(self, source_key: str, dest_key: str) -> None:
        cmd = self._aws(
            "cp", s3_uri(self.bucket, source_key), s3_uri(self.bucket, dest_key), "--no-progress"
        )
        try:
            self.shell.run(cmd)
        except CommandError as e:
            raise TransferError(f"Copy to {dest_key} failed: {e}", code="copy_failed") from e

    def listing(self, prefix: str) -> list[str]:
        result = self.shell.run(
            self._aws("ls", s3_uri(self.bucket, prefix), "--human-readable"), check=False
        )
        return result.lines if result.ok else []


class Boto3S3Store(ObjectStore):
    """Upload local files with a boto3 S3 client.

    Large images go through the managed transfer (multipart) for both
    uploads and copies. A ``sha256`` digest is added to each object's
    metadata.
    """

    def __init__(self, client: Any, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def check_access(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (ClientError, BotoCoreError) as e:
            raise TransferError(
                f"Cannot access S3 bucket {self.bucket}: {e}", code="bucket_inaccessible"
            ) from e

    def upload(self, source: str, key: str, metadata: Mapping[str, str]) -> UploadedObject:
        path = Path(source)
        meta = {**metadata, "sha256": compute_file_hash(path)}
        try:
            self.client.upload_file(str(path), self.bucket, key, ExtraArgs={"Metadata": meta})
        except (S3UploadFailedError, ClientError, BotoCoreError) as e:
            raise TransferError(f"Upload of {source} failed: {e}", code="upload_failed") from e
        return UploadedObject(key=key, source=source, metadata=meta)

    def copy(self, source_key: str, dest_key: str) -> None:
        try:
            self.client.copy({"Bucket": self.bucket, "Key": source_key}, self.bucket, dest_key)
        except (ClientError, BotoCoreError) as e:
            raise TransferError(f"Copy to {dest_key} failed: {e}", code="copy_failed") from e

    def listing(self, prefix: str) -> list[str]:
        return [f"{size:>14}  {key}" for key, size in list_objects(self.client, self.bucket, prefix)]


def list_objects(client: Any, bucket: str, prefix: str = "") -> list[tuple[str, int]]:
    """List (key, size) for every object under ``prefix``."""
    paginator = client.get_paginator("list_objects_v2")
    objects: list[tuple[str, int]] = []
    try:
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                objects.append((item["Key"], item["Size"]))
    except (ClientError, BotoCoreError) as e:
        raise TransferError(f"Cannot list s3://{bucket}/{prefix}: {e}", code="list_failed") from e
    return objects


__all__ = [
    "Boto3S3Store",
    "ObjectStore",
    "ShellS3Store",
    "TransferError",
    "list_objects",
    "s3_uri",
]
