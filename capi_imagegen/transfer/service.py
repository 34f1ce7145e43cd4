"""Artifact upload service.

This module provides the high-level upload API:
- upload_artifacts(): newest image of each format, the build log and the
  PXE boot files
- Optional "latest" aliases for each uploaded image

Object layout in the bucket:
    <prefix>/<family>-<version>.<ext>
    <prefix>/build-<YYYYmmdd-HHMMSS>.log
    pxe/<kernel-or-initrd>
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from capi_imagegen.builds.artifacts import FORMAT_ORDER, latest_alias_filename, select_newest
from capi_imagegen.builds.params import IMAGE_FAMILY
from capi_imagegen.builds.runner import build_log_path
from capi_imagegen.shell import Shell
from capi_imagegen.transfer.stores import ObjectStore, s3_uri
from capi_imagegen.types import ImageFormat, UploadedObject

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

logger = logging.getLogger(__name__)

PXE_PREFIX = "pxe"
LOG_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class UploadReport:
    """Result of an upload run.

    Attributes:
        bucket: Destination bucket.
        uploaded: Objects written, in upload order.
        skipped: Image formats with no file to upload.
        warnings: Soft conditions encountered.
        listing: Bucket contents under the image and PXE prefixes after the
            upload.
    """

    bucket: str
    uploaded: list[UploadedObject] = field(default_factory=list)
    skipped: list[ImageFormat] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    listing: list[str] = field(default_factory=list)

    @property
    def uris(self) -> list[str]:
        return [s3_uri(self.bucket, obj.key) for obj in self.uploaded]

    def warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)


def build_metadata(now: datetime) -> dict[str, str]:
    return {"build-date": now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")}


def _upload(
    store: ObjectStore,
    report: UploadReport,
    source: str,
    key: str,
    metadata: dict[str, str],
) -> UploadedObject:
    logger.info("Uploading %s -> %s", PurePosixPath(source).name, s3_uri(store.bucket, key))
    obj = store.upload(source, key, metadata)
    report.uploaded.append(obj)
    return obj


def upload_artifacts(
    shell: Shell,
    store: ObjectStore,
    *,
    output_dir: str,
    pxe_dir: str,
    prefix: str,
    log_path: str | None = None,
    latest_alias: bool = False,
    family: str = IMAGE_FAMILY,
    now: datetime | None = None,
) -> UploadReport:
    """Upload build outputs from the host behind ``shell``.

    Args:
        shell: Shell on the host holding the artifacts.
        store: Destination store.
        output_dir: Directory holding the disk images.
        pxe_dir: Directory holding kernel and initrd.
        prefix: Key prefix for images and the log.
        log_path: Build log to upload, if present.
        latest_alias: Also copy each image to ``<prefix>/<family>-latest.<ext>``.
        family: Image family used for alias names.
        now: Timestamp for metadata and the log key.

    Returns:
        UploadReport. Missing formats and a missing PXE directory are
        recorded as warnings; upload failures raise TransferError.
    """
    now = now or datetime.now(timezone.utc)
    metadata = build_metadata(now)
    prefix = prefix.strip("/")
    report = UploadReport(bucket=store.bucket)

    store.check_access()
    logger.info("Uploading images to s3://%s/%s/", store.bucket, prefix)

    for fmt in FORMAT_ORDER:
        candidates = shell.glob(f"{shlex.quote(output_dir)}/*.{fmt.value}")
        source = select_newest(candidates, fmt)
        if source is None:
            report.skipped.append(fmt)
            report.warn(f"No .{fmt.value} file found, skipping")
            continue
        obj = _upload(store, report, source, f"{prefix}/{PurePosixPath(source).name}", metadata)
        if latest_alias:
            alias = f"{prefix}/{latest_alias_filename(family, fmt)}"
            logger.info("Updating alias %s", s3_uri(store.bucket, alias))
            store.copy(obj.key, alias)

    if log_path and shell.exists(log_path):
        key = f"{prefix}/build-{now.strftime(LOG_TIMESTAMP_FORMAT)}.log"
        _upload(store, report, log_path, key, metadata)

    if shell.is_dir(pxe_dir):
        result = shell.run(
            f"find {shlex.quote(pxe_dir)} -maxdepth 1 -type f | sort", check=False
        )
        for path in result.lines:
            _upload(store, report, path, f"{PXE_PREFIX}/{PurePosixPath(path).name}", metadata)
    else:
        report.warn(f"No PXE directory found at {pxe_dir}")

    for listed_prefix in (f"{prefix}/", f"{PXE_PREFIX}/"):
        report.listing.extend(store.listing(listed_prefix))
    if report.listing:
        logger.info("Bucket contents:\n%s", "\n".join(report.listing))

    logger.info(
        "Uploaded %d object(s), %d format(s) skipped",
        len(report.uploaded),
        len(report.skipped),
    )
    return report


def upload_from_settings(
    shell: Shell,
    store: ObjectStore,
    settings: Settings,
    *,
    now: datetime | None = None,
) -> UploadReport:
    """Upload using the remote layout configured in ``settings``."""
    return upload_artifacts(
        shell,
        store,
        output_dir=settings.output_dir,
        pxe_dir=settings.pxe_dir,
        prefix=settings.s3_prefix,
        log_path=build_log_path(settings),
        latest_alias=settings.upload_latest_alias,
        now=now,
    )


__all__ = [
    "LOG_TIMESTAMP_FORMAT",
    "PXE_PREFIX",
    "UploadReport",
    "build_metadata",
    "upload_artifacts",
    "upload_from_settings",
]
