"""Artifact naming and classification.

This module handles:
- The filename convention for disk images (<family>-<version>.<ext>)
- Classifying build outputs (disk formats, kernel, initrd, logs)
- Computing checksums of local files
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from capi_imagegen.types import ImageFormat

logger = logging.getLogger(__name__)

# Filename prefixes for PXE boot files (lowercase for case-insensitive matching)
KERNEL_PATTERNS = ["vmlinuz"]
INITRD_PATTERNS = ["initrd"]
LOG_SUFFIXES = [".log"]

# Marker excluded when selecting the newest artifact of a format
LATEST_MARKER = "latest"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Upload order of disk formats
FORMAT_ORDER = [ImageFormat.QCOW2, ImageFormat.RAW, ImageFormat.VMDK, ImageFormat.OVA]


def artifact_filename(image_name: str, fmt: ImageFormat) -> str:
    """Return the filename of a disk image artifact.

    Args:
        image_name: Image name including version (e.g., 'ubuntu-2204-arm64-kube-1.32.4').
        fmt: Disk image format.

    Returns:
        Filename such as 'ubuntu-2204-arm64-kube-1.32.4.qcow2'.
    """
    return f"{image_name}.{fmt.value}"


def latest_alias_filename(family: str, fmt: ImageFormat) -> str:
    return f"{family}-{LATEST_MARKER}.{fmt.value}"


def expected_artifacts(image_name: str) -> list[str]:
    """All disk image filenames a complete build produces."""
    return [artifact_filename(image_name, fmt) for fmt in FORMAT_ORDER]


def classify_artifact(filename: str) -> str:
    """Classify an artifact by its filename.

    Args:
        filename: The artifact filename.

    Returns:
        A disk format value (qcow2, raw, vmdk, ova), or kernel, initrd, log, other.
    """
    name = Path(filename).name.lower()

    suffix = Path(name).suffix.lstrip(".")
    for fmt in FORMAT_ORDER:
        if suffix == fmt.value:
            return fmt.value
    if any(name.startswith(p) for p in KERNEL_PATTERNS):
        return "kernel"
    if any(name.startswith(p) for p in INITRD_PATTERNS):
        return "initrd"
    if any(name.endswith(s) for s in LOG_SUFFIXES):
        return "log"
    return "other"


def select_newest(paths: list[str], fmt: ImageFormat) -> str | None:
    """Pick the newest path of a format, ignoring 'latest' aliases.

    Args:
        paths: Candidate paths ordered newest first.
        fmt: Format to select.

    Returns:
        The selected path, or None.
    """
    for path in paths:
        name = Path(path).name
        if LATEST_MARKER in name:
            continue
        if classify_artifact(name) == fmt.value:
            return path
    return None


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


__all__ = [
    "FORMAT_ORDER",
    "HASH_CHUNK_SIZE",
    "INITRD_PATTERNS",
    "KERNEL_PATTERNS",
    "LATEST_MARKER",
    "artifact_filename",
    "classify_artifact",
    "compute_file_hash",
    "expected_artifacts",
    "latest_alias_filename",
    "select_newest",
]
