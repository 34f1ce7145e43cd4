"""Shared type definitions for capi_imagegen.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class ImageFormat(str, Enum):
    """Disk image encodings produced by a build."""

    QCOW2 = "qcow2"
    RAW = "raw"
    VMDK = "vmdk"
    OVA = "ova"


class ProbeOutcome(str, Enum):
    """Classification of a single validation probe."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"


class RunOutcome(str, Enum):
    """Overall outcome of a validation run."""

    PASS = "pass"
    PASS_WITH_WARNINGS = "pass-with-warnings"
    FAIL = "fail"


class CleanupMode(str, Enum):
    """Teardown performed after the main pipeline sequence."""

    NONE = "none"
    COMPUTE_ONLY = "compute-only"
    ALL = "all"


@dataclass
class StageTiming:
    """Wall-clock duration of one pipeline or build stage."""

    name: str
    seconds: float


@dataclass
class UploadedObject:
    """An object written to S3."""

    key: str
    source: str
    metadata: dict[str, str] = field(default_factory=dict)


__all__ = [
    "CleanupMode",
    "ImageFormat",
    "ProbeOutcome",
    "RunOutcome",
    "StageTiming",
    "UploadedObject",
]
