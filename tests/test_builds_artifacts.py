"""Tests for builds/artifacts.py module.

Tests artifact naming, classification and newest-file selection.
"""

import hashlib
from pathlib import Path

from capi_imagegen.builds.artifacts import (
    FORMAT_ORDER,
    artifact_filename,
    classify_artifact,
    compute_file_hash,
    expected_artifacts,
    latest_alias_filename,
    select_newest,
)
from capi_imagegen.types import ImageFormat


class TestNaming:
    def test_artifact_filename(self) -> None:
        name = artifact_filename("ubuntu-2204-arm64-kube-1.32.4", ImageFormat.VMDK)
        assert name == "ubuntu-2204-arm64-kube-1.32.4.vmdk"

    def test_expected_artifacts_in_upload_order(self) -> None:
        names = expected_artifacts("img-1.0.0")
        assert names == ["img-1.0.0.qcow2", "img-1.0.0.raw", "img-1.0.0.vmdk", "img-1.0.0.ova"]

    def test_format_order(self) -> None:
        assert [f.value for f in FORMAT_ORDER] == ["qcow2", "raw", "vmdk", "ova"]

    def test_latest_alias(self) -> None:
        assert latest_alias_filename("ubuntu-2204-arm64-kube", ImageFormat.OVA) == (
            "ubuntu-2204-arm64-kube-latest.ova"
        )


class TestClassifyArtifact:
    """Tests for classify_artifact function."""

    def test_disk_formats(self) -> None:
        assert classify_artifact("img-1.32.4.qcow2") == "qcow2"
        assert classify_artifact("/out/img.RAW") == "raw"
        assert classify_artifact("img.vmdk") == "vmdk"
        assert classify_artifact("img.ova") == "ova"

    def test_boot_files(self) -> None:
        assert classify_artifact("vmlinuz-5.15.0-125-generic") == "kernel"
        assert classify_artifact("initrd.img-5.15.0-125-generic") == "initrd"

    def test_log_and_other(self) -> None:
        assert classify_artifact("build-20250101-120000.log") == "log"
        assert classify_artifact("img.mf") == "other"


class TestSelectNewest:
    def test_picks_first_of_format(self) -> None:
        paths = ["/o/b.qcow2", "/o/a.qcow2"]
        assert select_newest(paths, ImageFormat.QCOW2) == "/o/b.qcow2"

    def test_skips_latest_alias(self) -> None:
        paths = ["/o/ubuntu-2204-arm64-kube-latest.qcow2", "/o/ubuntu-2204-arm64-kube-1.32.4.qcow2"]
        assert select_newest(paths, ImageFormat.QCOW2) == "/o/ubuntu-2204-arm64-kube-1.32.4.qcow2"

    def test_ignores_other_formats(self) -> None:
        assert select_newest(["/o/a.raw"], ImageFormat.QCOW2) is None

    def test_empty(self) -> None:
        assert select_newest([], ImageFormat.OVA) is None


class TestComputeFileHash:
    def test_matches_hashlib(self, tmp_path: Path) -> None:
        path = tmp_path / "img.raw"
        data = b"x" * 200_000
        path.write_bytes(data)
        assert compute_file_hash(path, chunk_size=1024) == hashlib.sha256(data).hexdigest()
