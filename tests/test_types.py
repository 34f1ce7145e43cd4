"""Tests for shared types module."""

from capi_imagegen.pipeline import PipelineOptions
from capi_imagegen.types import CleanupMode, ImageFormat, ProbeOutcome, RunOutcome, UploadedObject


class TestEnums:
    """Test enum definitions."""

    def test_image_format_values(self) -> None:
        assert [fmt.value for fmt in ImageFormat] == ["qcow2", "raw", "vmdk", "ova"]

    def test_probe_outcome_values(self) -> None:
        assert ProbeOutcome.PASS.value == "pass"
        assert ProbeOutcome.FAIL.value == "fail"
        assert ProbeOutcome.WARN.value == "warn"

    def test_run_outcome_values(self) -> None:
        assert RunOutcome.PASS_WITH_WARNINGS.value == "pass-with-warnings"

    def test_enums_compare_as_strings(self) -> None:
        assert ImageFormat("vmdk") is ImageFormat.VMDK
        assert CleanupMode.ALL == "all"


class TestCleanupMode:
    """Cleanup flag resolution."""

    def test_default_none(self) -> None:
        assert PipelineOptions(profile="p", region="r").cleanup_mode is CleanupMode.NONE

    def test_vms_only(self) -> None:
        options = PipelineOptions(profile="p", region="r", cleanup_vms_only=True)
        assert options.cleanup_mode is CleanupMode.COMPUTE_ONLY

    def test_full_cleanup_takes_precedence(self) -> None:
        options = PipelineOptions(profile="p", region="r", cleanup=True, cleanup_vms_only=True)
        assert options.cleanup_mode is CleanupMode.ALL


class TestUploadedObject:
    def test_metadata_not_shared(self) -> None:
        a = UploadedObject(key="a", source="/a")
        b = UploadedObject(key="b", source="/b")
        a.metadata["build-date"] = "x"
        assert b.metadata == {}
