"""Tests for builds/params.py module."""

import pytest
from pydantic import ValidationError

from capi_imagegen.builds.params import IMAGE_FAMILY, BuildParameters
from capi_imagegen.config import Settings


class TestBuildParameters:
    def test_defaults(self) -> None:
        params = BuildParameters()
        assert params.k8s_version == "v1.32.4"
        assert params.k8s_semver == "1.32.4"
        assert params.k8s_series == "v1.32"
        assert params.k8s_deb_version == "1.32.4-1.1"

    def test_missing_v_prefix_is_added(self) -> None:
        assert BuildParameters(k8s_version="1.31.2").k8s_version == "v1.31.2"

    @pytest.mark.parametrize("version", ["v1.32", "latest", "v1.32.x", "", "v1.32.4.1"])
    def test_invalid_k8s_version(self, version: str) -> None:
        with pytest.raises(ValidationError):
            BuildParameters(k8s_version=version)

    def test_component_versions_drop_v(self) -> None:
        params = BuildParameters(containerd_version="v2.0.4", runc_version="v1.2.8")
        assert params.containerd_version == "2.0.4"
        assert params.runc_version == "1.2.8"

    def test_empty_component_version(self) -> None:
        with pytest.raises(ValidationError):
            BuildParameters(cni_version=" ")

    def test_image_name(self) -> None:
        params = BuildParameters(k8s_version="v1.30.1")
        assert params.image_name == f"{IMAGE_FAMILY}-1.30.1"
        assert params.image_name == "ubuntu-2204-arm64-kube-1.30.1"

    def test_frozen(self) -> None:
        params = BuildParameters()
        with pytest.raises(ValidationError):
            params.k8s_version = "v1.0.0"

    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(ValidationError):
            BuildParameters(kubernetes="v1.32.4")

    def test_from_settings(self) -> None:
        settings = Settings(_env_file=None, k8s_version="1.29.9", crictl_version="1.29.0")
        params = BuildParameters.from_settings(settings)
        assert params.k8s_version == "v1.29.9"
        assert params.crictl_version == "1.29.0"

    def test_packer_vars(self) -> None:
        variables = BuildParameters().packer_vars()
        assert variables["kubernetes_semver"] == "v1.32.4"
        assert variables["kubernetes_series"] == "v1.32"
        assert variables["kubernetes_deb_version"] == "1.32.4-1.1"
        assert variables["image_name"] == "ubuntu-2204-arm64-kube-1.32.4"
        assert variables["containerd_version"] == "2.0.4"
