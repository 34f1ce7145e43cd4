"""Build parameters for the CAPI image.

Version strings are fixed for the whole run and flow into Packer variables
and rendered seed files.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from capi_imagegen.config import Settings

# Image family; the full image name appends the Kubernetes version
IMAGE_FAMILY = "ubuntu-2204-arm64-kube"

# Debian package revision used by pkgs.k8s.io
K8S_DEB_REVISION = "1.1"


class BuildParameters(BaseModel):
    """Immutable version set for one build.

    Attributes:
        k8s_version: Kubernetes version with leading 'v' (e.g., 'v1.32.4').
        containerd_version: containerd release.
        cni_version: CNI plugins release.
        crictl_version: cri-tools release.
        runc_version: runc release.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    k8s_version: str = Field(default="v1.32.4")
    containerd_version: str = Field(default="2.0.4")
    cni_version: str = Field(default="1.6.0")
    crictl_version: str = Field(default="1.32.0")
    runc_version: str = Field(default="1.2.8")

    @field_validator("k8s_version")
    @classmethod
    def normalize_k8s_version(cls, v: str) -> str:
        """Require MAJOR.MINOR.PATCH and prefix 'v' when missing."""
        v = v.strip()
        bare = v[1:] if v.startswith("v") else v
        parts = bare.split(".")
        if len(parts) != 3 or not all(p.isdigit() for p in parts):
            raise ValueError(f"k8s_version must look like v1.32.4, got '{v}'")
        return f"v{bare}"

    @field_validator("containerd_version", "cni_version", "crictl_version", "runc_version")
    @classmethod
    def strip_leading_v(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("version must not be empty")
        return v[1:] if v.startswith("v") else v

    @classmethod
    def from_settings(cls, settings: Settings) -> BuildParameters:
        return cls(
            k8s_version=settings.k8s_version,
            containerd_version=settings.containerd_version,
            cni_version=settings.cni_version,
            crictl_version=settings.crictl_version,
            runc_version=settings.runc_version,
        )

    @property
    def k8s_semver(self) -> str:
        """Version without the leading 'v' (e.g., '1.32.4')."""
        return self.k8s_version[1:]

    @property
    def k8s_series(self) -> str:
        """Minor series (e.g., 'v1.32')."""
        return self.k8s_version.rsplit(".", 1)[0]

    @property
    def k8s_deb_version(self) -> str:
        return f"{self.k8s_semver}-{K8S_DEB_REVISION}"

    @property
    def image_name(self) -> str:
        return f"{IMAGE_FAMILY}-{self.k8s_semver}"

    def packer_vars(self) -> dict[str, str]:
        """Variables passed to ``packer build`` with ``-var``."""
        return {
            "kubernetes_semver": self.k8s_version,
            "kubernetes_series": self.k8s_series,
            "kubernetes_deb_version": self.k8s_deb_version,
            "containerd_version": self.containerd_version,
            "cni_version": self.cni_version,
            "crictl_version": self.crictl_version,
            "runc_version": self.runc_version,
            "image_name": self.image_name,
        }


__all__ = ["IMAGE_FAMILY", "K8S_DEB_REVISION", "BuildParameters"]
