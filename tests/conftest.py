"""Shared fixtures: a scripted Shell and isolated settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from fakes import FakeShell

from capi_imagegen.config import Settings

# Environment variables that would otherwise leak into Settings
ISOLATED_ENV = [
    "AWS_PROFILE",
    "AWS_REGION",
    "S3_BUCKET",
    "S3_PREFIX",
    "SSH_KEY",
    "K8S_VERSION",
    "CONTAINERD_VERSION",
    "CNI_VERSION",
    "CRICTL_VERSION",
    "RUNC_VERSION",
]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's AWS and build variables out of Settings."""
    for name in ISOLATED_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def shell() -> FakeShell:
    return FakeShell()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with local paths under tmp_path and no waiting."""
    return Settings(
        _env_file=None,
        terraform_dir=tmp_path / "terraform",
        work_dir=tmp_path / "logs",
        apt_retry_delay=0,
        ssh_interval=0,
        vm_boot_timeout=30,
        poll_interval=10,
    )
