"""Validation probes and the run report.

Each probe is one guest command plus a predicate over its result. A probe
whose predicate is not met is classified with the probe's failure outcome
(``fail`` for hard requirements, ``warn`` for degraded-but-usable images).
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.shell import CommandResult
from capi_imagegen.types import ProbeOutcome, RunOutcome

logger = logging.getLogger(__name__)

KUBEADM_SUCCESS_MARKER = "Your Kubernetes control-plane has initialized successfully"

# Seconds allowed for a single guest probe command
PROBE_TIMEOUT = 120
KUBEADM_TIMEOUT = 600


class ValidationError(Exception):
    """Raised when validation cannot run at all."""

    def __init__(self, message: str, code: str = "validation_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ProbeResult:
    name: str
    outcome: ProbeOutcome
    detail: str = ""


@dataclass
class ValidationReport:
    """Ordered probe results for one validation run.

    Attributes:
        results: Probe results in execution order.
        image: Image the VM was booted from.
        vm_ip: Guest address, when the VM booted.
    """

    results: list[ProbeResult] = field(default_factory=list)
    image: str | None = None
    vm_ip: str | None = None

    def record(self, name: str, outcome: ProbeOutcome, detail: str = "") -> ProbeResult:
        result = ProbeResult(name=name, outcome=outcome, detail=detail)
        self.results.append(result)
        if outcome is ProbeOutcome.PASS:
            logger.info("[PASS] %s", name)
        elif outcome is ProbeOutcome.WARN:
            logger.warning("[WARN] %s%s", name, f": {detail}" if detail else "")
        else:
            logger.error("[FAIL] %s%s", name, f": {detail}" if detail else "")
        return result

    def _count(self, outcome: ProbeOutcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    @property
    def passed(self) -> int:
        return self._count(ProbeOutcome.PASS)

    @property
    def failed(self) -> int:
        return self._count(ProbeOutcome.FAIL)

    @property
    def warnings(self) -> int:
        return self._count(ProbeOutcome.WARN)

    @property
    def outcome(self) -> RunOutcome:
        if self.failed:
            return RunOutcome.FAIL
        if self.warnings:
            return RunOutcome.PASS_WITH_WARNINGS
        return RunOutcome.PASS

    @property
    def summary_line(self) -> str:
        return f"{self.passed} passed, {self.failed} failed, {self.warnings} warnings"

    def get(self, name: str) -> ProbeResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None


@dataclass(frozen=True)
class Probe:
    """A guest command and the condition it must meet.

    Attributes:
        name: Result name.
        command: Shell command run inside the guest.
        predicate: Returns True when the result passes.
        on_failure: Outcome recorded when the predicate is not met.
        timeout: Seconds allowed for the command.
    """

    name: str
    command: str
    predicate: Callable[[CommandResult], bool]
    on_failure: ProbeOutcome = ProbeOutcome.WARN
    timeout: float = PROBE_TIMEOUT

    def evaluate(self, result: CommandResult) -> tuple[ProbeOutcome, str]:
        if self.predicate(result):
            return ProbeOutcome.PASS, ""
        output = (result.stdout or result.stderr).strip()
        detail = output.splitlines()[-1] if output else f"exit code {result.exit_code}"
        return self.on_failure, detail


def _stdout_contains(text: str) -> Callable[[CommandResult], bool]:
    return lambda r: text in r.stdout


def default_checklist(params: BuildParameters) -> list[Probe]:
    """The fixed, ordered probes run against a booted image."""
    return [
        Probe(
            name="cloud_init",
            command="cloud-init status 2>/dev/null",
            predicate=_stdout_contains("done"),
        ),
        Probe(
            name="nested_kvm_device",
            command="ls -la /dev/kvm 2>&1",
            predicate=lambda r: r.ok and "kvm" in r.stdout,
            on_failure=ProbeOutcome.FAIL,
        ),
        Probe(
            name="nested_kvm_module",
            command="sudo modprobe kvm 2>&1 && echo loaded",
            predicate=lambda r: r.ok and r.stdout.strip().endswith("loaded"),
        ),
        Probe(
            name="containerd",
            command="systemctl is-active containerd 2>/dev/null",
            predicate=lambda r: r.stdout.strip() == "active",
        ),
        Probe(
            name="kubelet_version",
            command="kubelet --version 2>/dev/null",
            # trailing dot keeps series v1.3 from matching v1.32.x
            predicate=_stdout_contains(f"{params.k8s_series}."),
        ),
        Probe(
            name="kubeadm_preflight",
            command="sudo kubeadm init --dry-run 2>&1",
            predicate=_stdout_contains(KUBEADM_SUCCESS_MARKER),
            timeout=KUBEADM_TIMEOUT,
        ),
    ]


__all__ = [
    "KUBEADM_SUCCESS_MARKER",
    "Probe",
    "ProbeResult",
    "ValidationError",
    "ValidationReport",
    "default_checklist",
]
