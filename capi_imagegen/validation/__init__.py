"""Image validation module.

This module handles:
- Host preflight (architecture, KVM)
- A disposable libvirt VM booted from the image
- The ordered guest probe checklist and its summary
"""

from capi_imagegen.validation.probes import (
    ProbeResult,
    ValidationError,
    ValidationReport,
)

__all__ = ["ProbeResult", "ValidationError", "ValidationReport"]

# Access the runner via capi_imagegen.validation.runner
