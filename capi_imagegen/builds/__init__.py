"""Build orchestration module.

This module handles:
- Build host environment setup and ARM64 role patches
- Rendering the Packer template and seed files
- Running Packer
- Format conversion (raw, vmdk, OVA)
- PXE boot file extraction
"""

from capi_imagegen.builds.params import IMAGE_FAMILY, BuildParameters

__all__ = ["IMAGE_FAMILY", "BuildParameters"]

# Lazy imports for submodules to avoid circular imports
# Access via capi_imagegen.builds.service, etc.
