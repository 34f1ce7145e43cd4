"""Disk image format conversion.

Packer emits one qcow2 image; raw and vmdk are converted from it with
qemu-img and the vmdk is then packaged into an OVA.
"""

from __future__ import annotations

import logging
import shlex
from pathlib import PurePosixPath

from capi_imagegen.builds.artifacts import artifact_filename
from capi_imagegen.builds.params import BuildParameters
from capi_imagegen.builds.templates import render_ova_manifest, render_ovf
from capi_imagegen.shell import CommandError, Shell
from capi_imagegen.types import ImageFormat

logger = logging.getLogger(__name__)

VMDK_SUBFORMAT = "streamOptimized"


class ConversionError(Exception):
    """Raised when an image cannot be converted or packaged."""

    def __init__(self, message: str, code: str = "conversion_error") -> None:
        super().__init__(message)
        self.code = code


def normalize_primary(shell: Shell, primary: str) -> str:
    """Ensure the primary image carries the .qcow2 extension.

    Returns:
        Path of the qcow2 image.
    """
    if primary.endswith(f".{ImageFormat.QCOW2.value}"):
        return primary
    target = f"{primary}.{ImageFormat.QCOW2.value}"
    logger.info("Renaming %s to %s", primary, target)
    shell.run(["mv", primary, target])
    return target


def convert_image(shell: Shell, source: str, target: str, fmt: ImageFormat) -> str:
    """Convert a qcow2 image with qemu-img.

    Raises:
        ConversionError: If qemu-img fails.
    """
    cmd = ["qemu-img", "convert", "-f", "qcow2", "-O", fmt.value]
    if fmt is ImageFormat.VMDK:
        cmd.extend(["-o", f"subformat={VMDK_SUBFORMAT}"])
    cmd.extend([source, target])

    logger.info("Converting to %s...", fmt.value)
    try:
        shell.run(cmd)
    except CommandError as e:
        raise ConversionError(
            f"qemu-img conversion to {fmt.value} failed: {e.result.stderr.strip()}",
            code=f"convert_{fmt.value}_failed",
        ) from e
    return target


def _sha256(shell: Shell, path: str) -> str:
    result = shell.run(["sha256sum", path])
    return result.stdout.split()[0]


def create_ova(shell: Shell, params: BuildParameters, output_dir: str, vmdk_path: str) -> str:
    """Package a vmdk into an OVA with descriptor and manifest.

    Args:
        shell: Build host shell.
        params: Build parameters.
        output_dir: Directory holding the vmdk; the OVA lands here.
        vmdk_path: Stream-optimized vmdk.

    Returns:
        Path of the OVA.

    Raises:
        ConversionError: If packaging fails.
    """
    name = params.image_name
    vmdk_name = PurePosixPath(vmdk_path).name
    ovf_name = f"{name}.ovf"
    mf_name = f"{name}.mf"
    ova_name = artifact_filename(name, ImageFormat.OVA)
    ovf_path = f"{output_dir}/{ovf_name}"
    mf_path = f"{output_dir}/{mf_name}"

    logger.info("Creating OVA package...")
    try:
        size = int(shell.run(["stat", "-c%s", vmdk_path]).stdout.strip())
        shell.write_text(ovf_path, render_ovf(name, params.k8s_version, vmdk_name, size))
        digests = {
            ovf_name: _sha256(shell, ovf_path),
            vmdk_name: _sha256(shell, vmdk_path),
        }
        shell.write_text(mf_path, render_ova_manifest(digests))
        # OVF descriptor must be the first member of the archive
        shell.run(["tar", "-cf", ova_name, ovf_name, vmdk_name, mf_name], cwd=output_dir)
    except (CommandError, ValueError, IndexError) as e:
        raise ConversionError(f"OVA packaging failed: {e}", code="ova_failed") from e
    finally:
        cleanup = shell.run(["rm", "-f", ovf_path, mf_path], check=False)
        if not cleanup.ok:
            logger.warning("Failed to remove OVA intermediates: %s", cleanup.stderr)

    return f"{output_dir}/{ova_name}"


def convert_formats(
    shell: Shell,
    params: BuildParameters,
    output_dir: str,
    primary: str,
) -> dict[ImageFormat, str]:
    """Produce all disk formats from the primary image.

    Returns:
        Mapping of format to remote path.
    """
    name = params.image_name
    qcow2 = normalize_primary(shell, primary)
    raw = convert_image(
        shell, qcow2, f"{output_dir}/{artifact_filename(name, ImageFormat.RAW)}", ImageFormat.RAW
    )
    vmdk = convert_image(
        shell, qcow2, f"{output_dir}/{artifact_filename(name, ImageFormat.VMDK)}", ImageFormat.VMDK
    )
    ova = create_ova(shell, params, output_dir, vmdk)

    listing = shell.run(f"ls -lh {shlex.quote(output_dir)}", check=False)
    if listing.ok:
        logger.debug("Output directory:\n%s", listing.stdout)

    return {
        ImageFormat.QCOW2: qcow2,
        ImageFormat.RAW: raw,
        ImageFormat.VMDK: vmdk,
        ImageFormat.OVA: ova,
    }


__all__ = [
    "VMDK_SUBFORMAT",
    "ConversionError",
    "convert_formats",
    "convert_image",
    "create_ova",
    "normalize_primary",
]
