"""Rendering of the Packer template and seed files.

Values never get interpolated into the HCL: the template is static and every
build parameter is passed as a Packer variable. cloud-init files are
serialized with PyYAML, Ansible vars with json, and the OVF descriptor is
XML-escaped.
"""

from __future__ import annotations

import json
import secrets
import string
from typing import Any
from xml.sax.saxutils import escape, quoteattr

import yaml

from capi_imagegen.builds.params import BuildParameters

PACKER_CONFIG_NAME = "capi-arm64.pkr.hcl"
ARM64_VARS_NAME = "arm64-vars.json"
SECRET_VARS_NAME = "builder.pkrvars.json"
BUILDER_USER = "builder"

# Length of the generated builder password
BUILDER_PASSWORD_LENGTH = 16

# Virtual hardware advertised in the OVF descriptor
OVF_DISK_CAPACITY_GIB = 20
OVF_CPUS = 4
OVF_MEMORY_MIB = 8192

PAUSE_IMAGE = "registry.k8s.io/pause:3.10"

PACKER_TEMPLATE = r"""packer {
  required_plugins {
    qemu = {
      version = ">= 1.0.0"
      source  = "github.com/hashicorp/qemu"
    }
    ansible = {
      version = ">= 1.1.0"
      source  = "github.com/hashicorp/ansible"
    }
  }
}

variable "kubernetes_semver" {
  type = string
}

variable "kubernetes_series" {
  type = string
}

variable "kubernetes_deb_version" {
  type = string
}

variable "containerd_version" {
  type = string
}

variable "cni_version" {
  type = string
}

variable "crictl_version" {
  type = string
}

variable "runc_version" {
  type = string
}

variable "builder_password" {
  type      = string
  sensitive = true
}

variable "build_dir" {
  type = string
}

variable "image_builder_dir" {
  type = string
}

variable "output_directory" {
  type = string
}

variable "image_name" {
  type = string
}

locals {
  ansible_dir = "${var.image_builder_dir}/images/capi/ansible"
  ansible_env = [
    "ANSIBLE_HOST_KEY_CHECKING=False",
    "ANSIBLE_SSH_ARGS=-o PubkeyAuthentication=no -o PasswordAuthentication=yes"
  ]
  common_args = [
    "-e", "ansible_ssh_pass=${var.builder_password}",
    "-e", "ansible_ssh_common_args='-o PubkeyAuthentication=no -o PasswordAuthentication=yes'",
    "-e", "@${var.build_dir}/arm64-vars.json",
    "-e", "ubuntu_repo=http://ports.ubuntu.com/ubuntu-ports",
    "-e", "ubuntu_security_repo=http://ports.ubuntu.com/ubuntu-ports",
    "-e", "extra_debs=",
    "-e", "extra_repos="
  ]
}

source "qemu" "capi-ubuntu-arm64" {
  iso_url          = "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-arm64.img"
  iso_checksum     = "file:https://cloud-images.ubuntu.com/jammy/current/SHA256SUMS"
  disk_image       = true
  disk_size        = "20G"
  format           = "qcow2"
  output_directory = var.output_directory
  vm_name          = var.image_name

  qemu_binary  = "qemu-system-aarch64"
  accelerator  = "kvm"
  machine_type = "virt"
  cpu_model    = "host"
  memory       = 4096
  cpus         = 4

  efi_boot          = true
  efi_firmware_code = "/usr/share/AAVMF/AAVMF_CODE.fd"
  efi_firmware_vars = "/usr/share/AAVMF/AAVMF_VARS.fd"

  qemuargs = [
    ["-cpu", "host"],
    ["-boot", "strict=off"]
  ]

  ssh_username           = "builder"
  ssh_password           = var.builder_password
  ssh_timeout            = "20m"
  ssh_handshake_attempts = 100

  cd_files = ["${var.build_dir}/cloud-init/user-data", "${var.build_dir}/cloud-init/meta-data"]
  cd_label = "cidata"

  shutdown_command = ""
  shutdown_timeout = "5m"

  headless = true
}

build {
  sources = ["source.qemu.capi-ubuntu-arm64"]

  provisioner "ansible" {
    user             = "builder"
    playbook_file    = "${local.ansible_dir}/firstboot.yml"
    use_proxy        = false
    ansible_env_vars = local.ansible_env
    extra_arguments  = local.common_args
  }

  provisioner "shell" {
    inline            = ["sudo reboot"]
    expect_disconnect = true
  }

  provisioner "shell" {
    inline       = ["echo 'Reconnected after reboot'"]
    pause_before = "30s"
  }

  provisioner "ansible" {
    user             = "builder"
    playbook_file    = "${local.ansible_dir}/node.yml"
    use_proxy        = false
    ansible_env_vars = local.ansible_env
    extra_arguments = concat(local.common_args, [
      "-e", "kubernetes_semver=${var.kubernetes_semver}",
      "-e", "kubernetes_series=${var.kubernetes_series}",
      "-e", "kubernetes_cni_semver=v${var.cni_version}",
      "-e", "kubernetes_cni_source_type=http",
      "-e", "kubernetes_cni_http_source=https://github.com/containernetworking/plugins/releases/download",
      "-e", "kubernetes_source_type=http",
      "-e", "kubernetes_http_source=https://dl.k8s.io/release",
      "-e", "kubeadm_template=etc/kubeadm.yml",
      "-e", "kubernetes_container_registry=registry.k8s.io",
      "-e", "containerd_version=${var.containerd_version}",
      "-e", "containerd_url=https://github.com/containerd/containerd/releases/download/v${var.containerd_version}/containerd-${var.containerd_version}-linux-arm64.tar.gz",
      "-e", "containerd_sha256=",
      "-e", "containerd_service_url=https://raw.githubusercontent.com/containerd/containerd/refs/tags/v${var.containerd_version}/containerd.service",
      "-e", "containerd_wasm_shims_runtimes=",
      "-e", "containerd_additional_settings=",
      "-e", "containerd_cri_socket=/var/run/containerd/containerd.sock",
      "-e", "containerd_gvisor_runtime=false",
      "-e", "containerd_gvisor_version=latest",
      "-e", "crictl_url=https://github.com/kubernetes-sigs/cri-tools/releases/download/v${var.crictl_version}/crictl-v${var.crictl_version}-linux-arm64.tar.gz",
      "-e", "crictl_sha256=",
      "-e", "crictl_source_type=http",
      "-e", "runc_version=${var.runc_version}",
      "-e", "ecr_credential_provider=false",
      "-e", "node_custom_roles_post_sysprep=",
      "-e", "python_path="
    ])
  }
}
"""

OVF_TEMPLATE = string.Template("""<?xml version="1.0" encoding="UTF-8"?>
<Envelope xmlns="http://schemas.dmtf.org/ovf/envelope/1"
          xmlns:ovf="http://schemas.dmtf.org/ovf/envelope/1"
          xmlns:rasd="http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_ResourceAllocationSettingData"
          xmlns:vssd="http://schemas.dmtf.org/wbem/wscim/1/cim-schema/2/CIM_VirtualSystemSettingData">
  <References>
    <File ovf:href=$vmdk_attr ovf:id="file1" ovf:size="$vmdk_size"/>
  </References>
  <DiskSection>
    <Info>Virtual disk information</Info>
    <Disk ovf:capacity="$disk_gib" ovf:capacityAllocationUnits="byte * 2^30" ovf:diskId="vmdisk1" ovf:fileRef="file1" ovf:format="http://www.vmware.com/interfaces/specifications/vmdk.html#streamOptimized"/>
  </DiskSection>
  <VirtualSystem ovf:id=$name_attr>
    <Info>Ubuntu 22.04 ARM64 Kubernetes $k8s_version CAPI Image</Info>
    <Name>$name</Name>
    <OperatingSystemSection ovf:id="96">
      <Info>Ubuntu 64-bit ARM</Info>
    </OperatingSystemSection>
    <VirtualHardwareSection>
      <Info>Virtual hardware requirements</Info>
      <System>
        <vssd:ElementName>Virtual Hardware Family</vssd:ElementName>
        <vssd:InstanceID>0</vssd:InstanceID>
        <vssd:VirtualSystemIdentifier>$name</vssd:VirtualSystemIdentifier>
        <vssd:VirtualSystemType>vmx-17</vssd:VirtualSystemType>
      </System>
      <Item>
        <rasd:AllocationUnits>hertz * 10^6</rasd:AllocationUnits>
        <rasd:Description>Number of Virtual CPUs</rasd:Description>
        <rasd:ElementName>$cpus virtual CPU(s)</rasd:ElementName>
        <rasd:InstanceID>1</rasd:InstanceID>
        <rasd:ResourceType>3</rasd:ResourceType>
        <rasd:VirtualQuantity>$cpus</rasd:VirtualQuantity>
      </Item>
      <Item>
        <rasd:AllocationUnits>byte * 2^20</rasd:AllocationUnits>
        <rasd:Description>Memory Size</rasd:Description>
        <rasd:ElementName>${memory}MB of memory</rasd:ElementName>
        <rasd:InstanceID>2</rasd:InstanceID>
        <rasd:ResourceType>4</rasd:ResourceType>
        <rasd:VirtualQuantity>$memory</rasd:VirtualQuantity>
      </Item>
      <Item>
        <rasd:AddressOnParent>0</rasd:AddressOnParent>
        <rasd:ElementName>Hard Disk 1</rasd:ElementName>
        <rasd:HostResource>ovf:/disk/vmdisk1</rasd:HostResource>
        <rasd:InstanceID>3</rasd:InstanceID>
        <rasd:ResourceType>17</rasd:ResourceType>
      </Item>
    </VirtualHardwareSection>
  </VirtualSystem>
</Envelope>
""")


def generate_builder_password(length: int = BUILDER_PASSWORD_LENGTH) -> str:
    """Generate a fresh alphanumeric password for the Packer build user."""
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _cloud_config(document: dict[str, Any]) -> str:
    return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def render_builder_user_data(password: str) -> str:
    """cloud-init user-data enabling password SSH for the Packer build user."""
    return _cloud_config(
        {
            "users": [
                {
                    "name": BUILDER_USER,
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                    "shell": "/bin/bash",
                    "lock_passwd": False,
                    "plain_text_passwd": password,
                }
            ],
            "ssh_pwauth": True,
            "runcmd": [
                "sed -i 's/^#*PasswordAuthentication.*/PasswordAuthentication yes/' /etc/ssh/sshd_config",
                "systemctl restart sshd",
            ],
        }
    )


def render_test_user_data(ssh_public_key: str, user: str = "ubuntu") -> str:
    """cloud-init user-data for the boot-test VM (key-based login only)."""
    return _cloud_config(
        {
            "users": [
                {
                    "name": user,
                    "sudo": "ALL=(ALL) NOPASSWD:ALL",
                    "shell": "/bin/bash",
                    "lock_passwd": True,
                    "ssh_authorized_keys": [ssh_public_key.strip()],
                }
            ],
            "runcmd": ["echo 'Cloud-init complete' > /tmp/cloud-init-done"],
        }
    )


def render_meta_data(instance_id: str, hostname: str) -> str:
    return yaml.safe_dump(
        {"instance-id": instance_id, "local-hostname": hostname},
        sort_keys=False,
    )


def render_arm64_vars(params: BuildParameters) -> str:
    """Ansible extra-vars overriding x86-only packages for ARM64."""
    crictl = params.crictl_version
    data = {
        "common_virt_debs": [],
        "common_virt_rpms": [],
        "enable_hv_kvp_daemon": False,
        "auditd_enabled": False,
        "qemu_debs": ["cloud-init", "cloud-guest-utils", "cloud-initramfs-growroot"],
        "containerd_wasm_shims_runtimes": "",
        "sysusr_prefix": "/usr/local",
        "sysusrlocal_prefix": "/usr/local",
        "systemd_prefix": "/usr/lib/systemd",
        "pause_image": PAUSE_IMAGE,
        "crictl_version": crictl,
        "crictl_source_type": "http",
        "crictl_url": (
            "https://github.com/kubernetes-sigs/cri-tools/releases/download/"
            f"v{crictl}/crictl-v{crictl}-linux-arm64.tar.gz"
        ),
        "load_additional_components": False,
    }
    return json.dumps(data, indent=2) + "\n"


def render_secret_vars(password: str) -> str:
    """Packer var-file carrying the builder password."""
    return json.dumps({"builder_password": password}) + "\n"


def render_ovf(image_name: str, k8s_version: str, vmdk_filename: str, vmdk_size: int) -> str:
    """Render the OVF descriptor bundled into the OVA."""
    return OVF_TEMPLATE.substitute(
        vmdk_attr=quoteattr(vmdk_filename),
        vmdk_size=int(vmdk_size),
        disk_gib=OVF_DISK_CAPACITY_GIB,
        name_attr=quoteattr(image_name),
        name=escape(image_name),
        k8s_version=escape(k8s_version),
        cpus=OVF_CPUS,
        memory=OVF_MEMORY_MIB,
    )


def render_ova_manifest(digests: dict[str, str]) -> str:
    """Render the OVA ``.mf`` manifest from filename -> SHA-256 digests."""
    return "".join(f"SHA256({name})= {digest}\n" for name, digest in digests.items())


__all__ = [
    "ARM64_VARS_NAME",
    "BUILDER_USER",
    "PACKER_CONFIG_NAME",
    "PACKER_TEMPLATE",
    "SECRET_VARS_NAME",
    "generate_builder_password",
    "render_arm64_vars",
    "render_builder_user_data",
    "render_meta_data",
    "render_ova_manifest",
    "render_ovf",
    "render_secret_vars",
    "render_test_user_data",
]
