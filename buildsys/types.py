"""Shared type definitions for buildsys.

This module contains enums shared across subpackages to avoid circular
imports.
"""

from enum import Enum


class BuildKind(str, Enum):
    """Kind of build target."""

    PACKAGE = "package"
    KIT = "kit"
    VARIANT = "variant"
    REPACK = "repack"


class OutputCleanup(str, Enum):
    """When previously tracked outputs are garbage-collected."""

    BEFORE_BUILD = "before-build"
    NONE = "none"


class SupportedArch(str, Enum):
    """Target architectures supported by the build."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"

    @property
    def goarch(self) -> str:
        """Architecture name used by the Go cross-compilation toolchain."""
        return {"x86_64": "amd64", "aarch64": "arm64"}[self.value]


class ImageFormat(str, Enum):
    """Disk image format of a variant."""

    RAW = "raw"
    QCOW2 = "qcow2"
    VMDK = "vmdk"


class PartitionPlan(str, Enum):
    """Partition layout of a variant image."""

    SPLIT = "split"
    UNIFIED = "unified"


class ImageFeature(str, Enum):
    """Optional image features enabled per variant."""

    GRUB_SET_PRIVATE_VAR = "grub-set-private-var"
    UEFI_SECURE_BOOT = "uefi-secure-boot"
    SYSTEMD_NETWORKD = "systemd-networkd"
    UNIFIED_CGROUP_HIERARCHY = "unified-cgroup-hierarchy"
    XFS_DATA_PARTITION = "xfs-data-partition"
    IN_PLACE_UPDATES = "in-place-updates"
    HOST_CONTAINERS = "host-containers"
    FIPS = "fips"

    @property
    def build_arg_key(self) -> str:
        """Build argument name, e.g. ``UEFI_SECURE_BOOT``."""
        return self.value.upper().replace("-", "_")


__all__ = [
    "BuildKind",
    "ImageFeature",
    "ImageFormat",
    "OutputCleanup",
    "PartitionPlan",
    "SupportedArch",
]
