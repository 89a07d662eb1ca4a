"""Pydantic models for resolved build targets.

A build target is produced by the manifest and dependency graph tooling,
which resolves dependency lists and image metadata before handing the
target to buildsys. These models validate that resolved data; they do not
resolve anything themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildsys.errors import TargetMetadataError
from buildsys.types import BuildKind, ImageFeature, ImageFormat, PartitionPlan

# "." and ".." would resolve outside the per-target directories.
TARGET_NAME_PATTERN = re.compile(r"^(?!\.{1,2}$)[a-zA-Z0-9_.+\-]+$")

EXTERNAL_KIT_METADATA = "build/external-kits/external-kit-metadata.json"


class ImageLayout(BaseModel):
    """Sizes and partition layout of a variant image.

    Attributes:
        os_image_size_gib: Size of the OS image in GiB.
        data_image_size_gib: Size of the data image in GiB.
        partition_plan: Whether OS and data live on separate images.
    """

    model_config = ConfigDict(extra="forbid")

    os_image_size_gib: int = Field(default=2, ge=1)
    data_image_size_gib: int = Field(default=1, ge=1)
    partition_plan: PartitionPlan = PartitionPlan.SPLIT

    def publish_image_sizes_gib(self) -> tuple[int, int]:
        """Return the (os, data) image sizes used when publishing.

        A unified image carries the data partition, so its published size
        covers both and the data image size is reported as -1.
        """
        if self.partition_plan == PartitionPlan.UNIFIED:
            return self.os_image_size_gib + self.data_image_size_gib, -1
        return self.os_image_size_gib, self.data_image_size_gib


@dataclass(frozen=True)
class VariantName:
    """A variant name split into its components.

    Variant names look like ``platform-runtime[-version[-flavor]]``, for
    example ``aws-k8s-1.29-nvidia``.
    """

    name: str
    platform: str
    runtime: str
    version: str | None
    flavor: str | None

    @property
    def family(self) -> str:
        return f"{self.platform}-{self.runtime}"

    @classmethod
    def parse(cls, name: str) -> VariantName:
        """Parse a variant name.

        Raises:
            TargetMetadataError: If the name has fewer than two components.
        """
        parts = name.split("-")
        if len(parts) < 2 or not all(parts):
            raise TargetMetadataError(
                f"Invalid variant name '{name}': expected platform-runtime[-version[-flavor]]"
            )
        version = parts[2] if len(parts) > 2 else None
        flavor = "-".join(parts[3:]) if len(parts) > 3 else None
        return cls(
            name=name,
            platform=parts[0],
            runtime=parts[1],
            version=version,
            flavor=flavor,
        )


class _TargetBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Target name (package, kit, or variant)")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name is safe to use in paths and image tags."""
        if not TARGET_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {TARGET_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @property
    def build_kind(self) -> BuildKind:
        return BuildKind(self.kind)  # type: ignore[attr-defined]


class PackageTarget(_TargetBase):
    """A package build."""

    kind: Literal["package"] = "package"
    package_dependencies: list[str] = Field(default_factory=list)
    kit_dependencies: list[str] = Field(default_factory=list)
    external_kit_dependencies: list[str] = Field(default_factory=list)


class KitTarget(_TargetBase):
    """A kit build, aggregating packages into a repository."""

    kind: Literal["kit"] = "kit"
    vendor: str | None = Field(default=None, description="Kit vendor")
    package_dependencies: list[str] = Field(default_factory=list)
    kit_dependencies: list[str] = Field(
        default_factory=list, description="Local kits this kit depends on"
    )
    external_kit_metadata: str = Field(default=EXTERNAL_KIT_METADATA)

    def require_vendor(self) -> str:
        """Return the vendor, or raise if the manifest did not provide one."""
        if not self.vendor:
            raise TargetMetadataError(f"Kit '{self.name}' has no vendor")
        return self.vendor


class VariantTarget(_TargetBase):
    """A bootable OS image variant build."""

    kind: Literal["variant"] = "variant"
    image_name: str = Field(description="Base name of the produced images")
    pretty_name: str = Field(default="", description="Human-readable OS name")
    packages: list[str] = Field(
        default_factory=list, description="Packages included in the image"
    )
    kernel_parameters: list[str] = Field(default_factory=list)
    image_features: set[ImageFeature] = Field(default_factory=set)
    image_format: ImageFormat = ImageFormat.RAW
    image_layout: ImageLayout = Field(default_factory=ImageLayout)
    package_dependencies: list[str] = Field(default_factory=list)
    kit_dependencies: list[str] = Field(default_factory=list)
    external_kit_dependencies: list[str] = Field(default_factory=list)

    def variant_name(self) -> VariantName:
        return VariantName.parse(self.name)


class RepackTarget(_TargetBase):
    """Repackaging of an already-built variant image."""

    kind: Literal["repack"] = "repack"
    image_name: str = Field(description="Base name of the produced images")
    image_features: set[ImageFeature] = Field(default_factory=set)
    image_format: ImageFormat = ImageFormat.RAW
    image_layout: ImageLayout = Field(default_factory=ImageLayout)


BuildTarget = Annotated[
    PackageTarget | KitTarget | VariantTarget | RepackTarget,
    Field(discriminator="kind"),
]


__all__ = [
    "EXTERNAL_KIT_METADATA",
    "TARGET_NAME_PATTERN",
    "BuildTarget",
    "ImageLayout",
    "KitTarget",
    "PackageTarget",
    "RepackTarget",
    "VariantName",
    "VariantTarget",
]
