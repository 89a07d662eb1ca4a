"""Build argument composition for the container build engine.

This module handles:
- The ordered ``--build-arg``/``--secret`` argument set
- Per-kind mappings from target fields to build arguments
- The common arguments shared by every build

Composition is pure: the same target and common arguments always produce
the same argument set.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

from buildsys.targets.schema import (
    BuildTarget,
    KitTarget,
    PackageTarget,
    RepackTarget,
    VariantTarget,
)
from buildsys.types import ImageFeature, SupportedArch

# Suppressed BuildKit checks:
# - InvalidDefaultArgInFrom warns about the SDK argument, which is always set
# - SecretsUsedInArgOrEnv warns about the TOKEN argument, which is not a secret
DOCKERFILE_CHECK_SKIP = "skip=InvalidDefaultArgInFrom,SecretsUsedInArgOrEnv"


class BuildArgumentSet:
    """Ordered engine arguments with at most one ``--build-arg`` per key."""

    def __init__(self) -> None:
        self._tokens: list[str] = []
        self._keys: set[str] = set()

    def build_arg(self, key: str, value: object) -> BuildArgumentSet:
        """Append ``--build-arg KEY=VALUE``.

        Raises:
            ValueError: If the key was already added.
        """
        if key in self._keys:
            raise ValueError(f"Duplicate build argument: {key}")
        self._keys.add(key)
        self._tokens.extend(["--build-arg", f"{key}={value}"])
        return self

    def secret(self, type_: str, id_: str, src: str) -> BuildArgumentSet:
        """Append ``--secret type=T,id=ID,src=SRC``."""
        self._tokens.extend(["--secret", f"type={type_},id={id_},src={src}"])
        return self

    def extend(self, tokens: Iterable[str]) -> BuildArgumentSet:
        """Append raw tokens, e.g. pre-rendered secret arguments."""
        self._tokens.extend(tokens)
        return self

    def update(self, other: BuildArgumentSet) -> BuildArgumentSet:
        """Append another set, keeping build argument keys unique.

        Raises:
            ValueError: If both sets define the same build argument.
        """
        for flag, value in other._groups():
            if flag == "--build-arg" and value is not None:
                key, _, val = value.partition("=")
                self.build_arg(key, val)
            elif value is None:
                self._tokens.append(flag)
            else:
                self._tokens.extend([flag, value])
        return self

    def _groups(self) -> Iterator[tuple[str, str | None]]:
        tokens = self._tokens
        i = 0
        while i < len(tokens):
            if tokens[i] in ("--build-arg", "--secret") and i + 1 < len(tokens):
                yield tokens[i], tokens[i + 1]
                i += 2
            else:
                yield tokens[i], None
                i += 1

    def keys(self) -> frozenset[str]:
        return frozenset(self._keys)

    def as_dict(self) -> dict[str, str]:
        """Return the build arguments as a KEY -> VALUE mapping."""
        result: dict[str, str] = {}
        for flag, value in self._groups():
            if flag == "--build-arg" and value is not None:
                key, _, val = value.partition("=")
                result[key] = val
        return result

    def to_list(self) -> list[str]:
        return list(self._tokens)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __repr__(self) -> str:
        return f"BuildArgumentSet({self._tokens!r})"


@dataclass(frozen=True)
class CommonBuildArgs:
    """Arguments shared by every build kind.

    Attributes:
        arch: Target architecture.
        sdk: SDK image reference.
        nocache: Random per-run value that defeats layer caching.
        token: Per-checkout correlation token.
        output_socket: Name of the socket serving the output directory.
        version_build: Build identifier.
        version_build_timestamp: Build identifier timestamp.
        version_image: Image version.
    """

    arch: SupportedArch
    sdk: str
    nocache: str
    token: str
    output_socket: str
    version_build: str = ""
    version_build_timestamp: str = ""
    version_image: str = ""


def _join(values: Iterable[str]) -> str:
    return " ".join(values)


def _image_feature_args(args: BuildArgumentSet, features: Iterable[ImageFeature]) -> None:
    for feature in sorted(features, key=lambda f: f.build_arg_key):
        args.build_arg(feature.build_arg_key, "1")


def package_arguments(target: PackageTarget, common: CommonBuildArgs) -> BuildArgumentSet:
    """Compose build arguments for a package build."""
    args = BuildArgumentSet()
    args.build_arg("KIT_DEPENDENCIES", _join(target.kit_dependencies))
    args.build_arg(
        "EXTERNAL_KIT_DEPENDENCIES", _join(target.external_kit_dependencies)
    )
    args.build_arg("PACKAGE", target.name)
    args.build_arg("PACKAGE_DEPENDENCIES", _join(target.package_dependencies))
    args.build_arg("BUILD_ID", common.version_build)
    args.build_arg("BUILD_ID_TIMESTAMP", common.version_build_timestamp)
    return args


def kit_arguments(target: KitTarget, common: CommonBuildArgs) -> BuildArgumentSet:
    """Compose build arguments for a kit build.

    Raises:
        TargetMetadataError: If the kit has no vendor.
    """
    vendor = target.require_vendor()
    args = BuildArgumentSet()
    args.build_arg("KIT", target.name)
    args.build_arg("PACKAGE_DEPENDENCIES", _join(target.package_dependencies))
    args.build_arg("BUILD_ID", common.version_build)
    args.build_arg("VERSION_ID", common.version_image)
    args.build_arg("EXTERNAL_KIT_METADATA", target.external_kit_metadata)
    args.build_arg("VENDOR", vendor)
    args.build_arg("LOCAL_KIT_DEPENDENCIES", _join(target.kit_dependencies))
    return args


def variant_arguments(target: VariantTarget, common: CommonBuildArgs) -> BuildArgumentSet:
    """Compose build arguments for a variant image build.

    Raises:
        TargetMetadataError: If the variant name cannot be parsed.
    """
    variant = target.variant_name()
    layout = target.image_layout
    os_publish_size, data_publish_size = layout.publish_image_sizes_gib()

    args = BuildArgumentSet()
    args.build_arg("DATA_IMAGE_PUBLISH_SIZE_GIB", data_publish_size)
    args.build_arg("BUILD_ID", common.version_build)
    args.build_arg("DATA_IMAGE_SIZE_GIB", layout.data_image_size_gib)
    args.build_arg("IMAGE_FORMAT", target.image_format.value)
    args.build_arg("IMAGE_NAME", target.image_name)
    args.build_arg("KERNEL_PARAMETERS", _join(target.kernel_parameters))
    args.build_arg("KIT_DEPENDENCIES", _join(target.kit_dependencies))
    args.build_arg(
        "EXTERNAL_KIT_DEPENDENCIES", _join(target.external_kit_dependencies)
    )
    args.build_arg("OS_IMAGE_PUBLISH_SIZE_GIB", os_publish_size)
    args.build_arg("OS_IMAGE_SIZE_GIB", layout.os_image_size_gib)
    args.build_arg("PACKAGES", _join(target.packages))
    args.build_arg("PACKAGE_DEPENDENCIES", _join(target.package_dependencies))
    args.build_arg("PARTITION_PLAN", layout.partition_plan.value)
    args.build_arg("PRETTY_NAME", target.pretty_name)
    args.build_arg("VARIANT", variant.name)
    args.build_arg("VARIANT_FAMILY", variant.family)
    args.build_arg("VARIANT_FLAVOR", variant.flavor or "")
    args.build_arg("VARIANT_PLATFORM", variant.platform)
    args.build_arg("VARIANT_RUNTIME", variant.runtime)
    args.build_arg("VERSION_ID", common.version_image)
    _image_feature_args(args, target.image_features)
    return args


def repack_arguments(target: RepackTarget, common: CommonBuildArgs) -> BuildArgumentSet:
    """Compose build arguments for repackaging a variant image."""
    layout = target.image_layout
    os_publish_size, data_publish_size = layout.publish_image_sizes_gib()

    args = BuildArgumentSet()
    args.build_arg("DATA_IMAGE_PUBLISH_SIZE_GIB", data_publish_size)
    args.build_arg("DATA_IMAGE_SIZE_GIB", layout.data_image_size_gib)
    args.build_arg("IMAGE_FORMAT", target.image_format.value)
    args.build_arg("IMAGE_NAME", target.image_name)
    args.build_arg("OS_IMAGE_PUBLISH_SIZE_GIB", os_publish_size)
    args.build_arg("OS_IMAGE_SIZE_GIB", layout.os_image_size_gib)
    args.build_arg("PARTITION_PLAN", layout.partition_plan.value)
    args.build_arg("VARIANT", target.name)
    args.build_arg("BUILD_ID", common.version_build)
    args.build_arg("VERSION_ID", common.version_image)
    _image_feature_args(args, target.image_features)
    return args


def build_arguments(target: BuildTarget, common: CommonBuildArgs) -> BuildArgumentSet:
    """Compose the target-specific build arguments.

    Args:
        target: Resolved build target.
        common: Common build arguments (versions are read from here).

    Returns:
        BuildArgumentSet with the target's arguments.

    Raises:
        TargetMetadataError: If required target metadata is missing.
    """
    if isinstance(target, PackageTarget):
        return package_arguments(target, common)
    if isinstance(target, KitTarget):
        return kit_arguments(target, common)
    if isinstance(target, VariantTarget):
        return variant_arguments(target, common)
    if isinstance(target, RepackTarget):
        return repack_arguments(target, common)
    raise TypeError(f"Unsupported target type: {type(target).__name__}")


def common_arguments(common: CommonBuildArgs, args: BuildArgumentSet) -> BuildArgumentSet:
    """Append the arguments every build receives."""
    args.build_arg("ARCH", common.arch.value)
    args.build_arg("GOARCH", common.arch.goarch)
    args.build_arg("SDK", common.sdk)
    args.build_arg("NOCACHE", common.nocache)
    args.build_arg("TOKEN", common.token)
    args.build_arg("OUTPUT_SOCKET", common.output_socket)
    return args


__all__ = [
    "DOCKERFILE_CHECK_SKIP",
    "BuildArgumentSet",
    "CommonBuildArgs",
    "build_arguments",
    "common_arguments",
    "kit_arguments",
    "package_arguments",
    "repack_arguments",
    "variant_arguments",
]
