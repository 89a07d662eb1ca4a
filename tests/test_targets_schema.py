"""Tests for targets/schema.py module."""

import pytest
from pydantic import TypeAdapter, ValidationError

from buildsys.errors import TargetMetadataError
from buildsys.targets.schema import (
    EXTERNAL_KIT_METADATA,
    BuildTarget,
    ImageLayout,
    KitTarget,
    PackageTarget,
    RepackTarget,
    VariantName,
    VariantTarget,
)
from buildsys.types import BuildKind, ImageFeature, ImageFormat, PartitionPlan

adapter = TypeAdapter(BuildTarget)


class TestImageLayout:
    """Tests for ImageLayout."""

    def test_defaults(self) -> None:
        """Default layout should be a split 2 GiB OS and 1 GiB data image."""
        layout = ImageLayout()
        assert layout.os_image_size_gib == 2
        assert layout.data_image_size_gib == 1
        assert layout.partition_plan == PartitionPlan.SPLIT

    def test_publish_sizes_split(self) -> None:
        """Split images publish each size separately."""
        layout = ImageLayout(os_image_size_gib=4, data_image_size_gib=20)
        assert layout.publish_image_sizes_gib() == (4, 20)

    def test_publish_sizes_unified(self) -> None:
        """Unified images publish the combined size and no data image."""
        layout = ImageLayout(
            os_image_size_gib=4,
            data_image_size_gib=20,
            partition_plan=PartitionPlan.UNIFIED,
        )
        assert layout.publish_image_sizes_gib() == (24, -1)

    def test_rejects_zero_size(self) -> None:
        """Image sizes must be positive."""
        with pytest.raises(ValidationError):
            ImageLayout(os_image_size_gib=0)


class TestVariantName:
    """Tests for VariantName parsing."""

    def test_two_components(self) -> None:
        """platform-runtime should parse without version or flavor."""
        name = VariantName.parse("metal-dev")
        assert name.platform == "metal"
        assert name.runtime == "dev"
        assert name.version is None
        assert name.flavor is None
        assert name.family == "metal-dev"

    def test_all_components(self) -> None:
        """Flavor should keep any trailing dashes."""
        name = VariantName.parse("aws-k8s-1.29-nvidia-fips")
        assert name.platform == "aws"
        assert name.runtime == "k8s"
        assert name.version == "1.29"
        assert name.flavor == "nvidia-fips"
        assert name.family == "aws-k8s"

    @pytest.mark.parametrize("value", ["aws", "aws--k8s", "-k8s", ""])
    def test_invalid(self, value: str) -> None:
        """Names without two non-empty components should be rejected."""
        with pytest.raises(TargetMetadataError):
            VariantName.parse(value)


class TestTargets:
    """Tests for the target models."""

    def test_package_defaults(self) -> None:
        """Package dependency lists should default to empty."""
        target = PackageTarget(name="kernel-6.1")
        assert target.build_kind == BuildKind.PACKAGE
        assert target.package_dependencies == []
        assert target.kit_dependencies == []
        assert target.external_kit_dependencies == []

    def test_invalid_name(self) -> None:
        """Names unsafe for paths and tags should be rejected."""
        with pytest.raises(ValidationError, match="name must match pattern"):
            PackageTarget(name="../etc")

    @pytest.mark.parametrize("name", [".", ".."])
    def test_dot_names_rejected(self, name: str) -> None:
        """Names that resolve to the current or parent directory should be rejected."""
        with pytest.raises(ValidationError, match="name must match pattern"):
            PackageTarget(name=name)

    def test_dotted_name_allowed(self) -> None:
        """Dots inside a name should still be accepted."""
        assert PackageTarget(name="python3.11").name == "python3.11"

    def test_unknown_field_rejected(self) -> None:
        """Unknown fields should be rejected."""
        with pytest.raises(ValidationError):
            PackageTarget(name="glibc", vendor="acme")

    def test_kit_vendor(self) -> None:
        """A kit should expose its vendor."""
        target = KitTarget(name="core-kit", vendor="acme")
        assert target.require_vendor() == "acme"
        assert target.external_kit_metadata == EXTERNAL_KIT_METADATA

    def test_kit_missing_vendor(self) -> None:
        """A kit without a vendor should raise TargetMetadataError."""
        target = KitTarget(name="core-kit")
        with pytest.raises(TargetMetadataError, match="no vendor"):
            target.require_vendor()

    def test_variant_features(self) -> None:
        """Variant features should parse from their string values."""
        target = VariantTarget(
            name="aws-dev",
            image_name="os-aws-dev",
            image_features=["fips", "uefi-secure-boot"],
            image_format="qcow2",
        )
        assert target.image_features == {ImageFeature.FIPS, ImageFeature.UEFI_SECURE_BOOT}
        assert target.image_format == ImageFormat.QCOW2
        assert target.variant_name().family == "aws-dev"

    def test_variant_unknown_feature(self) -> None:
        """Unknown image features should be rejected."""
        with pytest.raises(ValidationError):
            VariantTarget(name="aws-dev", image_name="x", image_features=["turbo"])


class TestDiscriminator:
    """Tests for dispatching on the kind field."""

    @pytest.mark.parametrize(
        ("data", "expected"),
        [
            ({"kind": "package", "name": "glibc"}, PackageTarget),
            ({"kind": "kit", "name": "core-kit", "vendor": "acme"}, KitTarget),
            ({"kind": "variant", "name": "aws-dev", "image_name": "os"}, VariantTarget),
            ({"kind": "repack", "name": "aws-dev", "image_name": "os"}, RepackTarget),
        ],
    )
    def test_dispatch(self, data: dict, expected: type) -> None:
        """Each kind should validate into its own model."""
        assert isinstance(adapter.validate_python(data), expected)

    def test_unknown_kind(self) -> None:
        """Unknown kinds should be rejected."""
        with pytest.raises(ValidationError):
            adapter.validate_python({"kind": "firmware", "name": "x"})

    def test_missing_kind(self) -> None:
        """Data without a kind should be rejected."""
        with pytest.raises(ValidationError):
            adapter.validate_python({"name": "x"})
