"""Resolved build targets.

This module handles:
- Pydantic models for package, kit, variant, and repack targets
- Loading resolved targets from YAML/JSON files
"""

from buildsys.targets.schema import (
    BuildTarget,
    ImageLayout,
    KitTarget,
    PackageTarget,
    RepackTarget,
    VariantName,
    VariantTarget,
)

__all__ = [
    "BuildTarget",
    "ImageLayout",
    "KitTarget",
    "PackageTarget",
    "RepackTarget",
    "VariantName",
    "VariantTarget",
]
