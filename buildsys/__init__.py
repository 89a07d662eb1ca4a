"""buildsys - containerized builds of packages, kits, and OS image variants.

This package drives the external container build engine with a precisely
assembled argument set and reconciles the build outputs against the
artifacts tracked by previous builds.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
