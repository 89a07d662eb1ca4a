"""Configuration settings for buildsys.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from buildsys.types import SupportedArch


def _default_root_dir() -> Path:
    """Return the default project root (the current directory)."""
    return Path.cwd()


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the BUILDSYS_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDSYS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    root_dir: Path = Field(
        default_factory=_default_root_dir,
        description="Project root, used as the build context",
    )
    tools_dir: Path | None = Field(
        default=None,
        description="Directory holding build.Dockerfile (defaults to <root>/tools)",
    )
    state_dir: Path | None = Field(
        default=None,
        description="Root of the marker directories (defaults to <root>/build/state)",
    )
    packages_dir: Path | None = Field(
        default=None,
        description="Output directory for packages (defaults to <root>/build/rpms)",
    )
    kits_dir: Path | None = Field(
        default=None,
        description="Output directory for kits (defaults to <root>/build/kits)",
    )
    image_dir: Path | None = Field(
        default=None,
        description="Output directory for images (defaults to <root>/build/images)",
    )

    # Build engine
    engine: str = Field(
        default="docker",
        description="Container build engine executable",
    )
    arch: SupportedArch = Field(
        default=SupportedArch.X86_64,
        description="Target architecture",
    )
    sdk_image: str = Field(
        default="",
        description="SDK image reference used as the build base",
    )
    max_build_attempts: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Attempts allowed for the main build on transient failures",
    )

    # Version strings passed through to the build
    version_build: str = Field(default="", description="Build identifier")
    version_build_timestamp: str = Field(
        default="", description="Build identifier timestamp"
    )
    version_image: str = Field(default="", description="Image version")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    def effective_tools_dir(self) -> Path:
        """Return the tools directory, falling back to ``<root>/tools``."""
        return self.tools_dir or self.root_dir / "tools"

    def effective_state_dir(self) -> Path:
        """Return the state directory, falling back to ``<root>/build/state``."""
        return self.state_dir or self.root_dir / "build" / "state"

    def effective_packages_dir(self) -> Path:
        """Return the package output directory."""
        return self.packages_dir or self.root_dir / "build" / "rpms"

    def effective_kits_dir(self) -> Path:
        """Return the kit output directory."""
        return self.kits_dir or self.root_dir / "build" / "kits"

    def effective_image_dir(self) -> Path:
        """Return the image output directory."""
        return self.image_dir or self.root_dir / "build" / "images"


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
