"""Thin CLI wrapper for buildsys.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import logging
from pathlib import Path
from typing import Annotated

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from buildsys import __version__
from buildsys.builds.arguments import CommonBuildArgs, build_arguments, common_arguments
from buildsys.builds.artifacts import clean_outputs, ensure_marker_dir
from buildsys.builds.engine import MINIMUM_ENGINE_VERSION, engine_server_version, satisfies_minimum
from buildsys.builds.service import ContainerBuild, EphemeralBuildContext, output_dirs_for
from buildsys.config import Settings, get_settings, print_settings_json
from buildsys.errors import BuildsysError
from buildsys.targets.io import load_target
from buildsys.targets.schema import TARGET_NAME_PATTERN, BuildTarget
from buildsys.types import BuildKind, SupportedArch

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

app = typer.Typer(
    name="buildsys",
    help="buildsys - containerized builds of packages, kits, and image variants",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildsys version {__version__}")
        raise typer.Exit()


def _fail(message: str) -> typer.Exit:
    console.print(f"[red]{escape(message)}[/red]")
    return typer.Exit(code=1)


def _settings(arch: SupportedArch | None = None, sdk_image: str | None = None) -> Settings:
    settings = get_settings()
    update: dict[str, object] = {}
    if arch is not None:
        update["arch"] = arch
    if sdk_image is not None:
        update["sdk_image"] = sdk_image
    return settings.model_copy(update=update) if update else settings


def _load(target_file: Path) -> BuildTarget:
    if not target_file.exists():
        raise _fail(f"File not found: {target_file}")
    try:
        return load_target(target_file)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(escape(str(e)))
        raise typer.Exit(code=1) from None
    except yaml.YAMLError as e:
        raise _fail(f"Invalid YAML in {target_file}: {e}") from None
    except ValueError as e:
        raise _fail(f"Validation failed: {e}") from None


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Logging level (defaults to BUILDSYS_LOG_LEVEL)"),
    ] = None,
) -> None:
    """buildsys - containerized builds of packages, kits, and image variants."""
    level = (log_level or get_settings().log_level).upper()
    if level not in LOG_LEVELS:
        raise _fail(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level, format=LOG_FORMAT)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Root directory:      {settings.root_dir}")
    console.print(f"  Tools directory:     {settings.effective_tools_dir()}")
    console.print(f"  State directory:     {settings.effective_state_dir()}")
    console.print(f"  Packages directory:  {settings.effective_packages_dir()}")
    console.print(f"  Kits directory:      {settings.effective_kits_dir()}")
    console.print(f"  Images directory:    {settings.effective_image_dir()}")
    console.print()
    console.print("[bold]Build:[/bold]")
    console.print(f"  Engine:              {settings.engine}")
    console.print(f"  Architecture:        {settings.arch.value}")
    console.print(f"  SDK image:           {settings.sdk_image or '(not set)'}")
    console.print(f"  Max build attempts:  {settings.max_build_attempts}")
    console.print(f"  Log level:           {settings.log_level}")


@app.command("engine-version")
def engine_version() -> None:
    """Show the build engine version and whether it is supported."""
    settings = get_settings()
    try:
        version = engine_server_version(settings.engine)
    except BuildsysError as e:
        raise _fail(f"Error: {e}") from None

    if satisfies_minimum(version):
        console.print(f"[green]{settings.engine} {version} (requires {MINIMUM_ENGINE_VERSION})[/green]")
    else:
        raise _fail(f"{settings.engine} {version} does not satisfy {MINIMUM_ENGINE_VERSION}")


@app.command()
def build(
    target_file: Annotated[
        Path,
        typer.Argument(help="Resolved target file (YAML or JSON)"),
    ],
    arch: Annotated[
        SupportedArch | None,
        typer.Option("--arch", "-a", help="Target architecture"),
    ] = None,
    sdk_image: Annotated[
        str | None,
        typer.Option("--sdk-image", help="SDK image reference"),
    ] = None,
) -> None:
    """Build a target and promote its outputs."""
    target = _load(target_file)
    settings = _settings(arch, sdk_image)

    try:
        promoted = ContainerBuild.for_target(target, settings).build()
    except BuildsysError as e:
        raise _fail(f"Build failed [{e.code}]: {e}") from None

    console.print(
        f"[green]Built {target.kind} {target.name}: {len(promoted)} artifacts[/green]"
    )
    for path in promoted:
        console.print(f"  {path}")


@app.command()
def clean(
    kind: Annotated[BuildKind, typer.Argument(help="Kind of target")],
    name: Annotated[str, typer.Argument(help="Target name")],
    arch: Annotated[
        SupportedArch | None,
        typer.Option("--arch", "-a", help="Target architecture"),
    ] = None,
) -> None:
    """Remove the outputs tracked for a target without building it."""
    if not TARGET_NAME_PATTERN.match(name):
        raise _fail(f"Invalid target name: {name}")
    settings = _settings(arch)
    try:
        marker_dir = ensure_marker_dir(
            kind, name, settings.arch.value, settings.effective_state_dir()
        )
        removed = clean_outputs(marker_dir, output_dirs_for(kind, name, settings))
    except BuildsysError as e:
        raise _fail(f"Clean failed [{e.code}]: {e}") from None

    if not removed:
        console.print("No tracked outputs found.")
        return
    console.print(f"[green]Removed {len(removed)} paths[/green]")
    for path in removed:
        console.print(f"  {path}")


@app.command("show-args")
def show_args(
    target_file: Annotated[
        Path,
        typer.Argument(help="Resolved target file (YAML or JSON)"),
    ],
) -> None:
    """Show the build arguments a target would produce."""
    target = _load(target_file)
    settings = get_settings()
    context = EphemeralBuildContext.create(settings.root_dir.resolve())
    common = CommonBuildArgs(
        arch=settings.arch,
        sdk=settings.sdk_image,
        nocache=context.nocache,
        token=context.token,
        output_socket=context.output_socket,
        version_build=settings.version_build,
        version_build_timestamp=settings.version_build_timestamp,
        version_image=settings.version_image,
    )
    try:
        args = common_arguments(common, build_arguments(target, common))
    except BuildsysError as e:
        raise _fail(f"Error: {e}") from None

    table = Table(title=f"{target.kind} {target.name}")
    table.add_column("Argument", style="cyan")
    table.add_column("Value")
    for key, value in args.as_dict().items():
        table.add_row(key, value)
    console.print(table)


if __name__ == "__main__":
    app()
