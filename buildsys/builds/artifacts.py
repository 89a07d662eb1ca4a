"""Artifact tracking, promotion, and garbage collection.

This module handles:
- Marker directories under the state root, one per (kind, name, arch)
- Promoting build outputs into their output directory, leaving a marker
  file behind for each promoted file
- Removing outputs (and their markers) that a previous build promoted

A marker for relative path P is the empty file ``P + MARKER_SUFFIX`` in the
marker directory. It exists iff the artifact at P was promoted by a prior
build and has not been cleaned since. Markers are the only durable state;
they record that an artifact existed, never what it contained.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Iterator
from pathlib import Path

from buildsys.errors import FilesystemError
from buildsys.types import BuildKind

logger = logging.getLogger(__name__)

MARKER_SUFFIX = ".buildsys_marker"

# Repack builds share the variant's state.
MARKER_DIR_PREFIXES: dict[BuildKind, str] = {
    BuildKind.PACKAGE: "packages",
    BuildKind.KIT: "kits",
    BuildKind.VARIANT: "variants",
    BuildKind.REPACK: "variants",
}

EntryPredicate = Callable[[os.DirEntry[str]], bool]


def ensure_marker_dir(
    kind: BuildKind,
    name: str,
    arch: str,
    state_dir: Path,
) -> Path:
    """Create the marker directory for a target if it does not exist.

    Args:
        kind: Kind of build.
        name: Package, kit, or variant name.
        arch: Target architecture.
        state_dir: Root of all marker directories.

    Returns:
        Path ``state_dir/arch/<prefix>/name``.

    Raises:
        FilesystemError: If the directory cannot be created.
    """
    path = state_dir / arch / MARKER_DIR_PREFIXES[BuildKind(kind)] / name
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Failed to create directory {path}: {e}", path) from e
    return path


def is_marker_name(name: str) -> bool:
    return name.endswith(MARKER_SUFFIX)


def has_markers(entry: os.DirEntry[str]) -> bool:
    """Visit directories and marker files."""
    if entry.is_dir(follow_symlinks=False):
        return True
    return entry.is_file(follow_symlinks=False) and is_marker_name(entry.name)


def has_artifacts(entry: os.DirEntry[str]) -> bool:
    """Visit directories, symlinks, and files that are not markers."""
    if entry.is_dir(follow_symlinks=False) or entry.is_symlink():
        return True
    return entry.is_file(follow_symlinks=False) and not is_marker_name(entry.name)


def find_files(directory: Path, predicate: EntryPredicate) -> Iterator[Path]:
    """Lazily yield files and symlinks below ``directory``.

    ``directory`` itself is never yielded. Symlinks are not followed and
    directories on another device are not entered. Entries for which
    ``predicate`` is false are skipped, and directories for which it is
    false are not descended into.

    Raises:
        FilesystemError: If a directory cannot be read.
    """
    try:
        root_dev = directory.stat().st_dev
    except OSError as e:
        raise FilesystemError(f"Failed to read directory {directory}: {e}", directory) from e

    stack = [directory]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise FilesystemError(f"Failed to read directory {current}: {e}", current) from e

        subdirs: list[Path] = []
        for entry in entries:
            if not predicate(entry):
                continue
            path = Path(entry.path)
            if entry.is_dir(follow_symlinks=False):
                try:
                    same_device = entry.stat(follow_symlinks=False).st_dev == root_dev
                except OSError as e:
                    raise FilesystemError(f"Failed to stat {path}: {e}", path) from e
                if same_device:
                    subdirs.append(path)
            elif entry.is_symlink() or entry.is_file(follow_symlinks=False):
                yield path
        # Visit subdirectories in name order.
        stack.extend(reversed(subdirs))


def _strip_marker_suffix(path: Path) -> Path:
    return path.with_name(path.name[: -len(MARKER_SUFFIX)])


def _remove_path(path: Path, top: Path, clean_dirs: set[Path]) -> bool:
    """Remove ``path`` if present and record its ancestors below ``top``.

    Returns:
        True if something was removed.
    """
    if not path.exists() and not path.is_symlink():
        return False
    try:
        if path.is_dir() and not path.is_symlink():
            path.rmdir()
        else:
            path.unlink()
    except OSError as e:
        raise FilesystemError(f"Failed to remove {path}: {e}", path) from e
    logger.debug("Removed %s", path)

    parent = path.parent
    while parent != top and parent not in clean_dirs and parent != parent.parent:
        clean_dirs.add(parent)
        parent = parent.parent
    return True


def _is_empty_dir(path: Path) -> bool:
    if not path.is_dir() or path.is_symlink():
        return False
    try:
        with os.scandir(path) as it:
            return next(it, None) is None
    except OSError as e:
        raise FilesystemError(f"Failed to read directory {path}: {e}", path) from e


def clean_outputs(marker_dir: Path, output_dirs: Iterable[Path]) -> list[Path]:
    """Remove every tracked output and its marker.

    For each marker below ``marker_dir``, the artifact at the same relative
    path (minus the suffix) is removed from every output directory, followed
    by the marker itself. Directories left empty are then removed, deepest
    first, never ascending past ``marker_dir`` or an output directory.

    Args:
        marker_dir: Marker directory of the target.
        output_dirs: Every directory the target's artifacts may live in.

    Returns:
        Removed paths, in removal order.

    Raises:
        FilesystemError: If a file or directory cannot be removed.
    """
    output_dirs = list(output_dirs)
    removed: list[Path] = []
    clean_dirs: set[Path] = set()

    for marker_file in find_files(marker_dir, has_markers):
        relative = _strip_marker_suffix(marker_file.relative_to(marker_dir))
        for output_dir in output_dirs:
            output_file = output_dir / relative
            if _remove_path(output_file, output_dir, clean_dirs):
                removed.append(output_file)
        if _remove_path(marker_file, marker_dir, clean_dirs):
            removed.append(marker_file)

    # Deeper paths sort after their ancestors, so reversing the order lets
    # emptied children be removed before their parents are checked.
    for clean_dir in sorted(clean_dirs, key=lambda p: p.parts, reverse=True):
        if _is_empty_dir(clean_dir):
            try:
                clean_dir.rmdir()
            except OSError as e:
                raise FilesystemError(
                    f"Failed to remove directory {clean_dir}: {e}", clean_dir
                ) from e
            logger.debug("Removed empty directory %s", clean_dir)
            removed.append(clean_dir)

    if removed:
        logger.info("Cleaned %d tracked paths for %s", len(removed), marker_dir)
    return removed


def promote_outputs(build_dir: Path, output_dir: Path) -> list[Path]:
    """Move build outputs into ``output_dir``, leaving markers behind.

    The marker for each file is written before the file is moved, so an
    interrupted promotion still leaves enough for the next cleanup to
    remove what was already promoted.

    Args:
        build_dir: Directory the build wrote its outputs to.
        output_dir: Destination directory.

    Returns:
        Destination paths of the promoted files.

    Raises:
        FilesystemError: If a marker, directory, or move fails.
    """
    promoted: list[Path] = []

    for artifact_file in find_files(build_dir, has_artifacts):
        marker_file = artifact_file.with_name(artifact_file.name + MARKER_SUFFIX)
        try:
            marker_file.write_bytes(b"")
        except OSError as e:
            raise FilesystemError(
                f"Failed to create marker {marker_file}: {e}", marker_file
            ) from e

        output_file = output_dir / artifact_file.relative_to(build_dir)
        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise FilesystemError(
                f"Failed to create directory {output_file.parent}: {e}",
                output_file.parent,
            ) from e

        try:
            os.replace(artifact_file, output_file)
        except OSError as e:
            raise FilesystemError(
                f"Failed to move {artifact_file} to {output_file}: {e}", artifact_file
            ) from e
        logger.debug("Promoted %s -> %s", artifact_file, output_file)
        promoted.append(output_file)

    logger.info("Promoted %d artifacts to %s", len(promoted), output_dir)
    return promoted


__all__ = [
    "MARKER_DIR_PREFIXES",
    "MARKER_SUFFIX",
    "clean_outputs",
    "ensure_marker_dir",
    "find_files",
    "has_artifacts",
    "has_markers",
    "is_marker_name",
    "promote_outputs",
]
