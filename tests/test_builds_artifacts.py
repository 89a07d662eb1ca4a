"""Tests for builds/artifacts.py module.

Tests marker directories, promotion, and cleanup of tracked outputs.
"""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from buildsys.builds.artifacts import (
    MARKER_SUFFIX,
    clean_outputs,
    ensure_marker_dir,
    find_files,
    has_artifacts,
    has_markers,
    promote_outputs,
)
from buildsys.errors import FilesystemError
from buildsys.types import BuildKind


def snapshot(root: Path) -> set[str]:
    """Return every path below root, relative to it."""
    return {str(p.relative_to(root)) for p in root.rglob("*")}


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    """Create a build (marker) directory and an output directory."""
    build_dir = tmp_path / "state" / "x86_64" / "packages" / "pkg"
    output_dir = tmp_path / "rpms" / "pkg"
    build_dir.mkdir(parents=True)
    output_dir.mkdir(parents=True)
    return build_dir, output_dir


class TestEnsureMarkerDir:
    """Tests for ensure_marker_dir."""

    @pytest.mark.parametrize(
        ("kind", "prefix"),
        [
            (BuildKind.PACKAGE, "packages"),
            (BuildKind.KIT, "kits"),
            (BuildKind.VARIANT, "variants"),
            (BuildKind.REPACK, "variants"),
        ],
    )
    def test_layout(self, tmp_path: Path, kind: BuildKind, prefix: str) -> None:
        """Should create state/arch/prefix/name."""
        path = ensure_marker_dir(kind, "foo", "x86_64", tmp_path)
        assert path == tmp_path / "x86_64" / prefix / "foo"
        assert path.is_dir()

    def test_idempotent(self, tmp_path: Path) -> None:
        """Calling twice should return the same existing directory."""
        first = ensure_marker_dir(BuildKind.KIT, "core", "aarch64", tmp_path)
        (first / "keep").write_text("x")
        second = ensure_marker_dir(BuildKind.KIT, "core", "aarch64", tmp_path)
        assert first == second
        assert (second / "keep").exists()

    def test_failure(self, tmp_path: Path) -> None:
        """A file in the way should raise FilesystemError."""
        (tmp_path / "x86_64").write_text("not a directory")
        with pytest.raises(FilesystemError) as exc_info:
            ensure_marker_dir(BuildKind.PACKAGE, "foo", "x86_64", tmp_path)
        assert exc_info.value.code == "filesystem_error"


class TestFindFiles:
    """Tests for find_files and its predicates."""

    def test_yields_files_not_root(self, tmp_path: Path) -> None:
        """Should yield nested files but never the directory itself."""
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "one.rpm").write_text("1")
        (tmp_path / "two.rpm").write_text("2")

        found = list(find_files(tmp_path, has_artifacts))

        assert sorted(found) == [tmp_path / "a" / "one.rpm", tmp_path / "two.rpm"]

    def test_does_not_follow_symlinks(self, tmp_path: Path) -> None:
        """Symlinked directories should be yielded, not entered."""
        target = tmp_path / "elsewhere"
        target.mkdir()
        (target / "hidden.rpm").write_text("x")
        root = tmp_path / "root"
        root.mkdir()
        (root / "link").symlink_to(target)

        assert list(find_files(root, has_artifacts)) == [root / "link"]

    def test_predicates(self, tmp_path: Path) -> None:
        """has_markers and has_artifacts should partition the files."""
        (tmp_path / "foo.rpm").write_text("x")
        (tmp_path / f"foo.rpm{MARKER_SUFFIX}").write_text("")

        assert list(find_files(tmp_path, has_markers)) == [
            tmp_path / f"foo.rpm{MARKER_SUFFIX}"
        ]
        assert list(find_files(tmp_path, has_artifacts)) == [tmp_path / "foo.rpm"]

    def test_missing_directory(self, tmp_path: Path) -> None:
        """A missing directory should raise FilesystemError."""
        with pytest.raises(FilesystemError):
            list(find_files(tmp_path / "missing", has_artifacts))


class TestPromoteOutputs:
    """Tests for promote_outputs."""

    def test_promote_leaves_markers(self, dirs) -> None:
        """Promotion should move files and leave a marker for each."""
        build_dir, output_dir = dirs
        (build_dir / "foo.rpm").write_text("foo")
        (build_dir / "sub").mkdir()
        (build_dir / "sub" / "bar.rpm").write_text("bar")

        promoted = promote_outputs(build_dir, output_dir)

        assert sorted(promoted) == [output_dir / "foo.rpm", output_dir / "sub" / "bar.rpm"]
        assert (output_dir / "foo.rpm").read_text() == "foo"
        assert (output_dir / "sub" / "bar.rpm").read_text() == "bar"
        assert snapshot(build_dir) == {
            f"foo.rpm{MARKER_SUFFIX}",
            "sub",
            f"sub/bar.rpm{MARKER_SUFFIX}",
        }
        assert (build_dir / f"foo.rpm{MARKER_SUFFIX}").read_bytes() == b""

    def test_overwrites_existing_output(self, dirs) -> None:
        """An existing output file should be replaced."""
        build_dir, output_dir = dirs
        (output_dir / "foo.rpm").write_text("old")
        (build_dir / "foo.rpm").write_text("new")

        promote_outputs(build_dir, output_dir)

        assert (output_dir / "foo.rpm").read_text() == "new"

    def test_skips_existing_markers(self, dirs) -> None:
        """Markers from an earlier build should not be promoted."""
        build_dir, output_dir = dirs
        (build_dir / f"old.img{MARKER_SUFFIX}").write_text("")
        (build_dir / "new.img").write_text("x")

        promote_outputs(build_dir, output_dir)

        assert snapshot(output_dir) == {"new.img"}

    def test_empty_build_dir(self, dirs) -> None:
        """Nothing to promote should change nothing."""
        build_dir, output_dir = dirs
        assert promote_outputs(build_dir, output_dir) == []
        assert snapshot(output_dir) == set()

    def test_move_failure(self, dirs) -> None:
        """A failed move should raise FilesystemError with the path."""
        build_dir, output_dir = dirs
        (build_dir / "foo.rpm").write_text("foo")

        with patch("buildsys.builds.artifacts.os.replace", side_effect=OSError("EXDEV")):
            with pytest.raises(FilesystemError) as exc_info:
                promote_outputs(build_dir, output_dir)

        assert exc_info.value.path == build_dir / "foo.rpm"
        # The marker is written before the move.
        assert (build_dir / f"foo.rpm{MARKER_SUFFIX}").exists()


class TestCleanOutputs:
    """Tests for clean_outputs."""

    def test_removes_tracked_files(self, dirs) -> None:
        """Tracked outputs and their markers should be removed."""
        build_dir, output_dir = dirs
        (build_dir / f"foo.rpm{MARKER_SUFFIX}").write_text("")
        (output_dir / "foo.rpm").write_text("foo")
        (output_dir / "untracked.rpm").write_text("keep")

        removed = clean_outputs(build_dir, [output_dir])

        assert removed == [output_dir / "foo.rpm", build_dir / f"foo.rpm{MARKER_SUFFIX}"]
        assert snapshot(output_dir) == {"untracked.rpm"}
        assert snapshot(build_dir) == set()

    def test_second_clean_is_noop(self, dirs) -> None:
        """Cleaning twice should mutate nothing the second time."""
        build_dir, output_dir = dirs
        (build_dir / "sub").mkdir()
        (build_dir / "sub" / f"bar.rpm{MARKER_SUFFIX}").write_text("")
        (output_dir / "sub").mkdir()
        (output_dir / "sub" / "bar.rpm").write_text("bar")

        assert clean_outputs(build_dir, [output_dir])
        before = (snapshot(build_dir), snapshot(output_dir))

        assert clean_outputs(build_dir, [output_dir]) == []
        assert (snapshot(build_dir), snapshot(output_dir)) == before

    def test_missing_output_is_fine(self, dirs) -> None:
        """A marker whose output is already gone should still be removed."""
        build_dir, output_dir = dirs
        (build_dir / f"gone.rpm{MARKER_SUFFIX}").write_text("")

        assert clean_outputs(build_dir, [output_dir]) == [
            build_dir / f"gone.rpm{MARKER_SUFFIX}"
        ]

    def test_removes_from_every_output_dir(self, tmp_path: Path, dirs) -> None:
        """Files should be removed from all output directories."""
        build_dir, output_dir = dirs
        legacy_dir = tmp_path / "rpms"
        (build_dir / f"foo.rpm{MARKER_SUFFIX}").write_text("")
        (output_dir / "foo.rpm").write_text("new")
        (legacy_dir / "foo.rpm").write_text("old")

        clean_outputs(build_dir, [output_dir, legacy_dir])

        assert not (output_dir / "foo.rpm").exists()
        assert not (legacy_dir / "foo.rpm").exists()
        assert output_dir.is_dir()

    def test_removes_dangling_symlink(self, dirs) -> None:
        """A tracked symlink should be removed even if dangling."""
        build_dir, output_dir = dirs
        (build_dir / f"latest{MARKER_SUFFIX}").write_text("")
        (output_dir / "latest").symlink_to(output_dir / "nowhere")

        clean_outputs(build_dir, [output_dir])

        assert not os.path.lexists(output_dir / "latest")

    def test_nested_directory_gc(self, dirs) -> None:
        """Empty directories should be removed deepest first, up to a non-empty one."""
        build_dir, output_dir = dirs
        (build_dir / "a" / "b" / "c").mkdir(parents=True)
        (build_dir / "a" / "b" / "c" / f"f{MARKER_SUFFIX}").write_text("")
        (build_dir / "a" / "keep").write_text("")
        (output_dir / "a" / "b" / "c").mkdir(parents=True)
        (output_dir / "a" / "b" / "c" / "f").write_text("x")
        (output_dir / "a" / "other").write_text("keep")

        removed = clean_outputs(build_dir, [output_dir])

        dir_removals = [p for p in removed if p.name in ("b", "c")]
        assert dir_removals.index(output_dir / "a" / "b" / "c") < dir_removals.index(
            output_dir / "a" / "b"
        )
        assert dir_removals.index(build_dir / "a" / "b" / "c") < dir_removals.index(
            build_dir / "a" / "b"
        )
        assert snapshot(output_dir) == {"a", "a/other"}
        assert snapshot(build_dir) == {"a", "a/keep"}

    def test_never_removes_roots(self, dirs) -> None:
        """The marker and output directories themselves should survive."""
        build_dir, output_dir = dirs
        (build_dir / f"foo.rpm{MARKER_SUFFIX}").write_text("")
        (output_dir / "foo.rpm").write_text("foo")

        clean_outputs(build_dir, [output_dir])

        assert build_dir.is_dir()
        assert output_dir.is_dir()

    def test_removal_failure(self, dirs) -> None:
        """A failed removal should raise FilesystemError with the path."""
        build_dir, output_dir = dirs
        (build_dir / f"foo.rpm{MARKER_SUFFIX}").write_text("")
        (output_dir / "foo.rpm").write_text("foo")

        with patch.object(Path, "unlink", side_effect=PermissionError("denied")):
            with pytest.raises(FilesystemError) as exc_info:
                clean_outputs(build_dir, [output_dir])

        assert exc_info.value.path == output_dir / "foo.rpm"


class TestLifecycle:
    """Tests for promote and clean together."""

    def test_round_trip(self, dirs) -> None:
        """Promoting then cleaning should restore the output directory."""
        build_dir, output_dir = dirs
        (output_dir / "preexisting.rpm").write_text("keep")
        before = snapshot(output_dir)
        (build_dir / "foo.rpm").write_text("foo")
        (build_dir / "sub").mkdir()
        (build_dir / "sub" / "bar.rpm").write_text("bar")

        promote_outputs(build_dir, output_dir)
        clean_outputs(build_dir, [output_dir])

        assert snapshot(output_dir) == before
        assert snapshot(build_dir) == set()

    def test_rebuild_drops_stale_outputs(self, dirs) -> None:
        """Outputs a rebuild no longer produces should disappear."""
        build_dir, output_dir = dirs
        (build_dir / "foo.rpm").write_text("foo")
        (build_dir / "sub").mkdir()
        (build_dir / "sub" / "bar.rpm").write_text("bar")
        promote_outputs(build_dir, output_dir)
        assert snapshot(output_dir) == {"foo.rpm", "sub", "sub/bar.rpm"}

        # Second build: clean first, then produce only foo.rpm.
        clean_outputs(build_dir, [output_dir])
        (build_dir / "foo.rpm").write_text("foo v2")
        promote_outputs(build_dir, output_dir)

        assert snapshot(output_dir) == {"foo.rpm"}
        assert (output_dir / "foo.rpm").read_text() == "foo v2"
        assert snapshot(build_dir) == {f"foo.rpm{MARKER_SUFFIX}"}
