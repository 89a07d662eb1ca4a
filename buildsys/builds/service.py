"""Build service module.

This module provides the high-level build API:
- ContainerBuild.for_target(): prepare a build for a resolved target
- ContainerBuild.build(): run it end to end
- ContainerBuild.clean(): remove a target's tracked outputs

A build runs through these steps:

1. Check the engine version.
2. Create the marker directory and, unless the target is a repack,
   remove the outputs tracked by the previous build.
3. Remove any stale image or helper container with this build's names.
4. Start the auxiliary tasks: the descriptor server for the marker
   directory, and the helper container serving the project tree.
5. Run the main build, retrying known transient failures.
6. Tear down the auxiliary tasks, whatever the outcome.
7. Remove the image. On success, promote the outputs and record markers.
"""

from __future__ import annotations

import hashlib
import logging
import os
import secrets
import threading
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from buildsys.builds.arguments import (
    DOCKERFILE_CHECK_SKIP,
    BuildArgumentSet,
    CommonBuildArgs,
    build_arguments,
    common_arguments,
)
from buildsys.builds.artifacts import clean_outputs, ensure_marker_dir, promote_outputs
from buildsys.builds.engine import check_engine_version
from buildsys.builds.fdpass import DescriptorServer
from buildsys.builds.runner import NO_RETRY, RetryPolicy, build_retry_policy, invoke
from buildsys.builds.secret_args import secrets_args
from buildsys.config import Settings, get_settings
from buildsys.errors import BuildsysError, PreconditionError
from buildsys.targets.schema import (
    BuildTarget,
    KitTarget,
    PackageTarget,
    RepackTarget,
    VariantTarget,
)
from buildsys.types import BuildKind, OutputCleanup, SupportedArch

logger = logging.getLogger(__name__)

# Expected uid of privileged processes inside the build container.
ROOT_UID = 0

# Bounds on removing the helper container after the main build returns.
HELPER_TEARDOWN_TIMEOUT = 30.0
HELPER_POLL_INTERVAL = 0.5

DOCKERFILE_NAME = "build.Dockerfile"

# Build stages that must never be served from the layer cache.
NO_CACHE_STAGES = (
    "rpmbuild",
    "kitbuild",
    "repobuild",
    "imgbuild",
    "migrationbuild",
    "kmodkitbuild",
    "imgrepack",
)

TAG_PREFIXES: dict[BuildKind, str] = {
    BuildKind.PACKAGE: "pkg",
    BuildKind.KIT: "kit",
    BuildKind.VARIANT: "var",
    BuildKind.REPACK: "repack",
}

# Repacked images are overwritten in place, so nothing is cleaned first.
CLEANUP_POLICIES: dict[BuildKind, OutputCleanup] = {
    BuildKind.PACKAGE: OutputCleanup.BEFORE_BUILD,
    BuildKind.KIT: OutputCleanup.BEFORE_BUILD,
    BuildKind.VARIANT: OutputCleanup.BEFORE_BUILD,
    BuildKind.REPACK: OutputCleanup.NONE,
}


def token(path: Path) -> str:
    """Compute a per-checkout suffix that keeps names from colliding."""
    digest = hashlib.sha512(str(path).encode("utf-8")).hexdigest()
    return digest[:12]


def append_token(tag: str, path: Path) -> str:
    """Append the per-checkout token to an image tag."""
    return f"{tag}-{token(path)}"


def output_dirs_for(kind: BuildKind, name: str, settings: Settings) -> list[Path]:
    """Return the output directories of a target; the first receives new artifacts.

    Packages are promoted into a per-package directory. The shared packages
    directory is also listed, since older builds wrote there and its
    tracked files must still be cleaned.
    """
    kind = BuildKind(kind)
    if kind == BuildKind.PACKAGE:
        packages_dir = settings.effective_packages_dir()
        return [packages_dir / name, packages_dir]
    if kind == BuildKind.KIT:
        return [settings.effective_kits_dir() / name]
    return [settings.effective_image_dir() / f"{SupportedArch(settings.arch).value}-{name}"]


@dataclass(frozen=True)
class EphemeralBuildContext:
    """Names scoped to a single build invocation.

    Attributes:
        nocache: Random value that defeats the layer cache.
        token: Per-checkout token derived from the project root.
        output_socket: Socket name for the output directory descriptor.
    """

    nocache: str
    token: str
    output_socket: str

    @classmethod
    def create(cls, root_dir: Path) -> EphemeralBuildContext:
        tok = token(root_dir)
        nocache = str(secrets.randbits(128))
        return cls(
            nocache=nocache,
            token=tok,
            output_socket=f"buildsys-output-{tok}-{nocache}",
        )


@dataclass
class ContainerBuild:
    """A single containerized build of one target.

    Attributes:
        target: Resolved build target.
        dockerfile: Path to the Dockerfile.
        context: Build context directory.
        tag: Tag of the ephemeral image.
        root_dir: Canonical project root.
        output_dirs: Output directories; the first receives new artifacts.
        state_dir: Root of the marker directories.
        artifact_name: Name used for the marker directory.
        common: Arguments shared by every build kind.
        secrets: Pre-rendered ``--secret`` arguments.
        engine: Engine executable.
        retry_policy: Policy for the main build invocation.
    """

    target: BuildTarget
    dockerfile: Path
    context: Path
    tag: str
    root_dir: Path
    output_dirs: list[Path]
    state_dir: Path
    artifact_name: str
    common: CommonBuildArgs
    secrets: list[str] = field(default_factory=list)
    engine: str = "docker"
    retry_policy: RetryPolicy = field(default_factory=build_retry_policy)

    @property
    def kind(self) -> BuildKind:
        return self.target.build_kind

    @property
    def cleanup(self) -> OutputCleanup:
        return CLEANUP_POLICIES[self.kind]

    @property
    def helper_name(self) -> str:
        """Name of the helper container and of the socket it serves."""
        return f"{self.tag}-bypass"

    # Construction

    @classmethod
    def for_target(
        cls,
        target: BuildTarget,
        settings: Settings | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ContainerBuild:
        """Prepare a build for any kind of target.

        Args:
            target: Resolved build target.
            settings: Application settings.
            env: Environment used for secrets; defaults to ``os.environ``.

        Raises:
            PreconditionError: If the SDK image is not configured, or a
                secret cannot be sourced.
            TargetMetadataError: If target metadata is missing.
        """
        if settings is None:
            settings = get_settings()
        if isinstance(target, PackageTarget):
            return cls.new_package(target, settings)
        if isinstance(target, KitTarget):
            return cls.new_kit(target, settings)
        if isinstance(target, VariantTarget):
            return cls.new_variant(target, settings, env)
        if isinstance(target, RepackTarget):
            return cls.repack_variant(target, settings, env)
        raise TypeError(f"Unsupported target type: {type(target).__name__}")

    @classmethod
    def _create(
        cls,
        target: BuildTarget,
        settings: Settings,
        secrets_list: list[str],
    ) -> ContainerBuild:
        if not settings.sdk_image:
            raise PreconditionError("No SDK image configured (BUILDSYS_SDK_IMAGE)")

        root_dir = settings.root_dir.resolve()
        arch = SupportedArch(settings.arch)
        context = EphemeralBuildContext.create(root_dir)
        prefix = TAG_PREFIXES[target.build_kind]

        return cls(
            target=target,
            dockerfile=settings.effective_tools_dir() / DOCKERFILE_NAME,
            context=root_dir,
            tag=append_token(f"buildsys-{prefix}-{target.name}-{arch.value}", root_dir),
            root_dir=root_dir,
            output_dirs=output_dirs_for(target.build_kind, target.name, settings),
            state_dir=settings.effective_state_dir(),
            artifact_name=target.name,
            common=CommonBuildArgs(
                arch=arch,
                sdk=settings.sdk_image,
                nocache=context.nocache,
                token=context.token,
                output_socket=context.output_socket,
                version_build=settings.version_build,
                version_build_timestamp=settings.version_build_timestamp,
                version_image=settings.version_image,
            ),
            secrets=secrets_list,
            engine=settings.engine,
            retry_policy=build_retry_policy(settings.max_build_attempts),
        )

    @classmethod
    def new_package(cls, target: PackageTarget, settings: Settings) -> ContainerBuild:
        return cls._create(target, settings, secrets_list=[])

    @classmethod
    def new_kit(cls, target: KitTarget, settings: Settings) -> ContainerBuild:
        target.require_vendor()
        return cls._create(target, settings, secrets_list=[])

    @classmethod
    def new_variant(
        cls,
        target: VariantTarget,
        settings: Settings,
        env: Mapping[str, str] | None = None,
    ) -> ContainerBuild:
        """Prepare a variant image build, which needs the signing secrets."""
        target.variant_name()
        return cls._create(target, settings, secrets_list=secrets_args(env))

    @classmethod
    def repack_variant(
        cls,
        target: RepackTarget,
        settings: Settings,
        env: Mapping[str, str] | None = None,
    ) -> ContainerBuild:
        """Prepare a repack of an already built variant image.

        Repacks write into the variant's output directory and share its
        marker directory.
        """
        return cls._create(target, settings, secrets_list=secrets_args(env))

    # Engine commands

    def build_command(self) -> list[str]:
        """Compose the full argument vector for the main build."""
        args = BuildArgumentSet().extend(
            [
                "build",
                str(self.context),
                "--target",
                self.kind.value,
                "--tag",
                self.tag,
                "--network",
                "host",
                "--file",
                str(self.dockerfile),
                "--no-cache-filter",
                ",".join(NO_CACHE_STAGES),
            ]
        )
        args.build_arg("BYPASS_SOCKET", self.helper_name)
        args.build_arg("BUILDER_UID", os.geteuid())
        args.update(build_arguments(self.target, self.common))
        common_arguments(self.common, args)
        args.extend(self.secrets)
        args.build_arg("BUILDKIT_DOCKERFILE_CHECK", DOCKERFILE_CHECK_SKIP)
        return args.to_list()

    def helper_container_command(self) -> list[str]:
        """Run a container serving a read-only view of the project tree."""
        root = self.root_dir
        return [
            "run",
            "--name",
            self.helper_name,
            "--rm",
            "--init",
            "--net",
            "host",
            "--pid",
            "host",
            "-u",
            str(ROOT_UID),
            "-v",
            f"{root}:/bypass:ro",
            "-v",
            f"{root}/build/tools/pipesys:/usr/local/bin/pipesys:ro",
            self.common.sdk,
            "pipesys",
            "serve",
            "--socket",
            self.helper_name,
            "--client-uid",
            str(ROOT_UID),
            "--path",
            "/bypass",
        ]

    def remove_image_command(self) -> list[str]:
        return ["rmi", "--force", self.tag]

    def remove_helper_command(self) -> list[str]:
        return ["rm", "--force", self.helper_name]

    def _engine(self, args: Sequence[str], policy: RetryPolicy = NO_RETRY) -> None:
        invoke(args, policy, program=self.engine, cwd=self.root_dir)

    def _best_effort(self, args: Sequence[str]) -> None:
        try:
            self._engine(args)
        except BuildsysError as e:
            logger.debug("Ignoring failure of best-effort command: %s", e)

    # Auxiliary tasks

    def _serve_output_dir(self, marker_dir: Path, stop: threading.Event) -> None:
        server = DescriptorServer(self.common.output_socket, ROOT_UID, marker_dir)
        try:
            server.serve(stop)
        except OSError as e:
            logger.warning("Descriptor server for %s failed: %s", marker_dir, e)

    def _run_helper_container(self) -> None:
        try:
            self._engine(self.helper_container_command())
        except BuildsysError as e:
            logger.debug("Helper container %s exited: %s", self.helper_name, e)

    def _run_main_build(self, marker_dir: Path) -> None:
        build_cmd = self.build_command()

        self._best_effort(self.remove_image_command())
        self._best_effort(self.remove_helper_command())

        stop = threading.Event()
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="buildsys-aux")
        helper: Future[None] | None = None
        try:
            executor.submit(self._serve_output_dir, marker_dir, stop)
            helper = executor.submit(self._run_helper_container)
            self._engine(build_cmd, self.retry_policy)
        finally:
            stop.set()
            if helper is not None:
                self._stop_helper(helper)
            executor.shutdown(wait=False, cancel_futures=True)

    def _stop_helper(self, helper: Future[None]) -> None:
        """Remove the helper container until its ``run`` task has returned.

        A single remove is not enough: when the main build fails fast, the
        helper's ``run`` may not have created the container yet.
        """
        deadline = time.monotonic() + HELPER_TEARDOWN_TIMEOUT
        while True:
            self._best_effort(self.remove_helper_command())
            done, _ = wait([helper], timeout=HELPER_POLL_INTERVAL)
            if done:
                return
            if time.monotonic() >= deadline:
                logger.warning(
                    "Helper container %s still running after %.0fs",
                    self.helper_name,
                    HELPER_TEARDOWN_TIMEOUT,
                )
                return

    # Entry points

    def marker_dir(self) -> Path:
        return ensure_marker_dir(
            self.kind, self.artifact_name, self.common.arch.value, self.state_dir
        )

    def clean(self) -> list[Path]:
        """Remove every output tracked for this target."""
        return clean_outputs(self.marker_dir(), self.output_dirs)

    def build(self) -> list[Path]:
        """Run the build and promote its outputs.

        Returns:
            Paths of the promoted artifacts.

        Raises:
            PreconditionError: If the engine version is unsupported.
            InvocationStartError: If the engine cannot be executed.
            BuildFailure: If the build fails or exhausts its retries.
            FilesystemError: If cleaning or promoting outputs fails.
        """
        check_engine_version(self.engine)

        marker_dir = self.marker_dir()
        if self.cleanup == OutputCleanup.BEFORE_BUILD:
            clean_outputs(marker_dir, self.output_dirs)

        logger.info("Building %s %s (%s)", self.kind.value, self.artifact_name, self.tag)
        try:
            self._run_main_build(marker_dir)
        except BuildsysError:
            self._best_effort(self.remove_image_command())
            raise

        self._engine(self.remove_image_command())

        promoted = promote_outputs(marker_dir, self.output_dirs[0])
        logger.info(
            "Built %s %s with %d artifacts",
            self.kind.value,
            self.artifact_name,
            len(promoted),
        )
        return promoted


def run_build(
    target: BuildTarget,
    settings: Settings | None = None,
    env: Mapping[str, str] | None = None,
) -> list[Path]:
    """Build a target and return the promoted artifact paths."""
    return ContainerBuild.for_target(target, settings, env).build()


__all__ = [
    "CLEANUP_POLICIES",
    "HELPER_POLL_INTERVAL",
    "HELPER_TEARDOWN_TIMEOUT",
    "NO_CACHE_STAGES",
    "ROOT_UID",
    "TAG_PREFIXES",
    "ContainerBuild",
    "EphemeralBuildContext",
    "append_token",
    "output_dirs_for",
    "run_build",
    "token",
]
