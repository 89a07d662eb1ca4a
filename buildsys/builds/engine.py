"""Build engine version probe.

The Dockerfile relies on frontend syntax 1.4.3, which ships by default with
Docker 23.0.0. Syntax directives are not used, so that builds need no network
access to fetch a frontend.
"""

from __future__ import annotations

import logging

import semver

from buildsys.builds.runner import NO_RETRY, invoke
from buildsys.errors import BuildFailure, PreconditionError

logger = logging.getLogger(__name__)

MINIMUM_ENGINE_VERSION = ">=23.0.0"

SERVER_VERSION_ARGS = ["version", "--format", "{{.Server.Version}}"]


def parse_engine_version(version_str: str) -> semver.Version:
    """Parse an engine version string.

    Raises:
        PreconditionError: If the string is not a semantic version.
    """
    try:
        return semver.Version.parse(version_str.strip())
    except ValueError as e:
        raise PreconditionError(
            f"Unable to parse engine version '{version_str.strip()}': {e}"
        ) from e


def satisfies_minimum(version: semver.Version) -> bool:
    """Whether ``version`` meets the minimum engine version."""
    return version.match(MINIMUM_ENGINE_VERSION)


def engine_server_version(program: str = "docker") -> semver.Version:
    """Query the engine for its server version.

    The output is parsed even when the query exits non-zero, so that an
    unreachable daemon surfaces as an unparseable version.

    Raises:
        InvocationStartError: If the engine cannot be executed.
        PreconditionError: If the reported version cannot be parsed.
    """
    try:
        output = invoke(SERVER_VERSION_ARGS, NO_RETRY, program=program).output
    except BuildFailure as e:
        output = e.output
    return parse_engine_version(output)


def check_engine_version(program: str = "docker") -> semver.Version:
    """Ensure the engine meets the minimum version.

    Returns:
        The installed engine version.

    Raises:
        PreconditionError: If the version is unsupported or unparseable.
    """
    version = engine_server_version(program)
    if not satisfies_minimum(version):
        raise PreconditionError(
            f"Engine version {version} does not satisfy {MINIMUM_ENGINE_VERSION}"
        )
    logger.debug("Engine version %s satisfies %s", version, MINIMUM_ENGINE_VERSION)
    return version


__all__ = [
    "MINIMUM_ENGINE_VERSION",
    "SERVER_VERSION_ARGS",
    "check_engine_version",
    "engine_server_version",
    "parse_engine_version",
    "satisfies_minimum",
]
