"""Secrets passed to image builds.

Most builds do not use these, so they are not tracked for changes. Each
secret becomes a ``--secret`` argument; credentials are passed by variable
name only, so their values never appear on the engine's command line.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from buildsys.builds.arguments import BuildArgumentSet
from buildsys.errors import FilesystemError, PreconditionError

SBKEYS_PROFILE_DIR_VAR = "BUILDSYS_SBKEYS_PROFILE_DIR"
CA_BUNDLE_VAR = "BUILDSYS_CACERTS_BUNDLE_OVERRIDE"
ROOT_JSON_VAR = "PUBLISH_REPO_ROOT_JSON"
CREDENTIAL_VARS = (
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_SESSION_TOKEN",
)

CA_BUNDLE_ID = "ca-bundle.crt"
ROOT_JSON_ID = "root.json"


def _require(env: Mapping[str, str], var: str) -> str:
    try:
        return env[var]
    except KeyError:
        raise PreconditionError(f"Missing environment variable {var}") from None


def _optional_file(
    args: BuildArgumentSet, env: Mapping[str, str], var: str, secret_id: str
) -> None:
    value = _require(env, var)
    if not value:
        return
    path = Path(value)
    if not path.exists():
        raise PreconditionError(f"{var} refers to a file that does not exist: {path}")
    args.secret("file", secret_id, str(path))


def credential_secret_id(var: str) -> str:
    """Return the secret id for a credential variable, e.g. ``aws-session-token.env``."""
    return f"{var.lower().replace('_', '-')}.env"


def secrets_args(env: Mapping[str, str] | None = None) -> list[str]:
    """Compose ``--secret`` arguments from the environment.

    Args:
        env: Environment to read; defaults to ``os.environ``.

    Returns:
        Flat list of ``--secret`` tokens.

    Raises:
        PreconditionError: If a required variable is unset or a referenced
            file does not exist.
        FilesystemError: If the signing key directory cannot be read.
    """
    if env is None:
        env = os.environ
    args = BuildArgumentSet()

    sbkeys_dir = Path(_require(env, SBKEYS_PROFILE_DIR_VAR))
    try:
        entries = sorted(sbkeys_dir.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise FilesystemError(
            f"Failed to read directory {sbkeys_dir}: {e}", sbkeys_dir
        ) from e
    for entry in entries:
        args.secret("file", entry.name, str(entry))

    _optional_file(args, env, CA_BUNDLE_VAR, CA_BUNDLE_ID)
    _optional_file(args, env, ROOT_JSON_VAR, ROOT_JSON_ID)

    for var in CREDENTIAL_VARS:
        args.secret("env", credential_secret_id(var), var)

    return args.to_list()


__all__ = [
    "CA_BUNDLE_VAR",
    "CREDENTIAL_VARS",
    "ROOT_JSON_VAR",
    "SBKEYS_PROFILE_DIR_VAR",
    "credential_secret_id",
    "secrets_args",
]
