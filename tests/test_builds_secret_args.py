"""Tests for secrets passed to image builds."""

from pathlib import Path

import pytest

from buildsys.builds.secret_args import (
    CA_BUNDLE_VAR,
    ROOT_JSON_VAR,
    SBKEYS_PROFILE_DIR_VAR,
    credential_secret_id,
    secrets_args,
)
from buildsys.errors import FilesystemError, PreconditionError


@pytest.fixture
def sbkeys(tmp_path: Path) -> Path:
    """Create a signing key profile directory."""
    path = tmp_path / "sbkeys" / "local"
    path.mkdir(parents=True)
    (path / "db.crt").write_text("db")
    (path / "kek.crt").write_text("kek")
    return path


@pytest.fixture
def env(sbkeys: Path) -> dict[str, str]:
    """Create a minimal environment with optional files unset."""
    return {
        SBKEYS_PROFILE_DIR_VAR: str(sbkeys),
        CA_BUNDLE_VAR: "",
        ROOT_JSON_VAR: "",
        "AWS_ACCESS_KEY_ID": "should-not-appear",
    }


def secret_values(args: list[str]) -> list[str]:
    """Return the values of each --secret argument."""
    return [args[i + 1] for i in range(len(args) - 1) if args[i] == "--secret"]


class TestCredentialSecretId:
    """Tests for credential_secret_id."""

    def test_lower_dashed(self) -> None:
        """Variable names should become lower-dashed ids."""
        assert credential_secret_id("AWS_SESSION_TOKEN") == "aws-session-token.env"


class TestSecretsArgs:
    """Tests for secrets_args."""

    def test_minimal(self, env, sbkeys) -> None:
        """Should pass each key file and each credential variable."""
        values = secret_values(secrets_args(env))

        assert values == [
            f"type=file,id=db.crt,src={sbkeys / 'db.crt'}",
            f"type=file,id=kek.crt,src={sbkeys / 'kek.crt'}",
            "type=env,id=aws-access-key-id.env,src=AWS_ACCESS_KEY_ID",
            "type=env,id=aws-secret-access-key.env,src=AWS_SECRET_ACCESS_KEY",
            "type=env,id=aws-session-token.env,src=AWS_SESSION_TOKEN",
        ]

    def test_credential_values_never_read(self, env) -> None:
        """Credential values should never appear in the arguments."""
        assert "should-not-appear" not in " ".join(secrets_args(env))

    def test_optional_files(self, env, tmp_path: Path) -> None:
        """CA bundle and root.json should be passed when set."""
        ca_bundle = tmp_path / "ca.pem"
        ca_bundle.write_text("ca")
        root_json = tmp_path / "root.json"
        root_json.write_text("{}")
        env[CA_BUNDLE_VAR] = str(ca_bundle)
        env[ROOT_JSON_VAR] = str(root_json)

        values = secret_values(secrets_args(env))

        assert f"type=file,id=ca-bundle.crt,src={ca_bundle}" in values
        assert f"type=file,id=root.json,src={root_json}" in values

    def test_optional_file_missing(self, env, tmp_path: Path) -> None:
        """A set but missing file should raise PreconditionError."""
        env[ROOT_JSON_VAR] = str(tmp_path / "missing.json")
        with pytest.raises(PreconditionError, match=ROOT_JSON_VAR):
            secrets_args(env)

    @pytest.mark.parametrize("var", [SBKEYS_PROFILE_DIR_VAR, CA_BUNDLE_VAR, ROOT_JSON_VAR])
    def test_missing_variable(self, env, var: str) -> None:
        """An unset required variable should raise PreconditionError."""
        del env[var]
        with pytest.raises(PreconditionError, match=var):
            secrets_args(env)

    def test_unreadable_key_dir(self, env, tmp_path: Path) -> None:
        """A missing key directory should raise FilesystemError."""
        env[SBKEYS_PROFILE_DIR_VAR] = str(tmp_path / "nope")
        with pytest.raises(FilesystemError):
            secrets_args(env)
