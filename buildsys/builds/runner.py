"""Runner for external build engine invocations.

This module handles:
- Executing the engine with stdout/stderr merged into one captured stream
- Classifying failures against known transient-failure signatures
- Retrying classified failures immediately, up to a bounded attempt count

Retries re-run the whole command from scratch; nothing is resumed.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from buildsys.errors import BuildFailure, InvocationStartError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 10

# BuildKit can fail parallel builds with a generic exit code of 1
# (moby/buildkit#1090, moby/buildkit#1468). The only way to recognize these
# failures is their signature in the build output.
FRONTEND_GRPC_CLOSED = re.compile(
    re.escape(
        "failed to solve with frontend dockerfile.v0: "
        "failed to solve with frontend gateway.v0: "
        "frontend grpc server closed unexpectedly"
    )
)
DEAD_RECORD = re.compile(
    re.escape(
        "failed to solve with frontend dockerfile.v0: "
        "failed to solve with frontend gateway.v0: "
        "rpc error: code = Unknown desc = failed to build LLB: "
        "failed to get dead record"
    )
)
DEAD_RECORD_SHORT = re.compile(r"failed to get dead record")
# Matched against the whole output, so MULTILINE is needed to anchor on a line end.
UNEXPECTED_EOF = re.compile(r"unexpected EOF$", re.MULTILINE)
# New RPMs may not be fully written to the host directory before another
# build runs createrepo_c over them.
CREATEREPO_C_READ_HEADER = re.compile(
    re.escape("C_CREATEREPOLIB: Warning: read_header: rpmReadPackageFile() error")
)

DEFAULT_TRANSIENT_PATTERNS: tuple[re.Pattern[str], ...] = (
    FRONTEND_GRPC_CLOSED,
    DEAD_RECORD,
    DEAD_RECORD_SHORT,
    UNEXPECTED_EOF,
    CREATEREPO_C_READ_HEADER,
)


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and on which failures, an invocation is retried.

    Attributes:
        max_attempts: Total attempts allowed, including the first.
        patterns: A failed attempt is retried only if its output matches one.
    """

    max_attempts: int = 1
    patterns: tuple[re.Pattern[str], ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive, got {self.max_attempts}")

    def is_retryable(self, output: str) -> bool:
        """Whether the output matches a transient-failure signature."""
        return any(p.search(output) for p in self.patterns)


NO_RETRY = RetryPolicy()


def build_retry_policy(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    patterns: Iterable[re.Pattern[str] | str] = DEFAULT_TRANSIENT_PATTERNS,
) -> RetryPolicy:
    """Create a retry policy, compiling any string patterns."""
    compiled = tuple(p if isinstance(p, re.Pattern) else re.compile(p) for p in patterns)
    return RetryPolicy(max_attempts=max_attempts, patterns=compiled)


@dataclass
class InvocationOutput:
    """Result of a successful invocation.

    Attributes:
        args: Full argument vector, including the program.
        returncode: Process exit code.
        output: Combined stdout/stderr of the successful attempt.
        attempts: Number of attempts made.
    """

    args: list[str]
    returncode: int
    output: str
    attempts: int = 1


def invoke(
    args: Sequence[str],
    policy: RetryPolicy = NO_RETRY,
    program: str = "docker",
    cwd: Path | None = None,
) -> InvocationOutput:
    """Run ``program`` with ``args``, retrying classified transient failures.

    Args:
        args: Arguments for the program (without the program itself).
        policy: Retry policy; NO_RETRY makes exactly one attempt.
        program: Executable to run.
        cwd: Working directory for the process.

    Returns:
        InvocationOutput of the first successful attempt.

    Raises:
        InvocationStartError: If the process cannot be spawned.
        BuildFailure: If an attempt fails with unclassified output, or the
            attempt bound is reached.
    """
    cmd = [program, *args]
    cmd_str = shlex.join(cmd)
    attempt = 1

    while True:
        logger.info("Executing (attempt %d/%d): %s", attempt, policy.max_attempts, cmd_str)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                check=False,
            )
        except OSError as e:
            message = f"Failed to execute {program}: {e}"
            logger.error(message)
            raise InvocationStartError(message, args=cmd) from e

        output = (result.stdout or b"").decode("utf-8", errors="replace")

        if result.returncode == 0:
            logger.debug("Output of %s:\n%s", cmd_str, output)
            return InvocationOutput(
                args=cmd,
                returncode=result.returncode,
                output=output,
                attempts=attempt,
            )

        logger.info("Output of %s:\n%s", cmd_str, output)

        if attempt < policy.max_attempts and policy.is_retryable(output):
            logger.warning(
                "Transient failure (exit code %d) in attempt %d/%d, retrying",
                result.returncode,
                attempt,
                policy.max_attempts,
            )
            attempt += 1
            continue

        message = f"{cmd_str} failed with exit code {result.returncode}"
        if attempt > 1:
            message += f" after {attempt} attempts"
        logger.error(message)
        raise BuildFailure(
            message,
            args=cmd,
            output=output,
            exit_code=result.returncode,
            attempts=attempt,
        )


__all__ = [
    "CREATEREPO_C_READ_HEADER",
    "DEAD_RECORD",
    "DEAD_RECORD_SHORT",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_TRANSIENT_PATTERNS",
    "FRONTEND_GRPC_CLOSED",
    "NO_RETRY",
    "UNEXPECTED_EOF",
    "InvocationOutput",
    "RetryPolicy",
    "build_retry_policy",
    "invoke",
]
