"""Subprocess runner for nix commands.

This module handles:
- Composing `nix build`, `nix path-info` and `nix-store --dump` commands
- Executing them with subprocess and enforcing timeouts
- Capturing build stderr to log files
- Classifying failures as transient (worth retrying) or genuine
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

# stderr fragments that indicate a transient environment problem rather than a
# failure of the build itself (lowercase for case-insensitive matching)
TRANSIENT_PATTERNS = [
    "resource temporarily unavailable",
    "cannot fork",
    "unable to fork",
    "too many open files",
    "cannot allocate memory",
    "connection reset by peer",
    "cannot connect to socket",
    "database is locked",
]

# nix's own diagnostics; builder output is prefixed (`> `, `pkg> `) and never
# starts a line with `error:`
_NIX_ERROR_LINE = re.compile(r"^\s*error(?: \([^)]*\))?:", re.MULTILINE)


class ResolutionError(Exception):
    """Raised when the build system cannot realize a target reference."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        exit_code: int | None = None,
        log_path: Path | None = None,
        code: str = "resolution_error",
    ) -> None:
        super().__init__(message)
        self.target = target
        self.exit_code = exit_code
        self.log_path = log_path
        self.code = code


class TransientResolutionError(ResolutionError):
    """Raised when nix failed because of a temporary environment condition."""

    def __init__(
        self,
        message: str,
        target: str | None = None,
        exit_code: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(
            message,
            target=target,
            exit_code=exit_code,
            log_path=log_path,
            code="transient",
        )


@dataclass
class CommandResult:
    """Result of a nix invocation.

    Attributes:
        command: The command that was executed, shell-quoted.
        exit_code: Process exit code.
        stdout: Captured standard output (bytes for NAR dumps).
        stderr: Captured standard error, or the log tail for builds.
        started_at: Start time.
        finished_at: Finish time.
    """

    command: str
    exit_code: int
    stdout: str | bytes
    stderr: str
    started_at: datetime
    finished_at: datetime


def is_transient_failure(stderr: str) -> bool:
    """Return True if nix stderr points at a temporary environment problem.

    Only nix's `error:` lines are inspected, so compiler or test output that
    mentions a transient condition does not make a genuine build failure
    retryable.
    """
    for line in stderr.splitlines():
        if not _NIX_ERROR_LINE.match(line):
            continue
        lowered = line.lower()
        if any(p in lowered for p in TRANSIENT_PATTERNS):
            return True
    return False


def compose_build_command(
    nix_bin: str,
    target: str,
    build_options: Sequence[str] = (),
    link: bool = True,
) -> list[str]:
    """Compose the `nix build` command for a target.

    Args:
        nix_bin: nix executable.
        target: Installable to build.
        build_options: Extra options forwarded verbatim.
        link: Whether to keep the `result` symlink in the working directory.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [nix_bin, "build", target, *build_options, "--print-out-paths"]
    if not link:
        cmd.append("--no-link")
    return cmd


def compose_path_info_command(
    nix_bin: str,
    installables: Sequence[str],
    derivation: bool = False,
    recursive: bool = False,
    json_output: bool = False,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Compose a `nix path-info` command.

    Args:
        nix_bin: nix executable.
        installables: Installables or store paths to query.
        derivation: Query the derivations (recipes) instead of outputs.
        recursive: Include the full closure.
        json_output: Emit JSON with NAR hash, size and references.
        extra_args: Additional arguments such as `--inputs-from .`.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [nix_bin, "path-info", *extra_args]
    if derivation:
        cmd.append("--derivation")
    if recursive:
        cmd.append("--recursive")
    if json_output:
        cmd.append("--json")
    cmd.extend(installables)
    return cmd


def _tail(text: str, lines: int = 20) -> str:
    return "\n".join(text.rstrip().splitlines()[-lines:])


def run_nix_build(
    cmd: list[str],
    log_path: Path,
    target: str,
    cwd: Path | None = None,
    timeout: int | None = None,
) -> CommandResult:
    """Execute a `nix build` command with stderr captured to a log file.

    Args:
        cmd: Command composed by `compose_build_command`.
        log_path: Log file receiving nix's stderr.
        target: Target reference, for error context.
        cwd: Working directory (where the `result` link lands).
        timeout: Timeout in seconds (None = no timeout).

    Returns:
        CommandResult with the printed output paths on stdout.

    Raises:
        TransientResolutionError: If the build failed for a transient reason.
        ResolutionError: If the build failed, timed out or could not start.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing build: %s", cmd_str)

    started_at = datetime.now(timezone.utc)

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=log_file,
                text=True,
                timeout=timeout,
                check=False,
            )
    except subprocess.TimeoutExpired as e:
        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")
        raise ResolutionError(
            f"Build of {target} timed out after {timeout} seconds",
            target=target,
            exit_code=-1,
            log_path=log_path,
            code="build_timeout",
        ) from e
    except OSError as e:
        raise ResolutionError(
            f"Failed to execute build of {target}: {e}",
            target=target,
            log_path=log_path,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)
    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {result.returncode}\n")

    log_text = log_path.read_text(errors="replace")

    if result.returncode != 0:
        message = f"Build of {target} failed with exit code {result.returncode}"
        logger.error("%s. See log: %s", message, log_path)
        error_cls = (
            TransientResolutionError
            if is_transient_failure(log_text)
            else ResolutionError
        )
        raise error_cls(
            f"{message}\n{_tail(log_text)}",
            target=target,
            exit_code=result.returncode,
            log_path=log_path,
        )

    return CommandResult(
        command=cmd_str,
        exit_code=result.returncode,
        stdout=result.stdout,
        stderr=_tail(log_text),
        started_at=started_at,
        finished_at=finished_at,
    )


def run_nix_query(
    cmd: list[str],
    target: str | None = None,
    cwd: Path | None = None,
    timeout: int | None = None,
    binary: bool = False,
) -> CommandResult:
    """Execute a read-only nix query (path-info, nix-store --dump).

    Args:
        cmd: Command to execute.
        target: Target or path being queried, for error context.
        cwd: Working directory.
        timeout: Timeout in seconds.
        binary: Return stdout as bytes instead of text.

    Returns:
        CommandResult with captured output.

    Raises:
        TransientResolutionError: If the query failed for a transient reason.
        ResolutionError: If the query failed, timed out or could not start.
    """
    cmd_str = shlex.join(cmd)
    logger.debug("Executing query: %s", cmd_str)
    started_at = datetime.now(timezone.utc)

    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ResolutionError(
            f"{cmd_str} timed out after {timeout}s",
            target=target,
            exit_code=-1,
            code="timeout",
        ) from e
    except OSError as e:
        raise ResolutionError(
            f"Failed to run {cmd_str}: {e}",
            target=target,
            code="execution_error",
        ) from e

    stderr = result.stderr.decode("utf-8", errors="replace")
    if result.returncode != 0:
        error_cls = (
            TransientResolutionError if is_transient_failure(stderr) else ResolutionError
        )
        raise error_cls(
            f"{cmd_str} failed with exit code {result.returncode}: {_tail(stderr)}",
            target=target,
            exit_code=result.returncode,
        )

    stdout: str | bytes = (
        result.stdout if binary else result.stdout.decode("utf-8", errors="replace")
    )
    return CommandResult(
        command=cmd_str,
        exit_code=result.returncode,
        stdout=stdout,
        stderr=stderr,
        started_at=started_at,
        finished_at=datetime.now(timezone.utc),
    )


__all__ = [
    "CommandResult",
    "ResolutionError",
    "TRANSIENT_PATTERNS",
    "TransientResolutionError",
    "compose_build_command",
    "compose_path_info_command",
    "is_transient_failure",
    "run_nix_build",
    "run_nix_query",
]
