"""Container engine wrapper.

This module handles:
- Loading image archives into the local engine store
- Tagging and pushing images
- Registry login with per-registry credential isolation
- Creating and pushing manifest lists

All operations shell out to the docker CLI. Each engine instance may carry
its own DOCKER_CONFIG directory so credentials for one registry are never
visible to pushes against another.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

# stderr fragments of registry failures worth retrying (lowercase)
TRANSIENT_PUSH_PATTERNS = [
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "tls handshake",
    "eof",
    "500 internal server error",
    "502 bad gateway",
    "503 service unavailable",
    "504 gateway timeout",
    "toomanyrequests",
]

_LOADED_IMAGE = re.compile(r"^Loaded image(?: ID)?: (\S+)\s*$", re.MULTILINE)


class EngineError(Exception):
    """Raised when a docker command fails."""

    def __init__(
        self,
        message: str,
        stderr: str = "",
        retryable: bool = False,
        code: str = "engine_error",
    ) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.retryable = retryable
        self.code = code


class LoadError(Exception):
    """Raised when an image archive is missing or cannot be loaded."""

    def __init__(self, message: str, archive: Path | None = None, code: str = "load_error") -> None:
        super().__init__(message)
        self.archive = archive
        self.code = code


@dataclass
class EngineResult:
    """Result of a docker invocation."""

    command: str
    exit_code: int
    stdout: str
    stderr: str


def is_transient_push_failure(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(p in lowered for p in TRANSIENT_PUSH_PATTERNS)


def parse_loaded_image(output: str) -> str:
    """Return the image reference or ID reported by `docker load`.

    Args:
        output: stdout of `docker load`.

    Returns:
        The last loaded image reference (`name:tag`) or ID (`sha256:...`).

    Raises:
        LoadError: If the output names no image.
    """
    matches = _LOADED_IMAGE.findall(output)
    if not matches:
        raise LoadError(f"docker load reported no image: {output.strip()!r}")
    return matches[-1]


class DockerEngine:
    """Thin wrapper around the docker CLI."""

    def __init__(
        self,
        docker_bin: str = "docker",
        config_dir: Path | None = None,
        timeout: int | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.docker_bin = docker_bin
        self.config_dir = config_dir
        self.timeout = timeout
        self._environ = dict(os.environ if environ is None else environ)

    def with_config_dir(self, config_dir: Path) -> DockerEngine:
        """Return an engine that keeps credentials in `config_dir`."""
        return DockerEngine(
            docker_bin=self.docker_bin,
            config_dir=config_dir,
            timeout=self.timeout,
            environ=self._environ,
        )

    def _env(self) -> dict[str, str]:
        env = dict(self._environ)
        if self.config_dir is not None:
            env["DOCKER_CONFIG"] = str(self.config_dir)
        return env

    def run(self, args: list[str], stdin: str | None = None) -> EngineResult:
        """Run a docker subcommand.

        Raises:
            EngineError: If the command fails, times out or cannot start.
        """
        cmd = [self.docker_bin, *args]
        cmd_str = shlex.join(cmd)
        logger.debug("Executing: %s", cmd_str)

        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env=self._env(),
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise EngineError(
                f"{cmd_str} timed out after {self.timeout}s",
                retryable=True,
                code="timeout",
            ) from e
        except OSError as e:
            raise EngineError(
                f"Failed to run {cmd_str}: {e}", code="execution_error"
            ) from e

        if result.returncode != 0:
            raise EngineError(
                f"{cmd_str} failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}",
                stderr=result.stderr,
                retryable=is_transient_push_failure(result.stderr),
            )

        return EngineResult(
            command=cmd_str,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def image_id(self, ref: str) -> str:
        """Return the immutable ID (`sha256:...`) that `ref` currently names."""
        result = self.run(["image", "inspect", "--format", "{{.Id}}", ref])
        image_id = result.stdout.strip()
        if not image_id:
            raise EngineError(f"docker image inspect returned no ID for {ref}")
        return image_id

    def load(self, archive: Path) -> str:
        """Load an image archive and return the ID of the loaded image.

        Archives built from the same recipe load under the same `name:tag`,
        so the reference is resolved to its ID before the next load can
        take the name over.

        Raises:
            LoadError: If the archive is absent or malformed.
        """
        if not archive.is_file():
            raise LoadError(f"Image archive not found: {archive}", archive=archive, code="archive_missing")
        try:
            result = self.run(["load", "-i", str(archive)])
        except EngineError as e:
            raise LoadError(f"Failed to load {archive}: {e}", archive=archive) from e
        try:
            image = parse_loaded_image(result.stdout)
        except LoadError as e:
            e.archive = archive
            raise
        if not image.startswith("sha256:"):
            try:
                image = self.image_id(image)
            except EngineError as e:
                raise LoadError(
                    f"Failed to resolve image loaded from {archive}: {e}",
                    archive=archive,
                ) from e
        logger.info("Loaded %s as %s", archive.name, image)
        return image

    def tag(self, source: str, target: str) -> None:
        self.run(["tag", source, target])

    def push(self, ref: str) -> None:
        logger.info("Pushing %s", ref)
        self.run(["push", ref])

    def login(self, server: str | None, username: str, password: str) -> None:
        """Log in to a registry, reading the password from stdin."""
        args = ["login", "--username", username, "--password-stdin"]
        if server:
            args.append(server)
        self.run(args, stdin=password)
        logger.info("Logged in to %s as %s", server or "Docker Hub", username)

    def manifest_create(self, ref: str, images: list[str]) -> None:
        # --amend replaces a list left over from an earlier run
        self.run(["manifest", "create", "--amend", ref, *images])

    def manifest_push(self, ref: str) -> None:
        logger.info("Pushing manifest list %s", ref)
        self.run(["manifest", "push", ref])


__all__ = [
    "DockerEngine",
    "EngineError",
    "EngineResult",
    "LoadError",
    "TRANSIENT_PUSH_PATTERNS",
    "is_transient_push_failure",
    "parse_loaded_image",
]
