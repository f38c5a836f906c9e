"""Build orchestrator: build a target and propagate it to the binary cache.

This module provides the per-target entry point:
- Build the target with nix
- Optionally stage the output under its hand-off file name
- If a cache credential is present, resolve the closure of the target and of
  the cache client tool, authenticate, and publish
- Otherwise skip publication without failing

Each run walks an explicit state machine whose history is kept on the result:

    idle -> building -> built -> skipped -> done
                             +-> resolving -> publishing -> done
    building | resolving | publishing -> failed
    any non-terminal state -> cancelled
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from buildcache.artifacts import (
    DEFAULT_ARTIFACT_NAME,
    ArtifactBundle,
    ArtifactError,
    stage_artifact,
)
from buildcache.cache.credentials import CacheCredential
from buildcache.cache.publisher import AuthError, CacheSession, PublishAck, PublishError
from buildcache.cancellation import CancellationToken, Cancelled
from buildcache.nix.closure import BuildResult, DependencyClosure
from buildcache.nix.runner import ResolutionError
from buildcache.types import (
    Architecture,
    ArtifactKind,
    OperationResult,
    OrchestratorState,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

# Allowed transitions; anything else is a programming error
_TRANSITIONS: dict[OrchestratorState, set[OrchestratorState]] = {
    OrchestratorState.IDLE: {OrchestratorState.BUILDING},
    OrchestratorState.BUILDING: {OrchestratorState.BUILT, OrchestratorState.FAILED},
    OrchestratorState.BUILT: {
        OrchestratorState.SKIPPED,
        OrchestratorState.RESOLVING,
        OrchestratorState.FAILED,
    },
    OrchestratorState.SKIPPED: {OrchestratorState.DONE},
    OrchestratorState.RESOLVING: {
        OrchestratorState.PUBLISHING,
        OrchestratorState.FAILED,
    },
    OrchestratorState.PUBLISHING: {OrchestratorState.DONE, OrchestratorState.FAILED},
}


class Resolver(Protocol):
    def resolve(
        self, target: str, build_options: Sequence[str] = (), link: bool = True
    ) -> BuildResult: ...

    def closure(
        self, seeds: set[str] | frozenset[str], include_recipes: bool = False
    ) -> DependencyClosure: ...


class Publisher(Protocol):
    def authenticate(self, credential: CacheCredential) -> CacheSession: ...

    def publish(self, session: CacheSession, closure: DependencyClosure) -> PublishAck: ...


@dataclass(frozen=True)
class StageRequest:
    """Where to hand off the build output for later pipeline stages."""

    kind: ArtifactKind
    architecture: Architecture

    @classmethod
    def parse(cls, value: str) -> StageRequest:
        """Parse `<kind>:<arch>`, e.g. `container-image:arm64`."""
        kind, sep, arch = value.partition(":")
        if not sep:
            raise ValueError(f"Expected <kind>:<architecture>, got {value!r}")
        return cls(kind=ArtifactKind(kind), architecture=Architecture(arch))


@dataclass
class OrchestratorResult:
    """Outcome of a build-and-cache run.

    Attributes:
        target: Target reference.
        history: Every state the run entered, in order.
        build: Build result, once built.
        closure: Closure that was (or would have been) published.
        ack: Cache acknowledgement, once published.
        bundle: Staged hand-off artifact, if requested.
        error: The error that ended the run, if any.
        failed_step: State in which the error occurred.
    """

    target: str
    history: list[OrchestratorState] = field(
        default_factory=lambda: [OrchestratorState.IDLE]
    )
    build: BuildResult | None = None
    closure: DependencyClosure | None = None
    ack: PublishAck | None = None
    bundle: ArtifactBundle | None = None
    error: Exception | None = None
    failed_step: OrchestratorState | None = None

    @property
    def state(self) -> OrchestratorState:
        return self.history[-1]

    @property
    def skipped(self) -> bool:
        return OrchestratorState.SKIPPED in self.history

    @property
    def exit_code(self) -> int:
        if self.state == OrchestratorState.DONE:
            return EXIT_OK
        if self.state == OrchestratorState.CANCELLED:
            return EXIT_CANCELLED
        return EXIT_FAILED

    def to_operation_result(self) -> OperationResult:
        """Summarize the run for CLI output."""
        details: dict[str, object] = {
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "skipped": self.skipped,
        }
        if self.build:
            details["outputs"] = sorted(self.build.output_paths)
        if self.closure is not None:
            details["closure_size"] = len(self.closure)
        if self.ack:
            details["uploaded"] = len(self.ack.uploaded)
            details["already_present"] = len(self.ack.already_present)
        if self.bundle:
            details["artifact"] = str(self.bundle.file_path)

        if self.error is not None:
            step = self.failed_step.value if self.failed_step else "unknown"
            return OperationResult(
                success=False,
                message=f"{self.target}: {step} failed: {self.error}",
                code=getattr(self.error, "code", None),
                log_path=str(self.build.log_path)
                if self.build and self.build.log_path
                else None,
                details=details,
            )
        if self.skipped:
            message = f"{self.target}: built, cache upload skipped (no credential)"
        else:
            message = f"{self.target}: built and published"
        return OperationResult(success=True, message=message, details=details)


class BuildOrchestrator:
    """Runs build → resolve → publish for a single target."""

    def __init__(
        self,
        resolver: Resolver,
        publisher: Publisher | None,
        credential: CacheCredential | None,
        tool_ref: str | None = "attic",
        tool_build_options: Sequence[str] = ("--inputs-from", "."),
        artifacts_dir: Path | None = None,
        artifact_name: str = DEFAULT_ARTIFACT_NAME,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.resolver = resolver
        self.publisher = publisher
        self.credential = credential
        self.tool_ref = tool_ref
        self.tool_build_options = tuple(tool_build_options)
        self.artifacts_dir = artifacts_dir or Path.cwd()
        self.artifact_name = artifact_name
        self.cancel_token = cancel_token or CancellationToken()

    @staticmethod
    def _enter(result: OrchestratorResult, state: OrchestratorState) -> None:
        current = result.state
        if state not in _TRANSITIONS.get(current, set()) and not (
            state == OrchestratorState.CANCELLED and not current.is_terminal
        ):
            raise RuntimeError(f"Invalid transition {current.value} -> {state.value}")
        logger.debug("%s: %s -> %s", result.target, current.value, state.value)
        result.history.append(state)

    def _fail(
        self, result: OrchestratorResult, error: Exception
    ) -> OrchestratorResult:
        result.error = error
        result.failed_step = result.state
        logger.error("%s: %s failed: %s", result.target, result.state.value, error)
        self._enter(result, OrchestratorState.FAILED)
        return result

    def run(
        self,
        target: str,
        build_options: Sequence[str] = (),
        stage: StageRequest | None = None,
    ) -> OrchestratorResult:
        """Build a target and publish its closure if a credential is present.

        Args:
            target: Target reference.
            build_options: Options forwarded to the build.
            stage: Optional hand-off request for the build output.

        Returns:
            OrchestratorResult in a terminal state.
        """
        result = OrchestratorResult(target=target)
        try:
            return self._run(result, build_options, stage)
        except Cancelled as e:
            result.error = e
            result.failed_step = result.state
            self._enter(result, OrchestratorState.CANCELLED)
            logger.warning("%s: cancelled during %s", target, result.failed_step.value)
            return result

    def _run(
        self,
        result: OrchestratorResult,
        build_options: Sequence[str],
        stage: StageRequest | None,
    ) -> OrchestratorResult:
        target = result.target

        self._enter(result, OrchestratorState.BUILDING)
        try:
            result.build = self.resolver.resolve(target, build_options)
        except ResolutionError as e:
            return self._fail(result, e)
        self._enter(result, OrchestratorState.BUILT)

        if stage is not None:
            try:
                result.bundle = self._stage(result.build, stage)
            except ArtifactError as e:
                return self._fail(result, e)

        if self.credential is None:
            logger.info("%s: no cache credential, skipping upload", target)
            self._enter(result, OrchestratorState.SKIPPED)
            self._enter(result, OrchestratorState.DONE)
            return result

        if self.publisher is None:
            raise ValueError("A publisher is required when a credential is present")

        self._enter(result, OrchestratorState.RESOLVING)
        try:
            result.closure = self._resolve_closure(result.build)
        except ResolutionError as e:
            return self._fail(result, e)

        self._enter(result, OrchestratorState.PUBLISHING)
        try:
            session = self.publisher.authenticate(self.credential)
            result.ack = self.publisher.publish(session, result.closure)
        except (AuthError, PublishError, ResolutionError) as e:
            return self._fail(result, e)

        self._enter(result, OrchestratorState.DONE)
        logger.info(
            "%s: published %d path(s), %d already cached",
            target,
            len(result.ack.uploaded),
            len(result.ack.already_present),
        )
        return result

    def _stage(self, build: BuildResult, stage: StageRequest) -> ArtifactBundle:
        outputs = sorted(build.output_paths)
        return stage_artifact(
            Path(outputs[0]),
            kind=stage.kind,
            architecture=stage.architecture,
            artifacts_dir=self.artifacts_dir,
            name=self.artifact_name,
            metadata={"target": build.target, "outputs": outputs},
        )

    def _resolve_closure(self, build: BuildResult) -> DependencyClosure:
        closure = self.resolver.closure(build.seeds, include_recipes=True)
        if self.tool_ref:
            # The cache client is pushed too so later jobs substitute it
            # instead of building it.
            tool = self.resolver.resolve(
                self.tool_ref, self.tool_build_options, link=False
            )
            closure = closure | self.resolver.closure(tool.seeds, include_recipes=True)
        return closure


__all__ = [
    "BuildOrchestrator",
    "EXIT_CANCELLED",
    "EXIT_FAILED",
    "EXIT_OK",
    "OrchestratorResult",
    "Publisher",
    "Resolver",
    "StageRequest",
]
