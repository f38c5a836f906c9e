"""Declared pipeline plan.

The CI pipeline runs one build-and-cache job per target in the `artifacts`
stage and one image publish job per registry in the `publish` stage. This
module declares that graph explicitly so a job's inputs are typed artifact
handles and the publish barrier can be checked structurally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from buildcache.artifacts import DEFAULT_ARTIFACT_NAME, ArtifactBundle, handoff_path
from buildcache.types import Architecture, ArtifactKind

logger = logging.getLogger(__name__)

STAGES = ("ci", "artifacts", "publish")


class PlanError(Exception):
    """Raised when a pipeline plan is inconsistent."""

    def __init__(self, message: str, code: str = "plan_error") -> None:
        super().__init__(message)
        self.code = code


class BarrierError(Exception):
    """Raised when a job's upstream artifacts are not all present."""

    def __init__(self, job: str, missing: list[ArtifactBundle]) -> None:
        names = ", ".join(str(b.file_path) for b in missing)
        super().__init__(f"{job} is missing upstream artifact(s): {names}")
        self.job = job
        self.missing = missing
        self.code = "barrier_unmet"


@dataclass(frozen=True)
class Job:
    """One job of the pipeline.

    Attributes:
        name: Job name.
        stage: Stage the job runs in.
        target: Flake installable built by the job, if it builds one.
        produces: Artifact the job hands off, if any.
        needs: Jobs that must finish first.
        registry: Registry the job publishes to (publish stage only).
    """

    name: str
    stage: str
    target: str | None = None
    produces: tuple[ArtifactKind, Architecture] | None = None
    needs: tuple[str, ...] = ()
    registry: str | None = None


@dataclass
class PipelinePlan:
    """A validated set of jobs."""

    jobs: list[Job] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def job(self, name: str) -> Job:
        for job in self.jobs:
            if job.name == name:
                return job
        raise PlanError(f"Unknown job: {name}", code="unknown_job")

    def validate(self) -> None:
        """Check names, stages, dependencies and artifact uniqueness.

        Raises:
            PlanError: If the plan is inconsistent.
        """
        names = [j.name for j in self.jobs]
        if len(names) != len(set(names)):
            raise PlanError("Duplicate job names", code="duplicate_job")

        by_name = {j.name: j for j in self.jobs}
        produced: dict[tuple[ArtifactKind, Architecture], str] = {}
        for job in self.jobs:
            if job.stage not in STAGES:
                raise PlanError(f"{job.name}: unknown stage {job.stage}")
            for dep in job.needs:
                if dep not in by_name:
                    raise PlanError(f"{job.name} needs unknown job {dep}")
                if STAGES.index(by_name[dep].stage) > STAGES.index(job.stage):
                    raise PlanError(
                        f"{job.name} needs {dep}, which runs in a later stage"
                    )
            if job.produces is not None:
                if job.produces in produced:
                    raise PlanError(
                        f"{job.name} and {produced[job.produces]} produce the same artifact",
                        code="duplicate_artifact",
                    )
                produced[job.produces] = job.name

        self.order()

    def order(self) -> list[Job]:
        """Return jobs in an order that respects stages and needs.

        Raises:
            PlanError: If `needs` form a cycle.
        """
        by_name = {j.name: j for j in self.jobs}
        ordered: list[Job] = []
        state: dict[str, str] = {}

        def visit(job: Job) -> None:
            mark = state.get(job.name)
            if mark == "done":
                return
            if mark == "visiting":
                raise PlanError(f"Dependency cycle through {job.name}", code="cycle")
            state[job.name] = "visiting"
            for dep in job.needs:
                visit(by_name[dep])
            state[job.name] = "done"
            ordered.append(job)

        for stage in STAGES:
            for job in self.jobs:
                if job.stage == stage:
                    visit(job)
        return ordered

    def inputs(
        self,
        name: str,
        artifacts_dir: Path,
        artifact_name: str = DEFAULT_ARTIFACT_NAME,
    ) -> list[ArtifactBundle]:
        """Return typed handles for the artifacts a job consumes."""
        handles: list[ArtifactBundle] = []
        for dep in self.job(name).needs:
            produced = self.job(dep).produces
            if produced is None:
                continue
            kind, arch = produced
            handles.append(
                ArtifactBundle(
                    architecture=arch,
                    kind=kind,
                    file_path=handoff_path(artifacts_dir, kind, arch, artifact_name),
                )
            )
        return handles

    def check_barrier(
        self,
        name: str,
        artifacts_dir: Path,
        artifact_name: str = DEFAULT_ARTIFACT_NAME,
    ) -> list[ArtifactBundle]:
        """Return a job's inputs, or raise if any is missing.

        Raises:
            BarrierError: If an upstream artifact does not exist.
        """
        handles = self.inputs(name, artifacts_dir, artifact_name)
        missing = [h for h in handles if not h.exists()]
        if missing:
            raise BarrierError(name, missing)
        logger.info("%s: all %d upstream artifact(s) present", name, len(handles))
        return handles


def default_plan() -> PipelinePlan:
    """Return the project's CI pipeline."""
    image_jobs = ("oci-image:x86_64-unknown-linux-gnu", "oci-image:aarch64-unknown-linux-musl")
    return PipelinePlan(
        jobs=[
            Job(name="ci", stage="ci"),
            Job(
                name="static:x86_64-unknown-linux-musl",
                stage="artifacts",
                target=".#static-x86_64-unknown-linux-musl",
                produces=(ArtifactKind.BINARY, Architecture.AMD64),
            ),
            Job(
                name="static:aarch64-unknown-linux-musl",
                stage="artifacts",
                target=".#static-aarch64-unknown-linux-musl",
                produces=(ArtifactKind.BINARY, Architecture.ARM64),
            ),
            Job(
                name="oci-image:x86_64-unknown-linux-gnu",
                stage="artifacts",
                target=".#oci-image",
                produces=(ArtifactKind.CONTAINER_IMAGE, Architecture.AMD64),
            ),
            Job(
                name="oci-image:aarch64-unknown-linux-musl",
                stage="artifacts",
                target=".#oci-image-aarch64-unknown-linux-musl",
                produces=(ArtifactKind.CONTAINER_IMAGE, Architecture.ARM64),
                # Reuses the static binary instead of building it twice
                needs=("static:aarch64-unknown-linux-musl",),
            ),
            Job(
                name="debian:x86_64-unknown-linux-gnu",
                stage="artifacts",
                produces=(ArtifactKind.PACKAGE, Architecture.AMD64),
            ),
            Job(
                name="oci-image:push-gitlab",
                stage="publish",
                needs=image_jobs,
                registry="gitlab",
            ),
            Job(
                name="oci-image:push-dockerhub",
                stage="publish",
                needs=image_jobs,
                registry="dockerhub",
            ),
        ]
    )


__all__ = [
    "BarrierError",
    "Job",
    "PipelinePlan",
    "PlanError",
    "STAGES",
    "default_plan",
]
