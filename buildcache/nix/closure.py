"""Closure resolution for nix targets.

This module handles:
- Building a target reference and reporting its output and recipe paths
- Expanding path sets into their transitive closure over references
- Querying per-path metadata (NAR hash, size, references) for uploads

Recipes are `.drv` store paths. The closure of a recipe covers the
build-time inputs of a target; the closure of an output covers its
run-time dependencies. Both are computed by nix itself.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from buildcache.cancellation import CancellationToken
from buildcache.nix.runner import (
    ResolutionError,
    TransientResolutionError,
    compose_build_command,
    compose_path_info_command,
    run_nix_build,
    run_nix_query,
)
from buildcache.retry import RetriesExhausted, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

DRV_SUFFIX = ".drv"

_UNSAFE_LOG_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def is_recipe(path: str) -> bool:
    """Return True if a store path is a derivation (build recipe)."""
    return path.endswith(DRV_SUFFIX)


@dataclass(frozen=True)
class BuildResult:
    """Output and recipe paths of a successful build.

    Attributes:
        target: The target reference that was built.
        output_paths: Store paths of the build outputs.
        recipe_paths: Store paths of the derivations that produced them.
        log_path: Build log, when the target was built rather than queried.
    """

    target: str
    output_paths: frozenset[str]
    recipe_paths: frozenset[str]
    log_path: Path | None = None

    def __post_init__(self) -> None:
        if not self.output_paths:
            raise ResolutionError(
                f"{self.target} produced no output paths",
                target=self.target,
                code="empty_outputs",
            )
        if not self.recipe_paths:
            raise ResolutionError(
                f"{self.target} has no recipe paths",
                target=self.target,
                code="empty_recipes",
            )

    @property
    def seeds(self) -> frozenset[str]:
        return self.output_paths | self.recipe_paths


@dataclass(frozen=True)
class DependencyClosure:
    """Transitive closure of a set of store paths.

    Attributes:
        runtime: Closure of the output paths.
        buildtime: Closure of the recipe paths.
    """

    runtime: frozenset[str] = field(default_factory=frozenset)
    buildtime: frozenset[str] = field(default_factory=frozenset)

    @property
    def paths(self) -> frozenset[str]:
        return self.runtime | self.buildtime

    def __len__(self) -> int:
        return len(self.paths)

    def __or__(self, other: DependencyClosure) -> DependencyClosure:
        return DependencyClosure(
            runtime=self.runtime | other.runtime,
            buildtime=self.buildtime | other.buildtime,
        )


@dataclass(frozen=True)
class PathInfo:
    """Metadata nix reports for a valid store path."""

    path: str
    nar_hash: str
    nar_size: int
    references: tuple[str, ...] = ()
    deriver: str | None = None
    signatures: tuple[str, ...] = ()
    ca: str | None = None


def parse_path_info_json(output: str) -> dict[str, PathInfo]:
    """Parse `nix path-info --json` output.

    Nix before 2.19 prints a list of objects carrying a `path` key; later
    versions print an object keyed by store path (with `null` for invalid
    paths). Both are accepted.

    Args:
        output: Raw JSON text.

    Returns:
        Mapping of store path to PathInfo.

    Raises:
        ResolutionError: If the output is not valid path-info JSON or reports
            an invalid path.
    """
    try:
        data: Any = json.loads(output or "[]")
    except json.JSONDecodeError as e:
        raise ResolutionError(
            f"Invalid path-info JSON: {e}", code="invalid_path_info"
        ) from e

    if isinstance(data, dict):
        entries = [
            {"path": path, **(info or {"valid": False})} for path, info in data.items()
        ]
    elif isinstance(data, list):
        entries = data
    else:
        raise ResolutionError(
            f"Unexpected path-info JSON type: {type(data).__name__}",
            code="invalid_path_info",
        )

    infos: dict[str, PathInfo] = {}
    for entry in entries:
        path = entry.get("path")
        if not path or entry.get("valid") is False:
            raise ResolutionError(
                f"Store path is not valid: {path}",
                target=path,
                code="invalid_path",
            )
        infos[path] = PathInfo(
            path=path,
            nar_hash=entry.get("narHash", ""),
            nar_size=int(entry.get("narSize", 0)),
            references=tuple(sorted(entry.get("references") or ())),
            deriver=entry.get("deriver"),
            signatures=tuple(entry.get("signatures") or ()),
            ca=entry.get("ca"),
        )
    return infos


def _lines(output: str) -> frozenset[str]:
    return frozenset(line.strip() for line in output.splitlines() if line.strip())


class ClosureResolver:
    """Builds targets and computes their dependency closures with nix."""

    def __init__(
        self,
        nix_bin: str = "nix",
        nix_store_bin: str = "nix-store",
        log_dir: Path | None = None,
        cwd: Path | None = None,
        build_timeout: int | None = None,
        query_timeout: int | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.nix_bin = nix_bin
        self.nix_store_bin = nix_store_bin
        self.log_dir = log_dir or Path(".buildcache") / "logs"
        self.cwd = cwd
        self.build_timeout = build_timeout
        self.query_timeout = query_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_token = cancel_token or CancellationToken()

    @classmethod
    def from_settings(
        cls, settings, cancel_token: CancellationToken | None = None
    ) -> ClosureResolver:
        return cls(
            nix_bin=settings.nix_bin,
            nix_store_bin=settings.nix_store_bin,
            log_dir=settings.log_dir,
            build_timeout=settings.build_timeout,
            query_timeout=settings.query_timeout,
            retry_policy=RetryPolicy.from_settings(settings),
            cancel_token=cancel_token,
        )

    def _log_path(self, target: str) -> Path:
        safe = _UNSAFE_LOG_CHARS.sub("_", target).strip("_") or "target"
        return self.log_dir / f"build-{safe[:80]}.log"

    def _with_retries(self, fn, operation: str, target: str):
        try:
            return call_with_retries(
                fn,
                operation=operation,
                is_retryable=lambda e: isinstance(e, TransientResolutionError),
                policy=self.retry_policy,
            )
        except RetriesExhausted as e:
            raise ResolutionError(
                str(e), target=target, code="retries_exhausted"
            ) from e

    def resolve(
        self,
        target: str,
        build_options: Sequence[str] = (),
        link: bool = True,
    ) -> BuildResult:
        """Build a target and report its output and recipe paths.

        Transient environment failures are retried within the retry policy;
        a genuine build failure raises immediately.

        Args:
            target: Target reference (flake installable).
            build_options: Options forwarded to `nix build`.
            link: Keep the `result` symlink in the working directory.

        Returns:
            BuildResult with non-empty output and recipe sets.

        Raises:
            ResolutionError: If the target cannot be realized.
        """
        self.cancel_token.raise_if_cancelled("build")
        log_path = self._log_path(target)
        cmd = compose_build_command(self.nix_bin, target, build_options, link=link)

        result = self._with_retries(
            lambda: run_nix_build(
                cmd,
                log_path=log_path,
                target=target,
                cwd=self.cwd,
                timeout=self.build_timeout,
            ),
            operation=f"nix build {target}",
            target=target,
        )
        outputs = _lines(result.stdout)

        self.cancel_token.raise_if_cancelled("recipe lookup")
        recipes = self.recipes(target, extra_args=self._eval_args(build_options))

        logger.info(
            "Built %s: %d output(s), %d recipe(s)", target, len(outputs), len(recipes)
        )
        return BuildResult(
            target=target,
            output_paths=outputs,
            recipe_paths=recipes,
            log_path=log_path,
        )

    @staticmethod
    def _eval_args(build_options: Sequence[str]) -> list[str]:
        # Only flake-resolution options change which derivation a reference
        # names; anything else is a build-time knob path-info does not accept.
        args: list[str] = []
        options = list(build_options)
        i = 0
        while i < len(options):
            opt = options[i]
            if opt in ("--inputs-from", "--override-input") and i + 1 < len(options):
                width = 3 if opt == "--override-input" else 2
                args.extend(options[i : i + width])
                i += width
                continue
            if opt == "--impure":
                args.append(opt)
            i += 1
        return args

    def outputs(self, target: str, extra_args: Sequence[str] = ()) -> frozenset[str]:
        """Return output paths of an already-realized target."""
        cmd = compose_path_info_command(self.nix_bin, [target], extra_args=extra_args)
        result = self._with_retries(
            lambda: run_nix_query(
                cmd, target=target, cwd=self.cwd, timeout=self.query_timeout
            ),
            operation=f"nix path-info {target}",
            target=target,
        )
        return _lines(result.stdout)

    def recipes(self, target: str, extra_args: Sequence[str] = ()) -> frozenset[str]:
        """Return recipe (`.drv`) paths of a target."""
        cmd = compose_path_info_command(
            self.nix_bin, [target], derivation=True, extra_args=extra_args
        )
        result = self._with_retries(
            lambda: run_nix_query(
                cmd, target=target, cwd=self.cwd, timeout=self.query_timeout
            ),
            operation=f"nix path-info --derivation {target}",
            target=target,
        )
        return _lines(result.stdout)

    def path_info(
        self, paths: Iterable[str], recursive: bool = False
    ) -> dict[str, PathInfo]:
        """Query metadata for store paths.

        Args:
            paths: Store paths to query.
            recursive: Include every path in their closure.

        Returns:
            Mapping of store path to PathInfo.
        """
        ordered = sorted(set(paths))
        if not ordered:
            return {}
        cmd = compose_path_info_command(
            self.nix_bin, ordered, recursive=recursive, json_output=True
        )
        result = self._with_retries(
            lambda: run_nix_query(cmd, cwd=self.cwd, timeout=self.query_timeout),
            operation="nix path-info --json",
            target=ordered[0],
        )
        return parse_path_info_json(result.stdout)

    def closure(
        self, seeds: Iterable[str], include_recipes: bool = False
    ) -> DependencyClosure:
        """Expand seeds into their transitive closure.

        Output seeds expand into the run-time closure; recipe seeds expand into
        the build-time closure. The result is a superset of the seeds and
        applying `closure` to it again returns the same set.

        Args:
            seeds: Store paths to expand.
            include_recipes: Accept and expand `.drv` seeds.

        Returns:
            DependencyClosure with run-time and build-time subsets.

        Raises:
            ValueError: If recipe seeds are given without `include_recipes`.
            ResolutionError: If nix cannot report a path.
        """
        seed_set = set(seeds)
        recipe_seeds = {p for p in seed_set if is_recipe(p)}
        output_seeds = seed_set - recipe_seeds

        if recipe_seeds and not include_recipes:
            raise ValueError(
                f"{len(recipe_seeds)} recipe path(s) given but include_recipes is False"
            )

        self.cancel_token.raise_if_cancelled("closure")
        runtime = frozenset(self.path_info(output_seeds, recursive=True))
        buildtime: frozenset[str] = frozenset()
        if include_recipes and recipe_seeds:
            buildtime = frozenset(self.path_info(recipe_seeds, recursive=True))

        closure = DependencyClosure(runtime=runtime, buildtime=buildtime)
        missing = seed_set - closure.paths
        if missing:
            raise ResolutionError(
                f"nix omitted seed paths from their closure: {sorted(missing)}",
                code="incomplete_closure",
            )

        logger.info(
            "Closure of %d seed(s): %d run-time, %d build-time path(s)",
            len(seed_set),
            len(runtime),
            len(buildtime),
        )
        return closure

    def dump_nar(self, path: str) -> bytes:
        """Serialize a store path as a NAR."""
        cmd = [self.nix_store_bin, "--dump", path]
        result = self._with_retries(
            lambda: run_nix_query(
                cmd, target=path, cwd=self.cwd, timeout=self.query_timeout, binary=True
            ),
            operation=f"nix-store --dump {path}",
            target=path,
        )
        stdout = result.stdout
        return stdout if isinstance(stdout, bytes) else stdout.encode()


__all__ = [
    "BuildResult",
    "ClosureResolver",
    "DRV_SUFFIX",
    "DependencyClosure",
    "PathInfo",
    "is_recipe",
    "parse_path_info_json",
]
