"""Multi-architecture image publishing.

This module provides the high-level publish API:
- ImagePublisher.publish(): load per-architecture archives, push them to every
  registry, then assemble and push manifest lists under the tag policy

Registries are independent: a failure against one is logged and reported
while the others continue. An incomplete architecture set is fatal and is
detected before any manifest list is pushed anywhere.
"""

from __future__ import annotations

import logging
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, TypeVar

from buildcache.artifacts import (
    ArtifactBundle,
    ArtifactError,
    compute_file_hash,
    read_sidecar,
)
from buildcache.cancellation import CancellationToken
from buildcache.images.engine import EngineError, LoadError
from buildcache.images.models import (
    ManifestList,
    RegistryTarget,
    TriggerContext,
    arch_tag,
)
from buildcache.images.tags import manifest_tags, should_publish
from buildcache.retry import RetriesExhausted, RetryPolicy, call_with_retries
from buildcache.types import Architecture, RegistryStatus, TagKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegistryPushError(Exception):
    """Raised when pushing to one registry fails."""

    def __init__(
        self,
        message: str,
        registry: str,
        ref: str | None = None,
        code: str = "registry_push_error",
    ) -> None:
        super().__init__(message)
        self.registry = registry
        self.ref = ref
        self.code = code


class Engine(Protocol):
    def with_config_dir(self, config_dir: Path) -> Engine: ...

    def load(self, archive: Path) -> str: ...

    def tag(self, source: str, target: str) -> None: ...

    def push(self, ref: str) -> None: ...

    def login(self, server: str | None, username: str, password: str) -> None: ...

    def manifest_create(self, ref: str, images: list[str]) -> None: ...

    def manifest_push(self, ref: str) -> None: ...


@dataclass
class RegistryReport:
    """What was pushed to one registry."""

    name: str
    status: RegistryStatus = RegistryStatus.SKIPPED
    image: str | None = None
    pushed_images: list[str] = field(default_factory=list)
    pushed_manifests: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class ImagePublishReport:
    """Outcome of a publish run across all registries."""

    trigger: TriggerContext
    tags: dict[TagKind, str] = field(default_factory=dict)
    registries: list[RegistryReport] = field(default_factory=list)
    skipped_reason: str | None = None

    @property
    def success(self) -> bool:
        return all(r.status != RegistryStatus.FAILED for r in self.registries)

    @property
    def failed_registries(self) -> list[str]:
        return [r.name for r in self.registries if r.status == RegistryStatus.FAILED]


def verify_bundle(bundle: ArtifactBundle) -> None:
    """Check an archive against its sidecar checksum, if it has one.

    Raises:
        LoadError: If the file is absent, the sidecar is unreadable, or the
            checksum does not match.
    """
    if not bundle.exists():
        raise LoadError(
            f"Image archive not found: {bundle.file_path}",
            archive=bundle.file_path,
            code="archive_missing",
        )
    try:
        sidecar = read_sidecar(bundle)
    except (ArtifactError, OSError, ValueError) as e:
        raise LoadError(
            f"Unreadable sidecar for {bundle.file_path}: {e}",
            archive=bundle.file_path,
            code="invalid_sidecar",
        ) from e
    if sidecar is None or "sha256" not in sidecar:
        return
    actual = compute_file_hash(bundle.file_path)
    if actual != sidecar["sha256"]:
        raise LoadError(
            f"Checksum mismatch for {bundle.file_path}: "
            f"expected {sidecar['sha256']}, got {actual}",
            archive=bundle.file_path,
            code="checksum_mismatch",
        )


class ImagePublisher:
    """Pushes per-architecture images and manifest lists to registries."""

    def __init__(
        self,
        engine: Engine,
        registries: list[RegistryTarget],
        architectures: list[Architecture],
        publish_branches: list[str] | None = None,
        environ: Mapping[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], None] | None = None,
        config_root: Path | None = None,
    ) -> None:
        self.engine = engine
        self.registries = registries
        self.architectures = architectures
        self.publish_branches = publish_branches or []
        self.environ = environ if environ is not None else {}
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self.config_root = config_root

    def _retrying(self, fn: Callable[[], T], operation: str) -> T:
        return call_with_retries(
            fn,
            operation=operation,
            is_retryable=lambda e: isinstance(e, EngineError) and e.retryable,
            policy=self.retry_policy,
            sleep=self._sleep,
        )

    def load_bundles(
        self, bundles: dict[Architecture, ArtifactBundle]
    ) -> dict[Architecture, str]:
        """Load every archive into the local engine.

        Returns:
            Mapping of architecture to loaded image ID.

        Raises:
            LoadError: If any archive is absent or malformed.
        """
        loaded: dict[Architecture, str] = {}
        for arch in sorted(bundles, key=lambda a: a.value):
            self.cancel_token.raise_if_cancelled("image load")
            bundle = bundles[arch]
            verify_bundle(bundle)
            loaded[arch] = self.engine.load(bundle.file_path)
        return loaded

    def publish(
        self,
        bundles: dict[Architecture, ArtifactBundle],
        trigger: TriggerContext,
    ) -> ImagePublishReport:
        """Publish images and manifest lists to every registry.

        Args:
            bundles: Container-image artifact per architecture.
            trigger: Commit and ref of the run.

        Returns:
            ImagePublishReport with one entry per registry.

        Raises:
            LoadError: If an archive cannot be loaded.
            ManifestError: If the architecture set is incomplete.
        """
        report = ImagePublishReport(trigger=trigger)
        if not should_publish(trigger, self.publish_branches):
            report.skipped_reason = (
                f"{trigger.ref_name} is not a release tag or publish branch"
            )
            logger.info("Skipping image publish: %s", report.skipped_reason)
            return report

        report.tags = manifest_tags(trigger)
        loaded = self.load_bundles(bundles)

        for target in self.registries:
            self.cancel_token.raise_if_cancelled("registry push")
            registry_report = RegistryReport(name=target.name)
            report.registries.append(registry_report)
            with tempfile.TemporaryDirectory(
                prefix=f"docker-{target.name}-", dir=self.config_root
            ) as config_dir:
                engine = self.engine.with_config_dir(Path(config_dir))
                try:
                    self._publish_to(
                        engine, target, bundles, loaded, report.tags, registry_report
                    )
                except RegistryPushError as e:
                    registry_report.status = RegistryStatus.FAILED
                    registry_report.error = str(e)
                    logger.error("Registry %s failed: %s", target.name, e)
                    continue
            registry_report.status = RegistryStatus.SUCCEEDED

        return report

    def _publish_to(
        self,
        engine: Engine,
        target: RegistryTarget,
        bundles: dict[Architecture, ArtifactBundle],
        loaded: dict[Architecture, str],
        tags: dict[TagKind, str],
        registry_report: RegistryReport,
    ) -> None:
        try:
            resolved = target.resolve(self.environ)
            username, password = target.credentials(self.environ)
        except KeyError as e:
            raise RegistryPushError(
                f"Missing environment variable(s) for {target.name}: {e.args[0]}",
                registry=target.name,
                code="credentials_missing",
            ) from e
        except ValueError as e:
            raise RegistryPushError(
                f"Invalid variable reference for {target.name}: {e}",
                registry=target.name,
                code="invalid_reference",
            ) from e
        registry_report.image = resolved.image

        try:
            self._retrying(
                lambda: engine.login(resolved.server, username, password),
                f"login to {target.name}",
            )
        except (EngineError, RetriesExhausted) as e:
            raise RegistryPushError(
                f"Login to {target.name} failed: {e}", registry=target.name
            ) from e

        commit_tag = tags[TagKind.COMMIT]
        for arch in sorted(loaded, key=lambda a: a.value):
            ref = resolved.ref(arch_tag(commit_tag, arch))
            try:
                engine.tag(loaded[arch], ref)
                self._retrying(lambda ref=ref: engine.push(ref), f"push {ref}")
            except (EngineError, RetriesExhausted) as e:
                raise RegistryPushError(
                    f"Push of {ref} failed: {e}", registry=target.name, ref=ref
                ) from e
            registry_report.pushed_images.append(ref)

        manifest_lists = [
            ManifestList(
                image=resolved.image,
                tag=tag,
                kind=kind,
                commit_tag=commit_tag,
                entries=dict(bundles),
            )
            for kind, tag in tags.items()
        ]
        # Every list is checked before the first one is pushed.
        for manifest_list in manifest_lists:
            manifest_list.validate(self.architectures)

        for manifest_list in manifest_lists:
            self.cancel_token.raise_if_cancelled("manifest push")
            try:
                engine.manifest_create(manifest_list.ref, manifest_list.entry_refs())
                self._retrying(
                    lambda ref=manifest_list.ref: engine.manifest_push(ref),
                    f"push manifest {manifest_list.ref}",
                )
            except (EngineError, RetriesExhausted) as e:
                raise RegistryPushError(
                    f"Manifest push of {manifest_list.ref} failed: {e}",
                    registry=target.name,
                    ref=manifest_list.ref,
                ) from e
            registry_report.pushed_manifests.append(manifest_list.ref)


__all__ = [
    "Engine",
    "ImagePublishReport",
    "ImagePublisher",
    "RegistryPushError",
    "RegistryReport",
    "verify_bundle",
]
