"""Artifact hand-off between pipeline stages.

This module handles:
- Fixed, predictable file names for per-architecture artifacts
- Staging a build output under its hand-off name with a checksum sidecar
- Collecting typed artifact handles for downstream stages

Jobs in the artifacts stage write here; the publish stage reads the same
names back and treats the files as read-only inputs.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from buildcache.types import Architecture, ArtifactKind

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_NAME = "conduit"

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

SIDECAR_SUFFIX = ".json"


class ArtifactError(Exception):
    """Raised when a build output cannot be staged for hand-off."""

    def __init__(self, message: str, code: str = "artifact_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ArtifactBundle:
    """Typed handle to one per-architecture artifact file."""

    architecture: Architecture
    kind: ArtifactKind
    file_path: Path

    @property
    def sidecar_path(self) -> Path:
        return self.file_path.with_name(self.file_path.name + SIDECAR_SUFFIX)

    def exists(self) -> bool:
        return self.file_path.is_file()


def handoff_filename(
    kind: ArtifactKind,
    architecture: Architecture,
    name: str = DEFAULT_ARTIFACT_NAME,
) -> str:
    """Return the hand-off file name for an artifact.

    Args:
        kind: Artifact kind.
        architecture: Target architecture.
        name: Project name used as the binary/package stem.

    Returns:
        File name, e.g. `oci-image-amd64.tar.gz`.
    """
    arch = architecture.value
    if kind == ArtifactKind.CONTAINER_IMAGE:
        return f"oci-image-{arch}.tar.gz"
    if kind == ArtifactKind.PACKAGE:
        return f"{name}-{arch}.deb"
    return f"{name}-{arch}"


def handoff_path(
    artifacts_dir: Path,
    kind: ArtifactKind,
    architecture: Architecture,
    name: str = DEFAULT_ARTIFACT_NAME,
) -> Path:
    """Return the full hand-off path for an artifact."""
    return artifacts_dir / handoff_filename(kind, architecture, name)


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def locate_output_file(output_path: Path, kind: ArtifactKind, name: str) -> Path:
    """Find the file inside a build output that is handed off.

    Container images and packages may be built as a single file; binaries
    live under `bin/` of the output directory.

    Args:
        output_path: Build output (store path or `result` link).
        kind: Artifact kind being staged.
        name: Binary name looked up under `bin/`.

    Returns:
        Path to the file to copy.

    Raises:
        ArtifactError: If no suitable file exists.
    """
    if output_path.is_file():
        return output_path
    if not output_path.is_dir():
        raise ArtifactError(
            f"Build output does not exist: {output_path}", code="output_missing"
        )

    if kind == ArtifactKind.BINARY:
        candidate = output_path / "bin" / name
        if candidate.is_file():
            return candidate
    elif kind == ArtifactKind.PACKAGE:
        debs = sorted(output_path.rglob("*.deb"))
        if debs:
            return debs[0]
    else:
        images = sorted(output_path.rglob("*.tar.gz"))
        if images:
            return images[0]

    raise ArtifactError(
        f"No {kind.value} found in build output {output_path}", code="output_missing"
    )


def write_sidecar(bundle: ArtifactBundle, extra: dict[str, Any] | None = None) -> Path:
    """Write a JSON sidecar describing a staged artifact.

    Args:
        bundle: Staged artifact.
        extra: Optional additional metadata (target, output paths).

    Returns:
        Path to the sidecar file.
    """
    data: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "architecture": bundle.architecture.value,
        "kind": bundle.kind.value,
        "filename": bundle.file_path.name,
        "size_bytes": bundle.file_path.stat().st_size,
        "sha256": compute_file_hash(bundle.file_path),
    }
    if extra:
        data["metadata"] = extra

    with bundle.sidecar_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    return bundle.sidecar_path


def read_sidecar(bundle: ArtifactBundle) -> dict[str, Any] | None:
    """Return the sidecar of an artifact, or None if it has none."""
    if not bundle.sidecar_path.is_file():
        return None
    with bundle.sidecar_path.open(encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ArtifactError(
            f"Malformed sidecar {bundle.sidecar_path}", code="invalid_sidecar"
        )
    return data


def stage_artifact(
    output_path: Path,
    kind: ArtifactKind,
    architecture: Architecture,
    artifacts_dir: Path,
    name: str = DEFAULT_ARTIFACT_NAME,
    metadata: dict[str, Any] | None = None,
) -> ArtifactBundle:
    """Copy a build output to its hand-off location.

    Args:
        output_path: Build output (store path or `result` link).
        kind: Artifact kind.
        architecture: Target architecture.
        artifacts_dir: Hand-off directory.
        name: Project name for file naming.
        metadata: Extra sidecar metadata.

    Returns:
        ArtifactBundle for the staged file.

    Raises:
        ArtifactError: If the output cannot be found or copied.
    """
    source = locate_output_file(output_path, kind, name)
    dest = handoff_path(artifacts_dir, kind, architecture, name)

    try:
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        # Store paths are read-only; copy contents without permissions.
        shutil.copyfile(source, dest)
        if kind == ArtifactKind.BINARY:
            dest.chmod(0o755)
        else:
            dest.chmod(0o644)
    except OSError as e:
        raise ArtifactError(f"Failed to stage {source} to {dest}: {e}", code="os_error") from e

    bundle = ArtifactBundle(architecture=architecture, kind=kind, file_path=dest)
    write_sidecar(bundle, extra=metadata)
    logger.info("Staged %s artifact for %s at %s", kind.value, architecture.value, dest)
    return bundle


def collect_bundles(
    artifacts_dir: Path,
    kind: ArtifactKind,
    architectures: list[Architecture],
    name: str = DEFAULT_ARTIFACT_NAME,
) -> dict[Architecture, ArtifactBundle]:
    """Collect the hand-off artifacts that exist for each architecture.

    Missing architectures are logged and left out; callers decide whether an
    incomplete set is fatal.

    Args:
        artifacts_dir: Hand-off directory.
        kind: Artifact kind to collect.
        architectures: Architectures to look for.
        name: Project name for file naming.

    Returns:
        Mapping of architecture to bundle for files present on disk.
    """
    bundles: dict[Architecture, ArtifactBundle] = {}
    for arch in architectures:
        bundle = ArtifactBundle(
            architecture=arch,
            kind=kind,
            file_path=handoff_path(artifacts_dir, kind, arch, name),
        )
        if bundle.exists():
            bundles[arch] = bundle
        else:
            logger.warning(
                "No %s artifact for %s at %s", kind.value, arch.value, bundle.file_path
            )
    return bundles


__all__ = [
    "ArtifactBundle",
    "ArtifactError",
    "DEFAULT_ARTIFACT_NAME",
    "HASH_CHUNK_SIZE",
    "collect_bundles",
    "compute_file_hash",
    "handoff_filename",
    "handoff_path",
    "locate_output_file",
    "read_sidecar",
    "stage_artifact",
    "write_sidecar",
]
