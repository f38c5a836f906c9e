"""Models for multi-architecture image publishing.

This module defines:
- TriggerContext: the commit and ref a pipeline runs for
- RegistryTarget: one registry an image is pushed to
- ManifestList: a tag mapping to exactly one image per architecture
"""

from __future__ import annotations

import os
import re
import string
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildcache.artifacts import ArtifactBundle
from buildcache.types import Architecture, TagKind

# Docker tags: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
_TAG_INVALID = re.compile(r"[^A-Za-z0-9_.-]")
MAX_TAG_LENGTH = 128


class ManifestError(Exception):
    """Raised when a manifest list does not cover every required architecture."""

    def __init__(
        self,
        message: str,
        tag: str | None = None,
        missing: list[Architecture] | None = None,
        code: str = "manifest_incomplete",
    ) -> None:
        super().__init__(message)
        self.tag = tag
        self.missing = missing or []
        self.code = code


def sanitize_tag(value: str) -> str:
    """Turn a git ref name into a valid image tag.

    Args:
        value: Ref name, e.g. `feature/foo`.

    Returns:
        Tag with invalid characters replaced by '-', e.g. `feature-foo`.
    """
    tag = _TAG_INVALID.sub("-", value.strip())
    tag = tag.lstrip(".-")
    if not tag:
        raise ValueError(f"Cannot derive an image tag from {value!r}")
    return tag[:MAX_TAG_LENGTH]


@dataclass(frozen=True)
class TriggerContext:
    """The commit and ref a publish run was triggered for.

    Attributes:
        commit_sha: Full commit hash.
        ref_name: Branch or tag name.
        tag: Git tag name when the trigger is a release tag, else None.
    """

    commit_sha: str
    ref_name: str
    tag: str | None = None

    def __post_init__(self) -> None:
        if not self.commit_sha:
            raise ValueError("commit_sha must be provided")
        if not self.ref_name:
            raise ValueError("ref_name must be provided")

    @property
    def is_release_tag(self) -> bool:
        return bool(self.tag)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TriggerContext:
        """Read the trigger from CI_COMMIT_SHA, CI_COMMIT_REF_NAME and CI_COMMIT_TAG."""
        env = os.environ if environ is None else environ
        return cls(
            commit_sha=env.get("CI_COMMIT_SHA", ""),
            ref_name=env.get("CI_COMMIT_REF_NAME", ""),
            tag=env.get("CI_COMMIT_TAG") or None,
        )


class RegistryTarget(BaseModel):
    """A registry images and manifest lists are pushed to.

    `server` and `image` may reference environment variables as `$VAR` or
    `${VAR}`; they are expanded when the target is resolved. Credentials are
    named, not stored: each registry reads its own pair of variables.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., min_length=1, description="Registry name for logs and reports")
    server: str | None = Field(
        default=None, description="Login server; None means Docker Hub"
    )
    image: str = Field(..., min_length=1, description="Repository, without tag")
    username_env: str = Field(..., description="Variable holding the username")
    password_env: str = Field(..., description="Variable holding the password")

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        if ":" in v.rsplit("/", 1)[-1]:
            raise ValueError(f"image must not include a tag: {v!r}")
        return v

    def resolve(self, environ: Mapping[str, str]) -> RegistryTarget:
        """Return a copy with environment references expanded.

        Raises:
            KeyError: If a referenced variable is unset.
            ValueError: If a placeholder is malformed.
        """
        server = (
            string.Template(self.server).substitute(environ) if self.server else None
        )
        image = string.Template(self.image).substitute(environ)
        return self.model_copy(update={"server": server or None, "image": image})

    def credentials(self, environ: Mapping[str, str]) -> tuple[str, str]:
        """Return (username, password) for this registry.

        Raises:
            KeyError: If either variable is unset or empty.
        """
        username = environ.get(self.username_env)
        password = environ.get(self.password_env)
        missing = [
            name
            for name, value in (
                (self.username_env, username),
                (self.password_env, password),
            )
            if not value
        ]
        if missing:
            raise KeyError(", ".join(missing))
        return username, password  # type: ignore[return-value]

    def ref(self, tag: str) -> str:
        return f"{self.image}:{tag}"


def arch_tag(commit_tag: str, architecture: Architecture) -> str:
    """Return the per-architecture tag `<commit-tag>-<arch>`."""
    return f"{commit_tag}-{architecture.value}"


@dataclass
class ManifestList:
    """A manifest list pushed under one tag.

    Attributes:
        image: Repository the list and its entries live in.
        tag: Tag the list is pushed under.
        kind: Which tag policy entry produced this list.
        commit_tag: Commit tag the per-architecture images were pushed under.
        entries: One artifact per architecture.
    """

    image: str
    tag: str
    kind: TagKind
    commit_tag: str
    entries: dict[Architecture, ArtifactBundle] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return f"{self.image}:{self.tag}"

    def entry_refs(self) -> list[str]:
        """Per-architecture image refs, in architecture order."""
        return [
            f"{self.image}:{arch_tag(self.commit_tag, arch)}"
            for arch in sorted(self.entries, key=lambda a: a.value)
        ]

    def validate(self, required: Iterable[Architecture]) -> None:
        """Check the list holds exactly one entry per required architecture.

        Raises:
            ManifestError: If an architecture is missing, unexpected, or an
                entry is filed under the wrong architecture.
        """
        required_set = set(required)
        present = set(self.entries)
        missing = sorted(required_set - present, key=lambda a: a.value)
        extra = sorted(present - required_set, key=lambda a: a.value)
        if missing:
            raise ManifestError(
                f"Manifest list {self.ref} is missing architecture(s): "
                f"{', '.join(a.value for a in missing)}",
                tag=self.tag,
                missing=missing,
            )
        if extra:
            raise ManifestError(
                f"Manifest list {self.ref} has unsupported architecture(s): "
                f"{', '.join(a.value for a in extra)}",
                tag=self.tag,
                code="manifest_unsupported_arch",
            )
        for arch, bundle in self.entries.items():
            if bundle.architecture != arch:
                raise ManifestError(
                    f"Manifest list {self.ref} files a {bundle.architecture.value} "
                    f"image under {arch.value}",
                    tag=self.tag,
                    code="manifest_arch_mismatch",
                )


__all__ = [
    "MAX_TAG_LENGTH",
    "ManifestError",
    "ManifestList",
    "RegistryTarget",
    "TriggerContext",
    "arch_tag",
    "sanitize_tag",
]
