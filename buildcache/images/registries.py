"""Registry target configuration.

Defaults publish to the project's GitLab container registry and to Docker
Hub. A YAML file can replace them:

    registries:
      - name: gitlab
        server: ${CI_REGISTRY}
        image: ${CI_REGISTRY_IMAGE}/matrix-conduit
        username_env: CI_REGISTRY_USER
        password_env: CI_REGISTRY_PASSWORD
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from buildcache.images.models import RegistryTarget

DEFAULT_REGISTRIES: list[RegistryTarget] = [
    RegistryTarget(
        name="gitlab",
        server="${CI_REGISTRY}",
        image="${CI_REGISTRY_IMAGE}/matrix-conduit",
        username_env="CI_REGISTRY_USER",
        password_env="CI_REGISTRY_PASSWORD",
    ),
    RegistryTarget(
        name="dockerhub",
        server=None,
        image="matrixconduit/matrix-conduit",
        username_env="DOCKER_HUB_USER",
        password_env="DOCKER_HUB_PASSWORD",
    ),
]


class RegistryConfigError(Exception):
    """Raised when a registries file cannot be parsed."""

    def __init__(self, message: str, code: str = "registry_config_error") -> None:
        super().__init__(message)
        self.code = code


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the top level is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_registries(data: dict[str, Any]) -> list[RegistryTarget]:
    """Validate the `registries` list of a config mapping.

    Raises:
        RegistryConfigError: If the list is missing, empty, invalid, or names
            a registry twice.
    """
    entries = data.get("registries")
    if not isinstance(entries, list) or not entries:
        raise RegistryConfigError("Expected a non-empty 'registries' list")

    try:
        targets = [RegistryTarget.model_validate(e) for e in entries]
    except ValidationError as e:
        raise RegistryConfigError(f"Invalid registry entry: {e}") from e

    names = [t.name for t in targets]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise RegistryConfigError(f"Duplicate registry name(s): {', '.join(duplicates)}")
    return targets


def load_registries(path: Path | None = None) -> list[RegistryTarget]:
    """Return registry targets from a YAML file, or the defaults.

    Args:
        path: Optional registries file.

    Returns:
        List of registry targets, in push order.

    Raises:
        RegistryConfigError: If the file is unreadable or invalid.
    """
    if path is None:
        return list(DEFAULT_REGISTRIES)
    try:
        data = load_yaml(path)
    except (OSError, yaml.YAMLError, ValueError) as e:
        raise RegistryConfigError(f"Cannot read registries file {path}: {e}") from e
    return parse_registries(data)


__all__ = [
    "DEFAULT_REGISTRIES",
    "RegistryConfigError",
    "load_registries",
    "load_yaml",
    "parse_registries",
]
