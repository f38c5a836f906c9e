"""Multi-architecture container image publishing.

This module handles:
- Loading per-architecture image archives into the container engine
- Pushing them to each registry under `<commit>-<arch>` tags
- Assembling and pushing manifest lists under the tag policy
"""

from buildcache.images.engine import DockerEngine, EngineError, LoadError
from buildcache.images.models import (
    ManifestError,
    ManifestList,
    RegistryTarget,
    TriggerContext,
)
from buildcache.images.service import (
    ImagePublisher,
    ImagePublishReport,
    RegistryPushError,
)

__all__ = [
    "DockerEngine",
    "EngineError",
    "ImagePublishReport",
    "ImagePublisher",
    "LoadError",
    "ManifestError",
    "ManifestList",
    "RegistryPushError",
    "RegistryTarget",
    "TriggerContext",
]
