"""Nix integration.

This module handles:
- Running `nix build` and read-only nix queries
- Resolving target output and recipe paths
- Computing dependency closures and NAR dumps for upload
"""

from buildcache.nix.closure import (
    BuildResult,
    ClosureResolver,
    DependencyClosure,
    PathInfo,
)
from buildcache.nix.runner import ResolutionError, TransientResolutionError

__all__ = [
    "BuildResult",
    "ClosureResolver",
    "DependencyClosure",
    "PathInfo",
    "ResolutionError",
    "TransientResolutionError",
]
