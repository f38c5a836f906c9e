"""buildcache - Build Nix targets and propagate them to binary caches.

This package builds flake installables, pushes their dependency closures to an
Attic-compatible binary cache, and publishes multi-architecture container
manifests to one or more registries.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
