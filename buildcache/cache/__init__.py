"""Binary cache publishing.

This module handles:
- Reading the optional cache credential from the environment
- Authenticating to the cache and uploading dependency closures
"""

from buildcache.cache.credentials import CacheCredential, load_credential
from buildcache.cache.publisher import (
    AuthError,
    CachePublisher,
    CacheSession,
    PublishAck,
    PublishError,
)

__all__ = [
    "AuthError",
    "CacheCredential",
    "CachePublisher",
    "CacheSession",
    "PublishAck",
    "PublishError",
    "load_credential",
]
