"""Binary cache credentials.

The cache token is read once per invocation from the process environment.
Its absence is a valid state meaning "skip publication" and is represented as
`None`, never as an empty credential.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

logger = logging.getLogger(__name__)


class CacheCredential(BaseModel):
    """Endpoint and bearer token for a binary cache.

    The endpoint names a single cache: its last path segment is the cache
    name and everything before it is the API server.
    """

    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(..., description="Cache URL, e.g. https://host/cache-name")
    token: SecretStr = Field(..., description="Bearer token")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: str) -> str:
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError(f"endpoint must be an http(s) URL, got {v!r}")
        if not parts.path.strip("/"):
            raise ValueError(f"endpoint must include a cache name, got {v!r}")
        return v.rstrip("/")

    @field_validator("token")
    @classmethod
    def validate_token(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("token must not be empty")
        return v

    @property
    def server_url(self) -> str:
        parts = urlsplit(self.endpoint)
        prefix = parts.path.rstrip("/").rsplit("/", 1)[0]
        return f"{parts.scheme}://{parts.netloc}{prefix}"

    @property
    def cache_name(self) -> str:
        return urlsplit(self.endpoint).path.rstrip("/").rsplit("/", 1)[-1]


def load_credential(
    endpoint: str,
    token_env: str,
    environ: Mapping[str, str] | None = None,
) -> CacheCredential | None:
    """Read the cache credential from the environment.

    Args:
        endpoint: Cache endpoint URL.
        token_env: Name of the environment variable holding the token.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        CacheCredential, or None if the token variable is unset or blank.
    """
    env = os.environ if environ is None else environ
    token = env.get(token_env)
    if token is None:
        logger.info("$%s is unset, binary cache upload disabled", token_env)
        return None
    if not token.strip():
        logger.warning("$%s is set but empty, binary cache upload disabled", token_env)
        return None
    return CacheCredential(endpoint=endpoint, token=SecretStr(token.strip()))


__all__ = ["CacheCredential", "load_credential"]
