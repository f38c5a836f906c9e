"""Binary cache publisher.

This module handles:
- Authenticating against an Attic-compatible cache API with a bearer token
- Asking the cache which store paths it is missing
- Uploading missing paths as NARs, one independent request per path
- Retrying transient failures with bounded exponential backoff

Store paths are content-addressed, so uploading a path the cache already has
is a no-op; the missing-paths query makes a repeated publish issue no upload
requests at all.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

import httpx

from buildcache.cache.credentials import CacheCredential
from buildcache.cancellation import CancellationToken
from buildcache.nix.closure import DependencyClosure, PathInfo
from buildcache.nix.runner import ResolutionError
from buildcache.retry import RetriesExhausted, RetryPolicy, call_with_retries

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses worth another attempt
RETRYABLE_STATUSES = {408, 429, 500, 502, 503, 504}

# Store path hashes per missing-paths query
MISSING_PATHS_BATCH = 1000

STORE_PATH_HASH_LENGTH = 32

USER_AGENT = "buildcache/0.1"


class AuthError(Exception):
    """Raised when the cache rejects the credential or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str = "auth_error",
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code


class PublishError(Exception):
    """Raised when uploading to the cache fails."""

    def __init__(
        self,
        message: str,
        retryable: bool,
        path: str | None = None,
        status_code: int | None = None,
        code: str = "publish_error",
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.path = path
        self.status_code = status_code
        self.code = code


class StoreReader(Protocol):
    """Source of upload metadata and NAR contents."""

    def path_info(
        self, paths: Iterable[str], recursive: bool = False
    ) -> dict[str, PathInfo]: ...

    def dump_nar(self, path: str) -> bytes: ...


@dataclass
class CacheSession:
    """An authenticated connection to a single cache."""

    client: httpx.Client
    server_url: str
    cache_name: str
    credential: CacheCredential

    @property
    def headers(self) -> dict[str, str]:
        token = self.credential.token.get_secret_value()
        return {"Authorization": f"Bearer {token}"}

    def url(self, route: str) -> str:
        return f"{self.server_url}/_api/v1/{route}"


@dataclass
class PublishAck:
    """Outcome of publishing a closure.

    Attributes:
        uploaded: Paths uploaded by this call.
        already_present: Paths the cache already had.
        deduplicated: Uploaded paths the cache recognized by content.
    """

    uploaded: list[str] = field(default_factory=list)
    already_present: list[str] = field(default_factory=list)
    deduplicated: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.uploaded) + len(self.already_present)


def store_path_hash(path: str) -> str:
    """Return the content-address prefix of a store path's basename."""
    name = path.rstrip("/").rsplit("/", 1)[-1]
    digest = name.split("-", 1)[0]
    if len(digest) != STORE_PATH_HASH_LENGTH:
        raise ValueError(f"Not a store path: {path}")
    return digest


def compose_nar_info(cache_name: str, info: PathInfo) -> dict[str, Any]:
    """Compose the upload metadata header for a store path."""
    return {
        "cache": cache_name,
        "store_path_hash": store_path_hash(info.path),
        "store_path": info.path,
        "references": list(info.references),
        "system": None,
        "deriver": info.deriver,
        "sigs": list(info.signatures),
        "ca": info.ca,
        "nar_hash": info.nar_hash,
        "nar_size": info.nar_size,
    }


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (AuthError, PublishError)) and getattr(
        exc, "retryable", False
    )


class _RetryableAuthError(AuthError):
    retryable = True


class CachePublisher:
    """Uploads dependency closures to an Attic-compatible binary cache."""

    def __init__(
        self,
        store: StoreReader,
        client: httpx.Client | None = None,
        timeout: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.store = store
        self._client = client
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.cancel_token = cancel_token or CancellationToken()
        self._sleep = sleep
        self.request_count = 0

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.timeout,
                headers={"User-Agent": USER_AGENT},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> CachePublisher:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _request(
        self,
        client: httpx.Client,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> httpx.Response:
        self.request_count += 1
        return client.request(method, url, timeout=self.timeout, **kwargs)

    def _retrying(self, fn: Callable[[], T], operation: str) -> T:
        return call_with_retries(
            fn,
            operation=operation,
            is_retryable=_is_retryable,
            policy=self.retry_policy,
            sleep=self._sleep,
        )

    def authenticate(self, credential: CacheCredential) -> CacheSession:
        """Verify the credential against the cache and open a session.

        Args:
            credential: Endpoint and token; callers filter out absent
                credentials before calling.

        Returns:
            CacheSession for subsequent publishes.

        Raises:
            AuthError: If the token is rejected or the endpoint is unreachable.
        """
        session = CacheSession(
            client=self.client,
            server_url=credential.server_url,
            cache_name=credential.cache_name,
            credential=credential,
        )
        url = session.url(f"cache-config/{session.cache_name}")
        logger.info("Authenticating to cache %s at %s", session.cache_name, session.server_url)

        def _attempt() -> None:
            try:
                resp = self._request(session.client, "GET", url, headers=session.headers)
            except httpx.HTTPError as e:
                raise _RetryableAuthError(
                    f"Cannot reach cache at {session.server_url}: {e}",
                    code="unreachable",
                ) from e
            if resp.status_code in (401, 403):
                raise AuthError(
                    f"Cache {session.cache_name} rejected the token "
                    f"({resp.status_code} {resp.reason_phrase})",
                    status_code=resp.status_code,
                    code="token_rejected",
                )
            if resp.status_code == 404:
                raise AuthError(
                    f"Cache {session.cache_name} does not exist at {session.server_url}",
                    status_code=resp.status_code,
                    code="cache_not_found",
                )
            if resp.status_code in RETRYABLE_STATUSES:
                raise _RetryableAuthError(
                    f"Cache returned {resp.status_code} during authentication",
                    status_code=resp.status_code,
                    code="unreachable",
                )
            if resp.is_error:
                raise AuthError(
                    f"Unexpected {resp.status_code} from cache during authentication",
                    status_code=resp.status_code,
                )

        try:
            self._retrying(_attempt, f"authenticate to {session.cache_name}")
        except RetriesExhausted as e:
            raise AuthError(str(e), code="unreachable") from e

        logger.info("Authenticated to cache %s", session.cache_name)
        return session

    def missing_paths(self, session: CacheSession, paths: Iterable[str]) -> set[str]:
        """Return the subset of paths the cache does not have."""
        by_hash = {store_path_hash(p): p for p in paths}
        hashes = sorted(by_hash)
        missing: set[str] = set()

        for start in range(0, len(hashes), MISSING_PATHS_BATCH):
            batch = hashes[start : start + MISSING_PATHS_BATCH]
            body = {"cache": session.cache_name, "store_path_hashes": batch}

            def _attempt(body: dict[str, Any] = body) -> list[str]:
                resp = self._send(
                    session, "POST", session.url("get-missing-paths"), json=body
                )
                try:
                    data = resp.json()
                except ValueError as e:
                    raise PublishError(
                        f"Cache returned invalid JSON for missing paths: {e}",
                        retryable=False,
                        code="invalid_response",
                    ) from e
                if not isinstance(data, dict):
                    raise PublishError(
                        "Cache returned an unexpected missing-paths response",
                        retryable=False,
                        code="invalid_response",
                    )
                return list(data.get("missing_paths", []))

            for digest in self._publish_retrying(_attempt, "query missing paths"):
                if digest in by_hash:
                    missing.add(by_hash[digest])
        return missing

    def _send(
        self,
        session: CacheSession,
        method: str,
        url: str,
        path: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            resp = self._request(
                session.client,
                method,
                url,
                headers={**session.headers, **(headers or {})},
                **kwargs,
            )
        except httpx.TimeoutException as e:
            raise PublishError(
                f"Timeout during {method} {url}", retryable=True, path=path, code="timeout"
            ) from e
        except httpx.TransportError as e:
            raise PublishError(
                f"Network error during {method} {url}: {e}",
                retryable=True,
                path=path,
                code="network_error",
            ) from e

        if resp.is_success:
            return resp

        retryable = resp.status_code in RETRYABLE_STATUSES
        if resp.status_code in (401, 403):
            code = "permission_denied"
        elif resp.status_code == 413:
            code = "quota_exceeded"
        else:
            code = "http_error"
        raise PublishError(
            f"{method} {url} returned {resp.status_code} {resp.reason_phrase}",
            retryable=retryable,
            path=path,
            status_code=resp.status_code,
            code=code,
        )

    def _publish_retrying(self, fn: Callable[[], T], operation: str) -> T:
        try:
            return self._retrying(fn, operation)
        except RetriesExhausted as e:
            last = e.last_error
            raise PublishError(
                str(e),
                retryable=False,
                path=getattr(last, "path", None),
                status_code=getattr(last, "status_code", None),
                code="retries_exhausted",
            ) from e

    def upload_path(self, session: CacheSession, info: PathInfo) -> str:
        """Upload one store path.

        Returns:
            The cache's verdict, "Uploaded" or "Deduplicated".
        """
        try:
            nar = self.store.dump_nar(info.path)
        except ResolutionError as e:
            raise PublishError(
                f"Cannot read {info.path} from the store: {e}",
                retryable=False,
                path=info.path,
                code="store_error",
            ) from e
        headers = {
            "X-Attic-Nar-Info": json.dumps(
                compose_nar_info(session.cache_name, info), sort_keys=True
            ),
            "Content-Type": "application/octet-stream",
        }

        def _attempt() -> str:
            resp = self._send(
                session,
                "PUT",
                session.url("upload-path"),
                path=info.path,
                headers=headers,
                content=nar,
            )
            try:
                return str(resp.json().get("kind", "Uploaded"))
            except ValueError:
                return "Uploaded"

        return self._publish_retrying(_attempt, f"upload {info.path}")

    def publish(self, session: CacheSession, closure: DependencyClosure) -> PublishAck:
        """Upload every path of a closure the cache does not already have.

        Each path is uploaded independently; a failure leaves earlier uploads
        in place.

        Args:
            session: Authenticated session.
            closure: Paths to publish.

        Returns:
            PublishAck listing uploaded and already-present paths.

        Raises:
            PublishError: On a non-retryable failure or exhausted retries.
        """
        paths = sorted(closure.paths)
        ack = PublishAck()
        if not paths:
            return ack

        self.cancel_token.raise_if_cancelled("publish")
        missing = self.missing_paths(session, paths)
        ack.already_present = [p for p in paths if p not in missing]
        logger.info(
            "Cache %s has %d of %d path(s), uploading %d",
            session.cache_name,
            len(ack.already_present),
            len(paths),
            len(missing),
        )
        if not missing:
            return ack

        try:
            infos = self.store.path_info(missing)
        except ResolutionError as e:
            raise PublishError(
                f"Cannot query path info: {e}", retryable=False, code="store_error"
            ) from e
        for path in sorted(missing):
            self.cancel_token.raise_if_cancelled("publish")
            info = infos.get(path)
            if info is None:
                raise PublishError(
                    f"No path info for {path}", retryable=False, path=path, code="missing_path_info"
                )
            kind = self.upload_path(session, info)
            ack.uploaded.append(path)
            if kind == "Deduplicated":
                ack.deduplicated.append(path)
            logger.debug("%s %s", kind, path)

        logger.info("Uploaded %d path(s) to %s", len(ack.uploaded), session.cache_name)
        return ack


__all__ = [
    "AuthError",
    "CachePublisher",
    "CacheSession",
    "MISSING_PATHS_BATCH",
    "PublishAck",
    "PublishError",
    "RETRYABLE_STATUSES",
    "StoreReader",
    "compose_nar_info",
    "store_path_hash",
]
