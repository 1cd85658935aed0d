"""Service-to-service identity tokens.

Every backend URL is an *audience*. Tokens are fetched from the GCP metadata
server when running on the platform; in development mode, when the metadata
server does not exist, the user's Application Default Credentials are
exchanged for a token instead. Fetched tokens are cached for 55 minutes,
inside the one hour lifetime Google issues them with.
"""

from __future__ import annotations

import json
import os
import time
from threading import Lock
from typing import Any, Callable

import httpx

from .errors import CredentialFetchError, InvalidCredentialFormatError, MetadataServerUnavailable
from .models import CachedToken
from .runtime import RWLock

METADATA_BASE = "http://metadata.google.internal/computeMetadata/v1/instance/service-accounts/default"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
JWT_PREFIX = "eyJ"
DEFAULT_TTL_S = 55 * 60
ACCESS_TOKEN_MARGIN_S = 5 * 60


def truncate_token(token: str) -> str:
    """First and last 20 characters, for logs."""
    if len(token) <= 40:
        return token
    return f"{token[:20]}...{token[-20:]}"


def validate_token(token: str) -> str:
    token = token.strip()
    if not token.startswith(JWT_PREFIX):
        raise InvalidCredentialFormatError(
            f"token doesn't look like a signed JWT (starts with {token[:6]!r}, length {len(token)})"
        )
    return token


NAME_RESOLUTION_MARKERS = (
    "no such host",
    "lookup metadata.google.internal",
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
)


def is_name_resolution_error(exc: Exception) -> bool:
    msg = str(exc).lower()
    return any(m in msg for m in NAME_RESOLUTION_MARKERS)


def _json_body(resp: httpx.Response, source: str) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as e:
        raise CredentialFetchError(f"{source} returned invalid JSON: {resp.text[:200]}") from e
    if not isinstance(data, dict):
        raise CredentialFetchError(f"{source} returned unexpected {type(data).__name__}")
    return data


def parse_access_token(data: dict[str, Any], source: str) -> tuple[str, int]:
    try:
        expires_in = int(data.get("expires_in", 0))
    except (TypeError, ValueError) as e:
        raise CredentialFetchError(f"{source} returned bad expires_in {data.get('expires_in')!r}") from e
    return data.get("access_token", ""), expires_in


class MetadataServerSource:
    """Tokens from the instance metadata server (Cloud Run, GCE, GKE)."""

    def __init__(self, timeout_s: float = 5.0, transport: httpx.BaseTransport | None = None):
        self.timeout_s = timeout_s
        self.transport = transport

    def _get(self, path: str, params: dict[str, str] | None = None) -> httpx.Response:
        try:
            with httpx.Client(
                timeout=self.timeout_s,
                transport=self.transport,
                headers={"Metadata-Flavor": "Google"},
            ) as client:
                resp = client.get(f"{METADATA_BASE}/{path}", params=params)
        except httpx.ConnectError as e:
            if is_name_resolution_error(e):
                # metadata.google.internal does not resolve: not running on the platform.
                raise MetadataServerUnavailable(f"metadata server not reachable: {e}") from e
            raise CredentialFetchError(f"failed to connect to metadata server: {e}") from e
        except httpx.HTTPError as e:
            raise CredentialFetchError(f"failed to fetch token from metadata server: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise CredentialFetchError(f"metadata server returned {resp.status_code}: {resp.text.strip()}")
        return resp

    def identity_token(self, audience: str) -> str:
        return self._get("identity", params={"audience": audience}).text.strip()

    def access_token(self) -> tuple[str, int]:
        return parse_access_token(_json_body(self._get("token"), "metadata server"), "metadata server")


def default_adc_path() -> str:
    explicit = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
    if explicit:
        return explicit
    if os.name == "nt":
        return os.path.join(os.getenv("APPDATA", ""), "gcloud", "application_default_credentials.json")
    return os.path.expanduser("~/.config/gcloud/application_default_credentials.json")


class UserCredentialSource:
    """Exchanges ``gcloud auth application-default login`` credentials for tokens."""

    def __init__(
        self,
        credentials_path: str | None = None,
        timeout_s: float = 5.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.credentials_path = credentials_path
        self.timeout_s = timeout_s
        self.transport = transport

    def _load(self) -> dict[str, Any]:
        path = self.credentials_path or default_adc_path()
        try:
            with open(path, encoding="utf-8") as fh:
                creds = json.load(fh)
        except (OSError, ValueError) as e:
            raise CredentialFetchError(
                f"cannot read ADC file {path} (did you run 'gcloud auth application-default login'?): {e}"
            ) from e
        if creds.get("type") != "authorized_user":
            raise CredentialFetchError(f"unsupported ADC credential type {creds.get('type')!r}, expected 'authorized_user'")
        return creds

    def _exchange(self) -> dict[str, Any]:
        creds = self._load()
        form = {
            "grant_type": "refresh_token",
            "client_id": creds.get("client_id", ""),
            "client_secret": creds.get("client_secret", ""),
            "refresh_token": creds.get("refresh_token", ""),
        }
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self.transport) as client:
                resp = client.post(OAUTH_TOKEN_URL, data=form)
        except httpx.HTTPError as e:
            raise CredentialFetchError(f"failed to fetch token from ADC: {type(e).__name__}: {e}") from e
        if resp.status_code != 200:
            raise CredentialFetchError(f"token endpoint returned {resp.status_code}: {resp.text.strip()}")
        return _json_body(resp, "token endpoint")

    def identity_token(self, audience: str) -> str:
        token = self._exchange().get("id_token", "")
        if not token:
            raise CredentialFetchError("ADC returned empty token")
        return token

    def access_token(self) -> tuple[str, int]:
        return parse_access_token(self._exchange(), "token endpoint")


class TokenManager:
    """Per-audience identity token cache.

    Reads take the shared side of a reader/writer lock. A miss fetches under a
    per-audience lock so concurrent callers for the same backend share one
    fetch, while other audiences proceed independently.
    """

    def __init__(
        self,
        metadata: MetadataServerSource | None = None,
        fallback: UserCredentialSource | None = None,
        dev_mode: bool = False,
        ttl_s: int = DEFAULT_TTL_S,
        clock: Callable[[], float] = time.time,
    ):
        self.metadata = metadata or MetadataServerSource()
        self.fallback = fallback
        self.dev_mode = bool(dev_mode)
        self.ttl_s = ttl_s
        self.clock = clock

        self._rw = RWLock()
        self._cache: dict[str, CachedToken] = {}
        self._access: CachedToken | None = None
        self._metadata_checked = False
        self._has_metadata = False

        self._fetch_guard = Lock()
        self._fetch_locks: dict[str, Lock] = {}

    @classmethod
    def from_settings(cls, s: Any) -> "TokenManager":
        timeout = float(s.token_fetch_timeout_s)
        return cls(
            metadata=MetadataServerSource(timeout_s=timeout),
            fallback=UserCredentialSource(timeout_s=timeout) if s.dev_mode else None,
            dev_mode=s.dev_mode,
            ttl_s=s.token_ttl_s,
        )

    def is_dev_mode(self) -> bool:
        return self.dev_mode

    def has_metadata_server(self) -> bool:
        with self._rw.read():
            return self._has_metadata

    def _lookup(self, audience: str) -> str | None:
        with self._rw.read():
            cached = self._cache.get(audience)
        if cached and cached.valid_at(self.clock()):
            return cached.token
        return None

    def _lock_for(self, audience: str) -> Lock:
        with self._fetch_guard:
            lock = self._fetch_locks.get(audience)
            if lock is None:
                lock = self._fetch_locks[audience] = Lock()
            return lock

    def get_token(self, audience: str) -> str:
        """Return a valid identity token for ``audience``, fetching when needed.

        Raises CredentialFetchError (or InvalidCredentialFormatError) on failure;
        a failure is never cached.
        """
        token = self._lookup(audience)
        if token:
            return token

        with self._lock_for(audience):
            token = self._lookup(audience)
            if token:
                return token
            token = validate_token(
                self._from_sources(
                    lambda: self.metadata.identity_token(audience),
                    lambda: self.fallback.identity_token(audience) if self.fallback else None,
                )
            )
            with self._rw.write():
                self._cache[audience] = CachedToken(token=token, expires_at=self.clock() + self.ttl_s)
            return token

    def _cached_access(self) -> str | None:
        with self._rw.read():
            cached = self._access
        if cached and cached.valid_at(self.clock()):
            return cached.token
        return None

    def access_token(self) -> str:
        """OAuth access token for the platform's admin APIs."""
        token = self._cached_access()
        if token:
            return token

        with self._lock_for("\0access"):
            token = self._cached_access()
            if token:
                return token
            token, expires_in = self._from_sources(
                self.metadata.access_token,
                lambda: self.fallback.access_token() if self.fallback else None,
            )
            if not token:
                raise CredentialFetchError("empty access token")
            lifetime = max(60, expires_in - ACCESS_TOKEN_MARGIN_S)
            with self._rw.write():
                self._access = CachedToken(token=token, expires_at=self.clock() + lifetime)
            return token

    def _from_sources(self, primary: Callable[[], Any], secondary: Callable[[], Any]) -> Any:
        with self._rw.read():
            try_metadata = not self._metadata_checked or self._has_metadata
            seen_metadata = self._has_metadata

        if try_metadata:
            try:
                value = primary()
            except MetadataServerUnavailable as e:
                if seen_metadata:
                    # Previously reachable; a failure now is not latched.
                    raise CredentialFetchError(f"metadata server lookup failed: {e}") from e
                self._mark_metadata(False)
                if not self.dev_mode:
                    raise MetadataServerUnavailable(
                        "metadata server not available (running locally?): enable CRP_DEV_MODE=true "
                        "and run 'gcloud auth application-default login'"
                    ) from e
            else:
                self._mark_metadata(True)
                return value
        elif not self.dev_mode:
            raise CredentialFetchError("metadata server not available and dev mode disabled")

        value = secondary()
        if value is None:
            raise CredentialFetchError("dev mode enabled but no user credential source configured")
        return value

    def _mark_metadata(self, available: bool) -> None:
        with self._rw.write():
            self._metadata_checked = True
            self._has_metadata = available

    def clear_cache(self) -> None:
        with self._rw.write():
            self._cache = {}
            self._access = None

    def cache_stats(self) -> tuple[int, int]:
        """(total, expired) entry counts."""
        now = self.clock()
        with self._rw.read():
            total = len(self._cache)
            expired = sum(1 for c in self._cache.values() if not c.valid_at(now))
        return total, expired
