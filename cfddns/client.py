"""HTTP client for the Cloudflare API, response caching and shared helpers."""

from __future__ import annotations

import json
import threading
import time
from datetime import timedelta
from typing import Any, Callable, Hashable, Mapping

import requests

from cfddns.base import APIError, IPFamily

DEFAULT_BASE_URL = "https://api.cloudflare.com/client/v4"
DEFAULT_TIMEOUT = 30.0


class CloudflareError(APIError):
    """A request to the Cloudflare API failed."""

    def __init__(self, message: str, status: int | None = None, errors: list | None = None):
        super().__init__(message)
        self.status = status
        self.errors = errors or []


class AuthenticationError(CloudflareError):
    """The API rejected the credentials (HTTP 401)."""


class AuthorizationError(CloudflareError):
    """The credentials lack the needed permission (HTTP 403)."""


class TTLCache:
    """A thread-safe mapping whose entries expire a fixed time after being set.

    A non-positive lifetime means entries never expire. Reading an entry does
    not extend its lifetime.
    """

    def __init__(self, ttl: timedelta | float, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        self._clock = clock
        self._items: dict[Hashable, tuple[Any, float | None]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _expired(expires: float | None, now: float) -> bool:
        return expires is not None and now > expires

    def get(self, key: Hashable) -> Any:
        """Return the live value for the key, or None."""
        with self._lock:
            entry = self._items.get(key)
            if entry is None or self._expired(entry[1], self._clock()):
                return None
            return entry[0]

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            expires = self._clock() + self._ttl if self._ttl > 0 else None
            self._items[key] = (value, expires)

    def delete(self, key: Hashable) -> None:
        with self._lock:
            self._items.pop(key, None)

    def delete_expired(self) -> None:
        """Drop every entry whose lifetime has ended."""
        with self._lock:
            now = self._clock()
            self._items = {k: e for k, e in self._items.items() if not self._expired(e[1], now)}

    def clear(self) -> None:
        with self._lock:
            self._items.clear()


class ApiCache:
    """Cached responses of the Cloudflare API."""

    def __init__(self, cache_expiration: timedelta | float, clock: Callable[[], float] = time.monotonic):
        self.list_zones = TTLCache(cache_expiration, clock)  # zone names to zone IDs
        self.zone_id_of_domain = TTLCache(cache_expiration, clock)  # domain names to zone IDs
        self.list_records = {family: TTLCache(cache_expiration, clock) for family in IPFamily}
        self.list_lists = TTLCache(cache_expiration, clock)  # account IDs to list metadata
        self.list_id = TTLCache(cache_expiration, clock)  # lists to list IDs
        self.list_list_items = TTLCache(cache_expiration, clock)  # lists to list items

    def flush(self) -> None:
        """Forget every cached response."""
        for cache in (
            self.list_zones,
            self.zone_id_of_domain,
            *self.list_records.values(),
            self.list_lists,
            self.list_id,
            self.list_list_items,
        ):
            cache.clear()


class CloudflareClient:
    """A minimal client for the Cloudflare v4 API authenticated with an API token."""

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        if not token:
            raise CloudflareError("invalid credentials: API token must not be empty")
        self.token = token
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def request(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> dict:
        """Send a request and return the decoded response envelope.

        Raises AuthenticationError, AuthorizationError or CloudflareError
        when the request fails or the API reports an error.
        """
        query = {k: v for k, v in (params or {}).items() if v is not None}
        try:
            response = self._session.request(
                method,
                f"{self.base_url}/{path.lstrip('/')}",
                params=query or None,
                json=body,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise CloudflareError(f"HTTP request failed: {exc}") from exc

        try:
            envelope = response.json()
        except ValueError:
            envelope = None
        errors = envelope.get("errors") or [] if isinstance(envelope, dict) else []
        errors = [e for e in errors if isinstance(e, dict)]
        status = response.status_code
        detail = "; ".join(f"{e.get('message', '')} ({e.get('code')})" for e in errors)
        detail = detail or response.reason or "no details"

        if status == 401:
            raise AuthenticationError(f"HTTP status 401: {detail}", status, errors)
        if status == 403:
            raise AuthorizationError(f"HTTP status 403: {detail}", status, errors)
        if not 200 <= status < 300:
            raise CloudflareError(f"HTTP status {status}: {detail}", status, errors)
        if not isinstance(envelope, dict):
            raise CloudflareError("invalid JSON in the response", status)
        if envelope.get("success") is False:
            raise CloudflareError(f"request was not successful: {detail}", status, errors)
        return envelope


def describe_free_form_string(text: str) -> str:
    """Quote a string for printing, describing the empty string as "empty"."""
    if text == "":
        return "empty"
    return json.dumps(text, ensure_ascii=False)