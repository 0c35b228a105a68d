"""The Cloudflare implementation of the DNS record and WAF list interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta

from cfddns.base import APIError, Auth, Handle
from cfddns.client import ApiCache, CloudflareClient, CloudflareError
from cfddns.records import RecordsMixin
from cfddns.waf import WAFMixin

__all__ = ["CloudflareHandle", "CloudflareAuth"]


class CloudflareHandle(RecordsMixin, WAFMixin, Handle):
    """A Handle backed by the Cloudflare API, caching its responses."""

    def __init__(self, client: CloudflareClient, cache: ApiCache):
        self.client = client
        self.cache = cache

    def flush_cache(self) -> None:
        """Forget every cached API response."""
        self.cache.flush()


@dataclass(frozen=True)
class CloudflareAuth(Auth):
    """An API token, and optionally a base URL, used to create a CloudflareHandle."""

    token: str = field(repr=False)
    base_url: str = ""

    def new(self, cache_expiration: timedelta | float) -> CloudflareHandle:
        """Create a handle whose cached responses expire after the given time."""
        try:
            client = CloudflareClient(self.token, self.base_url or None)
        except CloudflareError as exc:
            raise APIError(f"Failed to prepare the Cloudflare authentication: {exc}") from exc
        return CloudflareHandle(client, ApiCache(cache_expiration))