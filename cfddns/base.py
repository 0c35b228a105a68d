"""Core data types and the abstract interface for updating DNS records and WAF lists."""

from __future__ import annotations

import abc
import ipaddress
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Iterator, Sequence, Union

from cfddns.ttl import TTL

__all__ = [
    "IPAddress",
    "IPNetwork",
    "IPFamily",
    "Domain",
    "WAFList",
    "RecordParams",
    "Record",
    "WAFListItem",
    "DeletionMode",
    "APIError",
    "Handle",
    "Auth",
]

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class IPFamily(Enum):
    """An IP family, determining which kind of DNS record is managed."""

    IP4 = 4
    IP6 = 6

    def record_type(self) -> str:
        """Return the DNS record type for this family."""
        return "A" if self is IPFamily.IP4 else "AAAA"


@dataclass(frozen=True)
class Domain:
    """A domain name, optionally standing for the wildcard under it."""

    name: str
    wildcard: bool = False
    _ascii: str = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        normalized = self.name.strip().rstrip(".").lower()
        try:
            ascii_name = normalized.encode("idna").decode("ascii") if normalized else ""
        except UnicodeError as exc:
            raise ValueError(f"invalid domain name {self.name!r}: {exc}") from exc
        object.__setattr__(self, "name", normalized)
        object.__setattr__(self, "_ascii", ascii_name)

    def dns_name_ascii(self) -> str:
        """Return the name as used in DNS records, in ASCII form."""
        if not self.wildcard:
            return self._ascii
        return f"*.{self._ascii}" if self._ascii else "*"

    def describe(self) -> str:
        """Return a human-readable form of the name."""
        try:
            display = self._ascii.encode("ascii").decode("idna")
        except UnicodeError:
            display = self._ascii
        if not self.wildcard:
            return display
        return f"*.{display}" if display else "*"

    def zones(self) -> Iterator[str]:
        """Yield candidate zone names, from the most specific to the root."""
        name = self._ascii
        while name:
            yield name
            _, _, name = name.partition(".")
        yield ""


@dataclass(frozen=True)
class WAFList:
    """A WAF list identified by its account and its name."""

    account_id: str
    name: str

    def describe(self) -> str:
        return f"{self.account_id}/{self.name}"


@dataclass(frozen=True)
class RecordParams:
    """Parameters of a DNS record other than its content."""

    ttl: TTL
    proxied: bool
    comment: str


@dataclass(frozen=True)
class Record:
    """A DNS record."""

    id: str
    ip: IPAddress
    params: RecordParams


@dataclass(frozen=True)
class WAFListItem:
    """An item of a WAF list: an ID and an IP range."""

    id: str
    prefix: IPNetwork


class DeletionMode(Enum):
    """Whether a failed deletion should invalidate cached data for re-reading."""

    REGULAR = "regular"
    FINAL = "final"


class APIError(Exception):
    """An operation on DNS records or WAF lists failed."""


class Handle(abc.ABC):
    """A generic API to update DNS records and WAF lists."""

    @abc.abstractmethod
    def list_records(
        self, family: IPFamily, domain: Domain, expected_params: RecordParams
    ) -> tuple[list[Record], bool]:
        """Return the matching records and whether they came from the cache."""

    @abc.abstractmethod
    def update_record(
        self,
        family: IPFamily,
        domain: Domain,
        record_id: str,
        ip: IPAddress,
        current_params: RecordParams,
        expected_params: RecordParams,
    ) -> None:
        """Update the content of one DNS record."""

    @abc.abstractmethod
    def create_record(
        self, family: IPFamily, domain: Domain, ip: IPAddress, params: RecordParams
    ) -> str:
        """Create one DNS record and return its ID."""

    @abc.abstractmethod
    def delete_record(
        self, family: IPFamily, domain: Domain, record_id: str, mode: DeletionMode
    ) -> None:
        """Delete one DNS record."""

    @abc.abstractmethod
    def list_waf_list_items(
        self, waf_list: WAFList, expected_description: str
    ) -> tuple[list[WAFListItem], bool, bool]:
        """Return the items of a WAF list, creating the list if it is missing.

        The result also tells whether the list already existed and whether
        the items came from the cache.
        """

    @abc.abstractmethod
    def final_clear_waf_list_async(self, waf_list: WAFList, expected_description: str) -> bool:
        """Delete a WAF list, or start clearing it if deletion fails.

        Returns True if the list was deleted and False if it is being cleared.
        """

    @abc.abstractmethod
    def delete_waf_list_items(
        self, waf_list: WAFList, expected_description: str, ids: Sequence[str]
    ) -> None:
        """Delete items from a WAF list."""

    @abc.abstractmethod
    def create_waf_list_items(
        self,
        waf_list: WAFList,
        expected_description: str,
        items: Sequence[IPNetwork],
        comment: str,
    ) -> None:
        """Add IP ranges to a WAF list."""


class Auth(abc.ABC):
    """Authentication information able to create a Handle."""

    @abc.abstractmethod
    def new(self, cache_expiration: timedelta | float) -> Handle:
        """Create a Handle whose cached responses expire after the given time."""