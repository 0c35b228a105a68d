"""DNS record operations against the Cloudflare API, with caching of responses."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Iterable, Iterator, Mapping

from cfddns.base import (
    APIError,
    DeletionMode,
    Domain,
    IPAddress,
    IPFamily,
    Record,
    RecordParams,
)
from cfddns.client import (
    ApiCache,
    AuthenticationError,
    AuthorizationError,
    CloudflareClient,
    CloudflareError,
    describe_free_form_string,
)
from cfddns.ttl import TTL

__all__ = ["ZONE_PAGE_SIZE", "RECORD_PAGE_SIZE", "RecordsMixin"]

_log = logging.getLogger(__name__)

ZONE_PAGE_SIZE = 50
RECORD_PAGE_SIZE = 100

_RECORD_PERMISSION_KEY = "record-permission"
_RECORD_PERMISSION_HINT = (
    'Double check your API token. Make sure you granted the "Edit" permission of "Zone - DNS"'
)

# Zones in these states are kept, but some features might not work.
_PARTIALLY_WORKING_STATUSES = frozenset({"deactivated", "initializing", "moved", "pending"})


def _english_join(items: Iterable[str]) -> str:
    words = list(items)
    if not words:
        return "(none)"
    if len(words) == 1:
        return words[0]
    if len(words) == 2:
        return f"{words[0]} and {words[1]}"
    return ", ".join(words[:-1]) + f", and {words[-1]}"


def _hint_mismatched_ttl(
    family: IPFamily, domain: Domain, record_id: str, current: TTL, expected: TTL
) -> None:
    _log.warning(
        "The TTL for the %s record of %s (ID: %s) is %s. However, it is expected to be %s. "
        "You can either change the TTL to %s in the Cloudflare dashboard "
        "or change the expected TTL with TTL=%d.",
        family.record_type(),
        domain.describe(),
        record_id,
        current.describe(),
        expected.describe(),
        expected.describe(),
        int(current),
    )


def _hint_mismatched_proxied(
    family: IPFamily, domain: Domain, record_id: str, current: bool, expected: bool
) -> None:
    descriptions = {True: "proxied", False: "not proxied (DNS only)"}
    negation = {True: "", False: "not "}
    _log.warning(
        "The %s record of %s (ID: %s) is %s. However, it is %sexpected to be proxied. "
        'You can either change the proxy status to "%s" in the Cloudflare dashboard '
        "or change the value of PROXIED to match the current setting.",
        family.record_type(),
        domain.describe(),
        record_id,
        descriptions[current],
        negation[expected],
        descriptions[expected],
    )


def _hint_mismatched_comment(
    family: IPFamily, domain: Domain, record_id: str, current: str, expected: str
) -> None:
    _log.warning(
        "The comment for %s record of %s (ID: %s) is %s. However, it is expected to be %s. "
        "You can either change the comment in the Cloudflare dashboard "
        "or change the value of RECORD_COMMENT to match the current comment.",
        family.record_type(),
        domain.describe(),
        record_id,
        describe_free_form_string(current),
        describe_free_form_string(expected),
    )


def _params_of(raw: Mapping[str, Any]) -> RecordParams:
    return RecordParams(
        ttl=TTL(int(raw.get("ttl") or 0)),
        proxied=bool(raw.get("proxied")),
        comment=str(raw.get("comment") or ""),
    )


class RecordsMixin:
    """DNS record operations for a handle holding a ``client`` and a ``cache``."""

    client: CloudflareClient
    cache: ApiCache

    def _notice_once(self, key: str, message: str) -> None:
        shown = getattr(self, "_shown_hints", None)
        if shown is None:
            shown = set()
            self._shown_hints = shown
        if key not in shown:
            shown.add(key)
            _log.warning(message)

    def _hint_record_permission(self, exc: Exception) -> None:
        if isinstance(exc, (AuthenticationError, AuthorizationError)):
            self._notice_once(_RECORD_PERMISSION_KEY, _RECORD_PERMISSION_HINT)

    def _fetch_pages(
        self,
        path: str,
        params: Mapping[str, Any],
        *,
        per_page: int,
        explicit_first_page: bool,
    ) -> Iterator[dict]:
        page = 1
        query: dict[str, Any] = {**params, "per_page": per_page}
        if explicit_first_page:
            query["page"] = page
        while True:
            envelope = self.client.request("GET", path, query)
            yield from envelope.get("result") or []
            info = envelope.get("result_info") or {}
            if page >= int(info.get("total_pages") or 1):
                return
            page += 1
            query = {**query, "page": page}

    def list_zones(self, name: str) -> list[str]:
        """Return the IDs of the usable zones with the given name."""
        # The DNS root zone is never managed by Cloudflare.
        if name == "":
            return []

        cached = self.cache.list_zones.get(name)
        if cached is not None:
            return list(cached)

        try:
            zones = list(
                self._fetch_pages(
                    "zones", {"name": name}, per_page=ZONE_PAGE_SIZE, explicit_first_page=False
                )
            )
        except CloudflareError as exc:
            self._hint_record_permission(exc)
            raise APIError(f"Failed to check the existence of a zone named {name}: {exc}") from exc

        ids: list[str] = []
        for zone in zones:
            status = str(zone.get("status", ""))
            zone_id = str(zone.get("id", ""))
            if status == "active":
                ids.append(zone_id)
            elif status in _PARTIALLY_WORKING_STATUSES:
                _log.warning(
                    'DNS zone %s is "%s" in your Cloudflare account; '
                    "some features (e.g., proxying) might not work as expected",
                    name,
                    status,
                )
                ids.append(zone_id)
            elif status == "deleted":
                _log.info(
                    'DNS zone %s is "%s" in your Cloudflare account and thus skipped', name, status
                )
            else:
                _log.warning(
                    'DNS zone %s is in an undocumented status "%s" in your Cloudflare account; '
                    "please report this",
                    name,
                    status,
                )
                ids.append(zone_id)

        self.cache.list_zones.delete_expired()
        self.cache.list_zones.set(name, ids)
        return list(ids)

    def zone_id_of_domain(self, domain: Domain) -> str:
        """Return the ID of the zone governing the domain."""
        key = domain.dns_name_ascii()
        cached = self.cache.zone_id_of_domain.get(key)
        if cached is not None:
            return cached

        for zone_name in domain.zones():
            zones = self.list_zones(zone_name)
            if not zones:
                continue
            if len(zones) == 1:
                self.cache.zone_id_of_domain.delete_expired()
                self.cache.zone_id_of_domain.set(key, zones[0])
                return zones[0]
            raise APIError(
                f"Found multiple active zones named {zone_name} "
                f"(IDs: {_english_join(zones)}); please report this"
            )

        raise APIError(f"Failed to find the zone of {domain.describe()}")

    def list_records(
        self, family: IPFamily, domain: Domain, expected_params: RecordParams
    ) -> tuple[list[Record], bool]:
        """Return the matching records and whether they came from the cache."""
        key = domain.dns_name_ascii()
        cached = self.cache.list_records[family].get(key)
        if cached is not None:
            return list(cached), True

        zone = self.zone_id_of_domain(domain)
        try:
            raw_records = list(
                self._fetch_pages(
                    f"zones/{zone}/dns_records",
                    {"name": key, "type": family.record_type()},
                    per_page=RECORD_PAGE_SIZE,
                    explicit_first_page=True,
                )
            )
        except CloudflareError as exc:
            self._hint_record_permission(exc)
            raise APIError(
                f"Failed to retrieve {family.record_type()} records of {domain.describe()}: {exc}"
            ) from exc

        records: list[Record] = []
        for raw in raw_records:
            record_id = str(raw.get("id", ""))
            try:
                ip = ipaddress.ip_address(str(raw.get("content", "")))
            except ValueError as exc:
                raise APIError(
                    f"Failed to parse the IP address in an {family.record_type()} record of "
                    f"{domain.describe()} (ID: {record_id}): {exc}"
                ) from exc

            params = _params_of(raw)
            if params.ttl != expected_params.ttl:
                _hint_mismatched_ttl(family, domain, record_id, params.ttl, expected_params.ttl)
            if params.proxied != expected_params.proxied:
                _hint_mismatched_proxied(
                    family, domain, record_id, params.proxied, expected_params.proxied
                )
            if params.comment != expected_params.comment:
                _hint_mismatched_comment(
                    family, domain, record_id, params.comment, expected_params.comment
                )
            records.append(Record(id=record_id, ip=ip, params=params))

        self.cache.list_records[family].delete_expired()
        self.cache.list_records[family].set(key, records)
        return list(records), False

    def delete_record(
        self, family: IPFamily, domain: Domain, record_id: str, mode: DeletionMode
    ) -> None:
        """Delete one DNS record."""
        key = domain.dns_name_ascii()
        zone = self.zone_id_of_domain(domain)
        try:
            self.client.request("DELETE", f"zones/{zone}/dns_records/{record_id}")
        except CloudflareError as exc:
            self._hint_record_permission(exc)
            if mode is DeletionMode.REGULAR:
                self.cache.list_records[family].delete(key)
            raise APIError(
                f"Failed to delete a stale {family.record_type()} record of "
                f"{domain.describe()} (ID: {record_id}): {exc}"
            ) from exc

        cached = self.cache.list_records[family].get(key)
        if cached is not None:
            cached[:] = [record for record in cached if record.id != record_id]

    def update_record(
        self,
        family: IPFamily,
        domain: Domain,
        record_id: str,
        ip: IPAddress,
        current_params: RecordParams,
        expected_params: RecordParams,
    ) -> None:
        """Update the IP address of one DNS record."""
        key = domain.dns_name_ascii()
        zone = self.zone_id_of_domain(domain)
        try:
            envelope = self.client.request(
                "PATCH", f"zones/{zone}/dns_records/{record_id}", body={"content": str(ip)}
            )
        except CloudflareError as exc:
            self._hint_record_permission(exc)
            self.cache.list_records[family].delete(key)
            raise APIError(
                f"Failed to update a stale {family.record_type()} record of "
                f"{domain.describe()} (ID: {record_id}): {exc}"
            ) from exc

        updated = _params_of(envelope.get("result") or {})
        if updated.ttl not in (current_params.ttl, expected_params.ttl):
            _hint_mismatched_ttl(family, domain, record_id, updated.ttl, expected_params.ttl)
        if updated.proxied not in (current_params.proxied, expected_params.proxied):
            _hint_mismatched_proxied(
                family, domain, record_id, updated.proxied, expected_params.proxied
            )
        if updated.comment not in (current_params.comment, expected_params.comment):
            _hint_mismatched_comment(
                family, domain, record_id, updated.comment, expected_params.comment
            )

        cached = self.cache.list_records[family].get(key)
        if cached is not None:
            cached[:] = [
                Record(id=record_id, ip=ip, params=updated) if record.id == record_id else record
                for record in cached
            ]

    def create_record(
        self, family: IPFamily, domain: Domain, ip: IPAddress, params: RecordParams
    ) -> str:
        """Create one DNS record and return its ID."""
        key = domain.dns_name_ascii()
        zone = self.zone_id_of_domain(domain)
        body: dict[str, Any] = {
            "name": key,
            "type": family.record_type(),
            "content": str(ip),
            "ttl": int(params.ttl),
            "proxied": params.proxied,
        }
        if params.comment:
            body["comment"] = params.comment
        try:
            envelope = self.client.request("POST", f"zones/{zone}/dns_records", body=body)
        except CloudflareError as exc:
            self._hint_record_permission(exc)
            self.cache.list_records[family].delete(key)
            raise APIError(
                f"Failed to add a new {family.record_type()} record of {domain.describe()}: {exc}"
            ) from exc

        new_id = str((envelope.get("result") or {}).get("id", ""))
        cached = self.cache.list_records[family].get(key)
        if cached is not None:
            cached.insert(0, Record(id=new_id, ip=ip, params=params))
        return new_id