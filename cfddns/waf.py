"""WAF list operations against the Cloudflare API, with caching of responses."""

from __future__ import annotations

import ipaddress
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Mapping, Sequence

from cfddns.base import APIError, IPFamily, IPNetwork, WAFList, WAFListItem
from cfddns.client import (
    ApiCache,
    AuthenticationError,
    AuthorizationError,
    CloudflareClient,
    CloudflareError,
    describe_free_form_string,
)

__all__ = [
    "LIST_KIND_IP",
    "WAF_LIST_MAX_PREFIX_LENGTH",
    "WAFListMeta",
    "WAFMixin",
    "parse_prefix_or_ip",
    "describe_prefix_or_ip",
]

_log = logging.getLogger(__name__)

LIST_KIND_IP = "ip"

# The longest prefixes Cloudflare accepts in a WAF list, per IP family.
WAF_LIST_MAX_PREFIX_LENGTH = {IPFamily.IP4: 32, IPFamily.IP6: 64}

_WAF_LIST_PERMISSION_KEY = "waf-list-permission"
_WAF_LIST_PERMISSION_HINT = (
    "Double check your API token and account ID. "
    'Make sure you granted the "Edit" permission of "Account - Account Filter Lists"'
)


@dataclass(frozen=True)
class WAFListMeta:
    """Metadata of a WAF list."""

    id: str
    name: str
    description: str


def parse_prefix_or_ip(text: str) -> IPNetwork:
    """Parse an IP range or a single IP address; raise ValueError if it is neither."""
    return ipaddress.ip_network(text.strip(), strict=False)


def describe_prefix_or_ip(prefix: IPNetwork) -> str:
    """Format an IP range, writing a single address without its prefix length."""
    if prefix.prefixlen == prefix.max_prefixlen:
        return str(prefix.network_address)
    return str(prefix)


def _hint_mismatched_description(waf_list: WAFList, meta: WAFListMeta, expected: str) -> None:
    _log.warning(
        "The description for the list %s (ID: %s) is %s. However, its description is expected "
        "to be %s. You can either change the description in the Cloudflare dashboard (account %s) "
        "or change the value of WAF_LIST_DESCRIPTION to match the current description.",
        waf_list.describe(),
        meta.id,
        describe_free_form_string(meta.description),
        describe_free_form_string(expected),
        waf_list.account_id,
    )


def _read_waf_list_items(waf_list: WAFList, raw_items: Iterable[Mapping[str, Any]]) -> list[WAFListItem]:
    items: list[WAFListItem] = []
    for raw in raw_items:
        raw_ip = raw.get("ip")
        if raw_ip is None:
            raise APIError(f"Found a non-IP in the list {waf_list.describe()}")
        try:
            prefix = parse_prefix_or_ip(str(raw_ip))
        except ValueError as exc:
            raise APIError(
                f'Found an invalid IP range/address "{raw_ip}" in the list {waf_list.describe()}'
            ) from exc
        comment = raw.get("comment") or ""
        if comment:
            _log.warning(
                'The IP range/address "%s" in the list %s has a non-empty comment "%s". '
                "The comment might be lost during an IP update.",
                raw_ip,
                waf_list.describe(),
                comment,
            )
        items.append(WAFListItem(id=str(raw.get("id", "")), prefix=prefix))
    return items


class WAFMixin:
    """WAF list operations for a handle holding a ``client`` and a ``cache``."""

    client: CloudflareClient
    cache: ApiCache

    bulk_operation_poll_interval: float = 1.0
    bulk_operation_poll_attempts: int = 30

    def _hint_waf_list_permission(self, exc: Exception) -> None:
        if not isinstance(exc, (AuthenticationError, AuthorizationError)):
            return
        shown = self.__dict__.setdefault("_shown_hints", set())
        if _WAF_LIST_PERMISSION_KEY not in shown:
            shown.add(_WAF_LIST_PERMISSION_KEY)
            _log.warning(_WAF_LIST_PERMISSION_HINT)

    @staticmethod
    def _lists_path(account_id: str) -> str:
        return f"accounts/{account_id}/rules/lists"

    def _fetch_list_items(self, account_id: str, list_id: str) -> Iterator[dict]:
        path = f"{self._lists_path(account_id)}/{list_id}/items"
        params: dict[str, Any] | None = None
        while True:
            envelope = self.client.request("GET", path, params)
            yield from envelope.get("result") or []
            cursors = (envelope.get("result_info") or {}).get("cursors") or {}
            after = cursors.get("after")
            if not after:
                return
            params = {"cursor": after}

    def _wait_for_bulk_operation(self, account_id: str, operation_id: str) -> None:
        path = f"{self._lists_path(account_id)}/bulk_operations/{operation_id}"
        for attempt in range(self.bulk_operation_poll_attempts):
            if attempt:
                time.sleep(self.bulk_operation_poll_interval)
            result = self.client.request("GET", path).get("result") or {}
            status = result.get("status")
            if status == "completed":
                return
            if status == "failed":
                raise CloudflareError(f"bulk operation failed: {result.get('error') or 'no details'}")
        raise CloudflareError(f"bulk operation {operation_id} did not finish in time")

    def _run_bulk_items_operation(
        self, method: str, account_id: str, list_id: str, body: Any
    ) -> list[dict]:
        envelope = self.client.request(
            method, f"{self._lists_path(account_id)}/{list_id}/items", body=body
        )
        operation_id = str((envelope.get("result") or {}).get("operation_id", ""))
        self._wait_for_bulk_operation(account_id, operation_id)
        return list(self._fetch_list_items(account_id, list_id))

    def list_waf_lists(self, account_id: str) -> list[WAFListMeta]:
        """Return the metadata of all IP lists in the account."""
        cached = self.cache.list_lists.get(account_id)
        if cached is not None:
            return list(cached)

        try:
            envelope = self.client.request("GET", self._lists_path(account_id))
        except CloudflareError as exc:
            self._hint_waf_list_permission(exc)
            raise APIError(f"Failed to list existing lists: {exc}") from exc

        lists = [
            WAFListMeta(
                id=str(raw.get("id", "")),
                name=str(raw.get("name", "")),
                description=str(raw.get("description") or ""),
            )
            for raw in envelope.get("result") or []
            if raw.get("kind") == LIST_KIND_IP
        ]

        self.cache.list_lists.delete_expired()
        self.cache.list_lists.set(account_id, lists)
        return list(lists)

    def waf_list_id(self, waf_list: WAFList, expected_description: str) -> str | None:
        """Return the ID of the list, or None if there is no such list."""
        cached = self.cache.list_id.get(waf_list)
        if cached is not None:
            return cached

        found: WAFListMeta | None = None
        for meta in self.list_waf_lists(waf_list.account_id):
            if meta.name != waf_list.name:
                continue
            if found is not None:
                raise APIError(
                    f'Found multiple lists named "{waf_list.name}" within the account '
                    f"{waf_list.account_id} (IDs: {found.id} and {meta.id}); please report this"
                )
            if meta.description != expected_description:
                _hint_mismatched_description(waf_list, meta, expected_description)
            found = meta

        if found is None:
            return None

        self.cache.list_id.delete_expired()
        self.cache.list_id.set(waf_list, found.id)
        return found.id

    def find_waf_list(self, waf_list: WAFList, expected_description: str) -> str:
        """Return the ID of an existing list."""
        try:
            list_id = self.waf_list_id(waf_list, expected_description)
        except APIError as exc:
            raise APIError(f"Failed to find the list {waf_list.describe()}: {exc}") from exc
        if list_id is None:
            raise APIError(f"Failed to find the list {waf_list.describe()}")
        return list_id

    def final_clear_waf_list_async(self, waf_list: WAFList, expected_description: str) -> bool:
        """Delete the list, or start clearing it if deletion fails.

        Returns True if the list was deleted and False if it is being cleared.
        """
        list_id = self.find_waf_list(waf_list, expected_description)
        account_id = waf_list.account_id
        try:
            try:
                self.client.request("DELETE", f"{self._lists_path(account_id)}/{list_id}")
            except CloudflareError as exc:
                _log.warning(
                    "Failed to delete the list %s; clearing it instead: %s", waf_list.describe(), exc
                )
            else:
                return True

            try:
                self.client.request(
                    "PUT", f"{self._lists_path(account_id)}/{list_id}/items", body=[]
                )
            except CloudflareError as exc:
                self._hint_waf_list_permission(exc)
                raise APIError(
                    f"Failed to start clearing the list {waf_list.describe()}: {exc}"
                ) from exc
            return False
        finally:
            self.cache.list_list_items.delete(waf_list)
            self.cache.list_id.delete(waf_list)

    def list_waf_list_items(
        self, waf_list: WAFList, expected_description: str
    ) -> tuple[list[WAFListItem], bool, bool]:
        """Return the items, whether the list already existed, and whether they were cached.

        The list is created when it does not exist yet.
        """
        cached = self.cache.list_list_items.get(waf_list)
        if cached is not None:
            return list(cached), True, True

        try:
            list_id = self.waf_list_id(waf_list, expected_description)
        except APIError as exc:
            raise APIError(
                f"Failed to check the existence of the list {waf_list.describe()}: {exc}"
            ) from exc

        account_id = waf_list.account_id
        if list_id is None:
            try:
                envelope = self.client.request(
                    "POST",
                    self._lists_path(account_id),
                    body={
                        "name": waf_list.name,
                        "description": expected_description,
                        "kind": LIST_KIND_IP,
                    },
                )
            except CloudflareError as exc:
                self._hint_waf_list_permission(exc)
                self.cache.list_lists.delete(account_id)
                raise APIError(f"Failed to create the list {waf_list.describe()}: {exc}") from exc

            list_id = str((envelope.get("result") or {}).get("id", ""))
            cached_lists = self.cache.list_lists.get(account_id)
            if cached_lists is not None:
                cached_lists.insert(
                    0, WAFListMeta(id=list_id, name=waf_list.name, description=expected_description)
                )
            self.cache.list_id.delete_expired()
            self.cache.list_id.set(waf_list, list_id)
            self.cache.list_list_items.delete_expired()
            self.cache.list_list_items.set(waf_list, [])
            return [], False, False

        try:
            raw_items = list(self._fetch_list_items(account_id, list_id))
        except CloudflareError as exc:
            self._hint_waf_list_permission(exc)
            raise APIError(
                f"Failed to retrieve items in the list {waf_list.describe()}: {exc}"
            ) from exc

        items = _read_waf_list_items(waf_list, raw_items)
        self.cache.list_list_items.delete_expired()
        self.cache.list_list_items.set(waf_list, items)
        return list(items), True, False

    def delete_waf_list_items(
        self, waf_list: WAFList, expected_description: str, ids: Sequence[str]
    ) -> None:
        """Delete the items with the given IDs from the list."""
        if not ids:
            return

        list_id = self.find_waf_list(waf_list, expected_description)
        body = {"items": [{"id": item_id} for item_id in ids]}
        try:
            raw_items = self._run_bulk_items_operation("DELETE", waf_list.account_id, list_id, body)
        except CloudflareError as exc:
            self._hint_waf_list_permission(exc)
            self.cache.list_list_items.delete(waf_list)
            raise APIError(
                f"Failed to finish deleting items from the list {waf_list.describe()}: {exc}"
            ) from exc

        items = _read_waf_list_items(waf_list, raw_items)
        self.cache.list_list_items.delete_expired()
        self.cache.list_list_items.set(waf_list, items)

    def create_waf_list_items(
        self,
        waf_list: WAFList,
        expected_description: str,
        items: Sequence[IPNetwork],
        comment: str,
    ) -> None:
        """Add IP ranges to the list, each carrying the given comment."""
        if not items:
            return

        list_id = self.find_waf_list(waf_list, expected_description)
        body = [{"ip": describe_prefix_or_ip(item), "comment": comment} for item in items]
        try:
            raw_items = self._run_bulk_items_operation("POST", waf_list.account_id, list_id, body)
        except CloudflareError as exc:
            self._hint_waf_list_permission(exc)
            self.cache.list_list_items.delete(waf_list)
            raise APIError(
                f"Failed to finish adding items to the list {waf_list.describe()}: {exc}"
            ) from exc

        new_items = _read_waf_list_items(waf_list, raw_items)
        self.cache.list_list_items.delete_expired()
        self.cache.list_list_items.set(waf_list, new_items)