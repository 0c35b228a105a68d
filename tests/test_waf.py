import ipaddress
import logging
from datetime import timedelta

import pytest
import responses
from responses import matchers

from cfddns.base import APIError, WAFList, WAFListItem
from cfddns.client import ApiCache, AuthorizationError, CloudflareClient
from cfddns.waf import WAFListMeta, WAFMixin, describe_prefix_or_ip, parse_prefix_or_ip

BASE = "https://api.example.com/client/v4"
ACCOUNT = "account456"
MOCK_LIST = WAFList(account_id=ACCOUNT, name="list")
LISTS_URL = f"{BASE}/accounts/{ACCOUNT}/rules/lists"
HINT = (
    "Double check your API token and account ID. "
    'Make sure you granted the "Edit" permission of "Account - Account Filter Lists"'
)

TWO_IP_ONE_ASN = [("list", "ip"), ("list", "asn"), ("list", "ip")]
ONE_IP_ONE_ASN = [("list", "asn"), ("list", "ip")]


def mock_id(name, i):
    return f"{name}-{i}"


def envelope(result, **extra):
    return {"success": True, "errors": [], "messages": [], "result": result, **extra}


class _Handle(WAFMixin):
    bulk_operation_poll_interval = 0.0

    def __init__(self):
        self.client = CloudflareClient("token", BASE)
        self.cache = ApiCache(timedelta(minutes=5))


@pytest.fixture
def rsps():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        yield mock


@pytest.fixture
def handle():
    return _Handle()


def add_lists(rsps, metas):
    result = [
        {
            "id": mock_id(name, i),
            "name": name,
            "description": "description",
            "kind": kind,
            "num_items": 1,
            "num_referencing_filters": 1,
        }
        for i, (name, kind) in enumerate(metas)
    ]
    rsps.get(
        LISTS_URL,
        json=envelope(result),
        match=[
            matchers.query_param_matcher({}),
            matchers.header_matcher({"Authorization": "Bearer token"}),
        ],
    )


def items_payload(items):
    return [
        {"id": mock_id(ip, 0), "ip": ip if ip else None, "comment": comment}
        for ip, comment in items
    ]


def add_list_items(rsps, items, list_id=None):
    list_id = list_id or mock_id("list", 0)
    rsps.get(
        f"{LISTS_URL}/{list_id}/items",
        json=envelope(items_payload(items), result_info={"cursors": {}}),
        match=[matchers.query_param_matcher({})],
    )


def add_bulk_operation(rsps, status="completed"):
    rsps.get(
        f"{LISTS_URL}/bulk_operations/{mock_id('op', 0)}",
        json=envelope({"id": mock_id("op", 0), "status": status, "error": ""}),
    )


def count_calls(rsps, method, url):
    return sum(
        1 for call in rsps.calls
        if call.request.method == method and call.request.url.split("?")[0] == url
    )


@pytest.mark.parametrize(
    "metas, expected",
    [
        ([], []),
        (
            TWO_IP_ONE_ASN,
            [
                WAFListMeta(id=mock_id("list", 0), name="list", description="description"),
                WAFListMeta(id=mock_id("list", 2), name="list", description="description"),
            ],
        ),
        (
            ONE_IP_ONE_ASN,
            [WAFListMeta(id=mock_id("list", 1), name="list", description="description")],
        ),
    ],
)
def test_list_waf_lists(rsps, handle, metas, expected):
    add_lists(rsps, metas)
    assert handle.list_waf_lists(ACCOUNT) == expected
    assert handle.list_waf_lists(ACCOUNT) == expected
    assert len(rsps.calls) == 1

    handle.cache.flush()
    rsps.reset()
    with pytest.raises(APIError, match="Failed to list existing lists"):
        handle.list_waf_lists(ACCOUNT)


def test_list_waf_lists_hint(rsps, handle, caplog):
    caplog.set_level(logging.WARNING)
    rsps.get(
        LISTS_URL,
        status=403,
        json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]},
    )
    client = CloudflareClient("token", BASE)
    with pytest.raises(AuthorizationError, match="Authentication error"):
        client.request("GET", f"accounts/{ACCOUNT}/rules/lists")
    with pytest.raises(APIError) as first:
        handle.list_waf_lists(ACCOUNT)
    with pytest.raises(APIError) as second:
        handle.list_waf_lists(ACCOUNT)
    assert "Failed to list existing lists" in str(first.value)
    assert "Failed to list existing lists" in str(second.value)
    assert caplog.text.count(HINT) == 1


@pytest.mark.parametrize(
    "metas, expected",
    [([], None), (ONE_IP_ONE_ASN, mock_id("list", 1))],
)
def test_waf_list_id(rsps, handle, metas, expected):
    add_lists(rsps, metas)
    assert handle.waf_list_id(MOCK_LIST, "description") == expected
    assert handle.waf_list_id(MOCK_LIST, "description") == expected

    handle.cache.flush()
    rsps.reset()
    with pytest.raises(APIError, match="Failed to list existing lists"):
        handle.waf_list_id(MOCK_LIST, "description")


def test_waf_list_id_multiple(rsps, handle):
    add_lists(rsps, TWO_IP_ONE_ASN)
    with pytest.raises(APIError, match='Found multiple lists named "list" within the account account456') as info:
        handle.waf_list_id(MOCK_LIST, "description")
    assert f"(IDs: {mock_id('list', 0)} and {mock_id('list', 2)})" in str(info.value)


def test_waf_list_id_mismatched_description(rsps, handle, caplog):
    add_lists(rsps, ONE_IP_ONE_ASN)
    with caplog.at_level(logging.WARNING):
        assert handle.waf_list_id(MOCK_LIST, "mismatched description") == mock_id("list", 1)
    assert "The description for the list account456/list" in caplog.text
    assert '"description"' in caplog.text
    assert '"mismatched description"' in caplog.text


def test_find_waf_list_list_fail(rsps, handle):
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.find_waf_list(MOCK_LIST, "description")


def test_find_waf_list_empty(rsps, handle):
    add_lists(rsps, [])
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.find_waf_list(MOCK_LIST, "description")


def test_find_waf_list_found(rsps, handle):
    add_lists(rsps, ONE_IP_ONE_ASN)
    assert handle.find_waf_list(MOCK_LIST, "description") == mock_id("list", 1)
    assert handle.find_waf_list(MOCK_LIST, "description") == mock_id("list", 1)
    assert len(rsps.calls) == 1


def test_find_waf_list_multiple(rsps, handle):
    add_lists(rsps, TWO_IP_ONE_ASN)
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.find_waf_list(MOCK_LIST, "description")


def add_delete_list(rsps):
    rsps.delete(f"{LISTS_URL}/{mock_id('list', 0)}", json=envelope({"id": mock_id("list", 0)}))


def add_replace_items(rsps):
    rsps.put(
        f"{LISTS_URL}/{mock_id('list', 0)}/items",
        json=envelope({"operation_id": mock_id("op", 0)}),
        match=[matchers.json_params_matcher([])],
    )


def test_final_clear_deleted(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_delete_list(rsps)
    add_replace_items(rsps)
    assert handle.final_clear_waf_list_async(MOCK_LIST, "description") is True
    assert count_calls(rsps, "PUT", f"{LISTS_URL}/{mock_id('list', 0)}/items") == 0
    assert handle.cache.list_id.get(MOCK_LIST) is None
    assert handle.cache.list_lists.get(ACCOUNT) is not None


def test_final_clear_list_fail(rsps, handle):
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.final_clear_waf_list_async(MOCK_LIST, "description")


def test_final_clear_delete_fail_clears(rsps, handle, caplog):
    add_lists(rsps, [("list", "ip")])
    add_replace_items(rsps)
    with caplog.at_level(logging.WARNING):
        assert handle.final_clear_waf_list_async(MOCK_LIST, "description") is False
    assert "Failed to delete the list account456/list; clearing it instead" in caplog.text
    assert count_calls(rsps, "PUT", f"{LISTS_URL}/{mock_id('list', 0)}/items") == 1


def test_final_clear_delete_fail_clear_fail(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    with pytest.raises(APIError, match="Failed to start clearing the list account456/list"):
        handle.final_clear_waf_list_async(MOCK_LIST, "description")
    assert handle.cache.list_id.get(MOCK_LIST) is None
    assert handle.cache.list_list_items.get(MOCK_LIST) is None


def test_list_waf_list_items_existing(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_list_items(rsps, [("10.0.0.1", ""), ("2001:db8::/32", ""), ("10.0.0.0/20", "")])
    expected = [
        WAFListItem(id=mock_id("10.0.0.1", 0), prefix=ipaddress.ip_network("10.0.0.1/32")),
        WAFListItem(id=mock_id("2001:db8::/32", 0), prefix=ipaddress.ip_network("2001:db8::/32")),
        WAFListItem(id=mock_id("10.0.0.0/20", 0), prefix=ipaddress.ip_network("10.0.0.0/20")),
    ]
    assert handle.list_waf_list_items(MOCK_LIST, "description") == (expected, True, False)
    assert handle.list_waf_list_items(MOCK_LIST, "description") == (expected, True, True)
    assert len(rsps.calls) == 2


def test_list_waf_list_items_create(rsps, handle):
    add_lists(rsps, [])
    rsps.post(
        LISTS_URL,
        json=envelope({"id": mock_id("list", 0), "name": "list", "kind": "ip"}),
        match=[
            matchers.query_param_matcher({}),
            matchers.json_params_matcher(
                {"name": "list", "description": "description", "kind": "ip"}
            ),
        ],
    )
    assert handle.list_waf_list_items(MOCK_LIST, "description") == ([], False, False)
    assert handle.list_waf_list_items(MOCK_LIST, "description") == ([], True, True)
    assert handle.waf_list_id(MOCK_LIST, "description") == mock_id("list", 0)
    assert len(rsps.calls) == 2


def test_list_waf_list_items_create_fail(rsps, handle):
    add_lists(rsps, [])
    with pytest.raises(APIError, match="Failed to create the list account456/list"):
        handle.list_waf_list_items(MOCK_LIST, "description")
    assert handle.cache.list_lists.get(ACCOUNT) is None


def test_list_waf_list_items_list_fail(rsps, handle):
    with pytest.raises(APIError, match="Failed to check the existence of the list account456/list"):
        handle.list_waf_list_items(MOCK_LIST, "description")


def test_list_waf_list_items_item_fail(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    with pytest.raises(APIError, match="Failed to retrieve items in the list account456/list"):
        handle.list_waf_list_items(MOCK_LIST, "description")


def test_list_waf_list_items_invalid(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_list_items(rsps, [("invalid item", "")])
    with pytest.raises(APIError, match='Found an invalid IP range/address "invalid item" in the list account456/list'):
        handle.list_waf_list_items(MOCK_LIST, "description")


def test_list_waf_list_items_nil(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_list_items(rsps, [("", "")])
    with pytest.raises(APIError, match="Found a non-IP in the list account456/list"):
        handle.list_waf_list_items(MOCK_LIST, "description")


def test_list_waf_list_items_comment(rsps, handle, caplog):
    add_lists(rsps, [("list", "ip")])
    add_list_items(rsps, [("10.0.0.1", "hello")])
    with caplog.at_level(logging.WARNING):
        items, existed, cached = handle.list_waf_list_items(MOCK_LIST, "description")
    assert items == [
        WAFListItem(id=mock_id("10.0.0.1", 0), prefix=ipaddress.ip_network("10.0.0.1/32"))
    ]
    assert (existed, cached) == (True, False)
    assert 'has a non-empty comment "hello"' in caplog.text


def test_list_waf_list_items_paginated(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    url = f"{LISTS_URL}/{mock_id('list', 0)}/items"
    rsps.get(
        url,
        json=envelope(items_payload([("10.0.0.1", "")]), result_info={"cursors": {"after": "next"}}),
        match=[matchers.query_param_matcher({})],
    )
    rsps.get(
        url,
        json=envelope(items_payload([("10.0.0.2", "")]), result_info={"cursors": {}}),
        match=[matchers.query_param_matcher({"cursor": "next"})],
    )
    items, _, _ = handle.list_waf_list_items(MOCK_LIST, "description")
    assert [item.id for item in items] == [mock_id("10.0.0.1", 0), mock_id("10.0.0.2", 0)]


IDS = ["id1", "id2", "id3"]


def add_delete_items(rsps):
    rsps.delete(
        f"{LISTS_URL}/{mock_id('list', 0)}/items",
        json=envelope({"operation_id": mock_id("op", 0)}),
        match=[matchers.json_params_matcher({"items": [{"id": item_id} for item_id in IDS]})],
    )


def test_delete_waf_list_items_success(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_delete_items(rsps)
    add_bulk_operation(rsps)
    add_list_items(rsps, [("10.0.0.1/32", ""), ("2001:db8::/32", ""), ("10.0.0.0/20", "")])
    handle.delete_waf_list_items(MOCK_LIST, "description", IDS)
    handle.delete_waf_list_items(MOCK_LIST, "description", IDS)
    assert count_calls(rsps, "GET", LISTS_URL) == 1
    assert count_calls(rsps, "DELETE", f"{LISTS_URL}/{mock_id('list', 0)}/items") == 2
    cached = handle.cache.list_list_items.get(MOCK_LIST)
    assert [item.prefix for item in cached] == [
        ipaddress.ip_network("10.0.0.1/32"),
        ipaddress.ip_network("2001:db8::/32"),
        ipaddress.ip_network("10.0.0.0/20"),
    ]


def test_delete_waf_list_items_empty(rsps, handle):
    existing = [WAFListItem(id="item1", prefix=ipaddress.ip_network("10.0.0.0/20"))]
    handle.cache.list_list_items.set(MOCK_LIST, existing)
    handle.delete_waf_list_items(MOCK_LIST, "description", [])
    assert handle.cache.list_list_items.get(MOCK_LIST) == existing
    assert len(rsps.calls) == 0


def test_delete_waf_list_items_list_fail(rsps, handle):
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.delete_waf_list_items(MOCK_LIST, "description", IDS)


def test_delete_waf_list_items_delete_fail(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    handle.cache.list_list_items.set(MOCK_LIST, [])
    with pytest.raises(APIError, match="Failed to finish deleting items from the list account456/list"):
        handle.delete_waf_list_items(MOCK_LIST, "description", IDS)
    assert handle.cache.list_list_items.get(MOCK_LIST) is None


def test_delete_waf_list_items_operation_failed(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_delete_items(rsps)
    add_bulk_operation(rsps, status="failed")
    with pytest.raises(APIError, match="Failed to finish deleting items from the list account456/list"):
        handle.delete_waf_list_items(MOCK_LIST, "description", IDS)


def test_delete_waf_list_items_invalid(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_delete_items(rsps)
    add_bulk_operation(rsps)
    add_list_items(rsps, [("10.0.0.1/32", ""), ("2001:db8::/32", ""), ("invalid item", "")])
    with pytest.raises(APIError, match="Found an invalid IP range/address"):
        handle.delete_waf_list_items(MOCK_LIST, "description", IDS)


ITEMS_TO_CREATE = [ipaddress.ip_network("10.0.0.0/16"), ipaddress.ip_network("2001:db8::/50"),
                   ipaddress.ip_network("10.0.0.7/32")]


def add_create_items(rsps):
    rsps.post(
        f"{LISTS_URL}/{mock_id('list', 0)}/items",
        json=envelope({"operation_id": mock_id("op", 0)}),
        match=[
            matchers.json_params_matcher(
                [
                    {"ip": "10.0.0.0/16", "comment": "item comment"},
                    {"ip": "2001:db8::/50", "comment": "item comment"},
                    {"ip": "10.0.0.7", "comment": "item comment"},
                ]
            )
        ],
    )


def test_create_waf_list_items_success(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_create_items(rsps)
    add_bulk_operation(rsps)
    add_list_items(rsps, [("10.0.0.1/32", ""), ("2001:db8::/32", ""), ("10.0.0.0/20", "")])
    handle.create_waf_list_items(MOCK_LIST, "description", ITEMS_TO_CREATE, "item comment")
    handle.create_waf_list_items(MOCK_LIST, "description", ITEMS_TO_CREATE, "item comment")
    assert count_calls(rsps, "GET", LISTS_URL) == 1
    assert count_calls(rsps, "POST", f"{LISTS_URL}/{mock_id('list', 0)}/items") == 2
    items, existed, cached = handle.list_waf_list_items(MOCK_LIST, "description")
    assert (existed, cached) == (True, True)
    assert [item.id for item in items] == [
        mock_id("10.0.0.1/32", 0), mock_id("2001:db8::/32", 0), mock_id("10.0.0.0/20", 0)
    ]


def test_create_waf_list_items_empty(rsps, handle):
    existing = [WAFListItem(id="item1", prefix=ipaddress.ip_network("10.0.0.0/20"))]
    handle.cache.list_list_items.set(MOCK_LIST, existing)
    handle.create_waf_list_items(MOCK_LIST, "description", [], "item comment")
    items, existed, cached = handle.list_waf_list_items(MOCK_LIST, "description")
    assert items == existing
    assert (existed, cached) == (True, True)
    assert len(rsps.calls) == 0


def test_create_waf_list_items_list_fail(rsps, handle):
    with pytest.raises(APIError, match="Failed to find the list account456/list"):
        handle.create_waf_list_items(MOCK_LIST, "description", ITEMS_TO_CREATE, "item comment")


def test_create_waf_list_items_create_fail(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    with pytest.raises(APIError, match="Failed to finish adding items to the list account456/list"):
        handle.create_waf_list_items(MOCK_LIST, "description", ITEMS_TO_CREATE, "item comment")


def test_create_waf_list_items_invalid(rsps, handle):
    add_lists(rsps, [("list", "ip")])
    add_create_items(rsps)
    add_bulk_operation(rsps)
    add_list_items(rsps, [("10.0.0.1/32", ""), ("2001:db8::/32", ""), ("invalid item", "")])
    with pytest.raises(APIError, match="Found an invalid IP range/address"):
        handle.create_waf_list_items(MOCK_LIST, "description", ITEMS_TO_CREATE, "item comment")


def test_prefix_round_trip():
    for text in ["10.0.0.1", "10.0.0.0/20", "2001:db8::/32", "2001:db8::1"]:
        assert describe_prefix_or_ip(parse_prefix_or_ip(text)) == text


def test_parse_prefix_or_ip_invalid():
    with pytest.raises(ValueError):
        parse_prefix_or_ip("invalid item")