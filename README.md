# cfddns

A small library for keeping Cloudflare DNS records and WAF IP lists up to date.
It talks to the Cloudflare v4 API with an API token and caches the answers it
gets for a while, so repeated checks do not hit the API again and again.

## Installation

```
pip install cfddns
```

## Getting a handle

```python
from cfddns.handle import CloudflareAuth

auth = CloudflareAuth(token="token")
handle = auth.new(cache_expiration=6 * 60 * 60)  # seconds, or a datetime.timedelta
```

`CloudflareAuth.new` returns a `CloudflareHandle`. An empty token raises
`cfddns.base.APIError`. `CloudflareAuth` also takes an optional `base_url`
to talk to another API endpoint. A non-positive `cache_expiration` means cached
answers never expire. Call `handle.flush_cache()` to throw away everything that
has been cached.

## DNS records

```python
import ipaddress

from cfddns.base import DeletionMode, Domain, IPFamily, RecordParams
from cfddns.ttl import TTL_AUTO

domain = Domain("sub.example.com")          # Domain("example.com", wildcard=True) for *.example.com
params = RecordParams(ttl=TTL_AUTO, proxied=False, comment="")

records, cached = handle.list_records(IPFamily.IP6, domain, params)
new_id = handle.create_record(IPFamily.IP6, domain, ipaddress.ip_address("2001:db8::1"), params)
handle.update_record(IPFamily.IP6, domain, new_id,
                     ipaddress.ip_address("2001:db8::2"), params, params)
handle.delete_record(IPFamily.IP6, domain, new_id, DeletionMode.REGULAR)
```

`IPFamily.IP4` manages `A` records and `IPFamily.IP6` manages `AAAA` records.
The zone holding a domain is found automatically (`handle.zone_id_of_domain`,
which tries `handle.list_zones` from the most specific name up). Zones that are
pending, initializing, moved or deactivated are used with a warning; deleted
zones are skipped.

When a record's TTL, proxy status or comment differs from what you expect, a
warning with a hint on how to fix it is written through the standard `logging`
module. `TTL(1)` (`TTL_AUTO`) means "automatic"; `TTL.describe()` prints it as
`1 (auto)`.

With `DeletionMode.REGULAR`, a failed deletion drops the cached records of the
domain so they are read again next time; `DeletionMode.FINAL` keeps them.

## WAF IP lists

```python
import ipaddress

from cfddns.base import WAFList

waf_list = WAFList(account_id="account-id", name="home")

items, already_existed, cached = handle.list_waf_list_items(waf_list, "Home IPs")
handle.create_waf_list_items(waf_list, "Home IPs",
                             [ipaddress.ip_network("192.0.2.1/32")], "updated")
handle.delete_waf_list_items(waf_list, "Home IPs", [item.id for item in items])
deleted = handle.final_clear_waf_list_async(waf_list, "Home IPs")
```

`list_waf_list_items` creates the list if it does not exist yet. Adding and
deleting items waits for Cloudflare's bulk operation to finish (polled every
`bulk_operation_poll_interval` seconds, at most `bulk_operation_poll_attempts`
times) and then re-reads the list. `final_clear_waf_list_async` tries to delete
the list and, if that fails, starts clearing its contents instead without
waiting; it returns whether the list was actually deleted.

Lower-level helpers are `handle.list_waf_lists(account_id)`,
`handle.waf_list_id(...)` (returns `None` when the list is missing) and
`handle.find_waf_list(...)` (raises instead). `cfddns.waf.parse_prefix_or_ip`
and `cfddns.waf.describe_prefix_or_ip` convert between text and IP ranges.

## Errors

Failures are raised as `cfddns.base.APIError`. Errors reported by the HTTP
layer are `cfddns.client.CloudflareError` (a subclass of `APIError`), with
`AuthenticationError` for HTTP 401 and `AuthorizationError` for HTTP 403; on
those two a one-time hint about token permissions is logged.

## What this package does not do

It is a library only. It has no command-line program, does not detect your
current IP addresses, does not read configuration from the environment, and
does not run updates on a schedule; those are left to the code that uses it.

## Running the tests

```
pip install -e ".[test]"
pytest
```