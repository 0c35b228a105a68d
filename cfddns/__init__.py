"""Update Cloudflare DNS records and WAF IP lists through a caching API handle."""

__version__ = "0.1.0"