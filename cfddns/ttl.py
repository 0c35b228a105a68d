"""Time-to-live values of DNS records."""

from __future__ import annotations

__all__ = ["TTL", "TTL_AUTO"]


class TTL(int):
    """A time-to-live of a DNS record in seconds; the value 1 means automatic."""

    __slots__ = ()

    def __repr__(self) -> str:
        return f"TTL({int(self)})"

    def __str__(self) -> str:
        return str(int(self))

    def describe(self) -> str:
        """Return a human-readable description suitable for printing."""
        if self == TTL_AUTO:
            return "1 (auto)"
        return str(int(self))


TTL_AUTO = TTL(1)