"""Address arithmetic for range bans.

Network addresses are compared as unsigned integers: IPv4 addresses map to
``0 .. 2**32 - 1`` and IPv6 addresses to their 128-bit value. IPv4-mapped
IPv6 addresses (``::ffff:a.b.c.d``) collapse to the IPv4 value so a v4 range
also catches dual-stack clients.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass

from trackgate.utils.exceptions import InvalidAddressError

IPV4_MAX = (1 << 32) - 1


@dataclass(frozen=True)
class InvalidAddress:
    """Result returned by ``to_integer`` for input that is not an address."""

    address: str
    reason: str

    def to_error(self) -> InvalidAddressError:
        """Convert to the matching exception for callers that want to raise."""
        return InvalidAddressError(
            f"Invalid address {self.address!r}: {self.reason}",
            {"address": self.address},
        )


def _clean(address: str) -> str:
    text = address.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    # Zone index only scopes link-local routing, it is not part of the value
    if "%" in text:
        text = text.split("%", 1)[0]
    return text


def to_integer(address: str) -> int | InvalidAddress:
    """Convert a textual address to its comparable integer value.

    Never raises; malformed input yields an ``InvalidAddress``.

    Args:
        address: IPv4, IPv6 or IPv4-mapped IPv6 address

    Returns:
        Integer value, or ``InvalidAddress`` describing why parsing failed

    """
    if not isinstance(address, str):
        return InvalidAddress(repr(address), "not a string")

    text = _clean(address)
    if not text:
        return InvalidAddress(address, "empty address")

    try:
        ip = ipaddress.ip_address(text)
    except ValueError as e:
        return InvalidAddress(address, str(e))

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return int(ip.ipv4_mapped)
    return int(ip)


def require_integer(address: str) -> int:
    """Like ``to_integer`` but raises ``InvalidAddressError`` on bad input."""
    value = to_integer(address)
    if isinstance(value, InvalidAddress):
        raise value.to_error()
    return value


def int_to_address(value: int) -> str:
    """Render an address integer back to text.

    Values that fit in 32 bits are shown as IPv4.
    """
    if value < 0 or value >= 1 << 128:
        msg = f"Address value out of range: {value}"
        raise InvalidAddressError(msg, {"value": value})
    if value <= IPV4_MAX:
        return str(ipaddress.IPv4Address(value))
    return str(ipaddress.IPv6Address(value))


def cidr_bounds(cidr: str) -> tuple[int, int]:
    """Return the inclusive integer bounds of a CIDR block.

    Raises:
        InvalidAddressError: if ``cidr`` is not a valid network

    """
    try:
        network = ipaddress.ip_network(cidr.strip(), strict=False)
    except ValueError as e:
        msg = f"Invalid network {cidr!r}: {e}"
        raise InvalidAddressError(msg, {"network": cidr}) from e

    first = network.network_address
    last = network.broadcast_address
    if isinstance(first, ipaddress.IPv6Address) and first.ipv4_mapped is not None:
        mapped_last = last.ipv4_mapped  # type: ignore[union-attr]
        if mapped_last is not None:
            return int(first.ipv4_mapped), int(mapped_last)
    return int(first), int(last)


def parse_range(from_address: str, to_address: str | None = None) -> tuple[int, int]:
    """Parse an administrative range into inclusive integer bounds.

    Accepts ``("a", "b")``, a single address, a CIDR block, or the
    PeerGuardian-style ``"a-b"`` form in ``from_address``.

    Raises:
        InvalidAddressError: on malformed input or an inverted range

    """
    if to_address is None:
        text = from_address.strip()
        if "/" in text:
            return cidr_bounds(text)
        if "-" in text:
            start_text, end_text = (part.strip() for part in text.split("-", 1))
            return parse_range(start_text, end_text)
        value = require_integer(text)
        return value, value

    start = require_integer(from_address)
    end = require_integer(to_address)
    if start > end:
        msg = f"Inverted address range: {from_address} > {to_address}"
        raise InvalidAddressError(msg, {"from": from_address, "to": to_address})
    return start, end
