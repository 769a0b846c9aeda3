"""
Strict validation of externally derived addresses.

Anything that ends up as an argument of an external command must pass through
validate_address first. Invalid input is rejected, never coerced.
"""

import ipaddress
import re
from typing import Iterable

from src.core.errors import ValidationError

from .models import ValidatedAddress

# Characters that may appear in a literal IPv4/IPv6 address; no scope ids, no spaces
_ADDRESS_CHARS = re.compile(r"[0-9A-Fa-f:.]{2,45}")

# Dotted quad without leading garbage, each octet 0-255
_IPV4 = re.compile(
    r"(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)"
)


def validate_address(raw: object, protected: Iterable[str] = ()) -> ValidatedAddress:
    """Validate an address before it is handed to a firewall controller

    Args:
        raw: Untrusted value (log line, threat feed, API input)
        protected: Addresses that must never be blocked

    Returns:
        ValidatedAddress holding the canonical form

    Raises:
        ValidationError: malformed, reserved or protected address
    """
    if not isinstance(raw, str):
        raise ValidationError(f"Address must be a string, got {type(raw).__name__}")
    if not _ADDRESS_CHARS.fullmatch(raw):
        raise ValidationError(f"Invalid address syntax: {raw!r}")
    if ":" not in raw and not _IPV4.fullmatch(raw):
        raise ValidationError(f"Invalid IPv4 address: {raw!r}")

    try:
        ip = ipaddress.ip_address(raw)
    except ValueError:
        raise ValidationError(f"Invalid address: {raw!r}") from None

    if ip.is_unspecified or ip.is_loopback or ip.is_multicast:
        raise ValidationError(f"Refusing to act on reserved address {ip}")

    canonical = str(ip)
    protected_set = {_canonical(p) for p in protected}
    if canonical in protected_set:
        raise ValidationError(f"Address {canonical} is protected")

    return ValidatedAddress(value=canonical, version=ip.version)


def _canonical(address: str) -> str:
    try:
        return str(ipaddress.ip_address(address))
    except ValueError:
        return address
