"""Input validation utilities.

Provides validation for:
- Port specifications (single port or start-end range)
- Rule sources ("any", IP address or CIDR)
- Rule comments (control characters, length)
- Host names used as storage keys

All validators return the validated value or raise ValidationError.
"""

import ipaddress
import re
from typing import Optional, Union

from fwa.core.exceptions import ValidationError, ValidationKind


MIN_PORT = 1
MAX_PORT = 65535
MAX_COMMENT_LENGTH = 256

ANY_SOURCE = "any"

PORT_RANGE_PATTERN = re.compile(r"^(\d{1,5})-(\d{1,5})$", re.ASCII)
HOST_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,252}$")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_port_spec(value: str) -> tuple[int, int]:
    """Parse a port spec into an inclusive (start, end) pair.

    Args:
        value: "80" or "6000-6007"

    Returns:
        (start, end); start == end for a single port

    Raises:
        ValidationError: If the spec is not a valid port or range
    """
    text = str(value).strip()

    if text.isascii() and text.isdigit():
        start = end = int(text)
    else:
        match = PORT_RANGE_PATTERN.match(text)
        if not match:
            raise ValidationError(
                f"Invalid port: {value!r}",
                kind=ValidationKind.MALFORMED_PORT,
                hint="Use a port number (80) or a range (6000-6007)",
            )
        start, end = int(match.group(1)), int(match.group(2))

    for port in (start, end):
        if not MIN_PORT <= port <= MAX_PORT:
            raise ValidationError(
                f"Invalid port number: {port}",
                kind=ValidationKind.MALFORMED_PORT,
                hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
            )

    if start > end:
        raise ValidationError(
            f"Invalid port range: {value!r} (start is greater than end)",
            kind=ValidationKind.MALFORMED_PORT,
        )

    return start, end


def validate_source(value: str) -> str:
    """Validate a rule source.

    Args:
        value: "any", an IP address or a CIDR

    Returns:
        The normalized source ("any" or the original text stripped)

    Raises:
        ValidationError: If the source is neither "any" nor an IP/CIDR
    """
    text = str(value).strip()

    if text.lower() == ANY_SOURCE:
        return ANY_SOURCE

    try:
        ipaddress.ip_network(text, strict=False)
    except ValueError as e:
        raise ValidationError(
            f"Invalid source IP/CIDR: {value!r}",
            kind=ValidationKind.MALFORMED_SOURCE,
            hint="Use 'any', an address like 192.168.1.10 or a CIDR like 10.0.0.0/8",
            details=[str(e)],
        ) from e

    return text


def source_network(value: str) -> Optional[IPNetwork]:
    """Network for a validated source, or None for "any"."""
    if value == ANY_SOURCE:
        return None
    return ipaddress.ip_network(value, strict=False)


def sanitize_comment(comment: Optional[str]) -> Optional[str]:
    """Sanitize a comment string for backend comment fields.

    Returns:
        Sanitized comment or None
    """
    if not comment:
        return None

    sanitized = re.sub(r"[\x00-\x1f\x7f]", " ", comment)

    # backends cap comments in bytes, not characters
    encoded = sanitized.encode("utf-8")
    if len(encoded) > MAX_COMMENT_LENGTH:
        sanitized = encoded[:MAX_COMMENT_LENGTH - 3].decode("utf-8", "ignore") + "..."

    return sanitized.strip() or None


def validate_host_name(value: str) -> str:
    """Validate a host name used in backup paths and logs.

    Raises:
        ValidationError: If the name contains path separators or other
            characters outside [A-Za-z0-9._-]
    """
    if not HOST_NAME_PATTERN.match(value or ""):
        raise ValidationError(
            f"Invalid host name: {value!r}",
            hint="Host names may contain letters, digits, '.', '_' and '-'",
        )
    return value
