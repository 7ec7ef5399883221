"""Shared field validators for resource models."""

import ipaddress


def validate_cidr(value: str) -> str:
    """Reject malformed CIDR blocks early, at declaration time."""
    try:
        ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"invalid CIDR block '{value}': {e}") from e
    return value
