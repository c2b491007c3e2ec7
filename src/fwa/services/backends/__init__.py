"""Firewall backend adapters and detection.

Detection order is fixed: firewalld, then ufw, then iptables. A host
often has more than one installed and the higher-level tool usually
drives the lower-level one, so the first match wins.
"""

from typing import TYPE_CHECKING, Optional

from fwa.services.backends.base import (
    BackendAdapter,
    BackendKind,
    RestoreGranularity,
)
from fwa.services.backends.firewalld import DEFAULT_ZONE, FirewalldAdapter
from fwa.services.backends.iptables import IptablesAdapter
from fwa.services.backends.ufw import UfwAdapter

if TYPE_CHECKING:
    from fwa.services.session import HostSession


DETECTION_ORDER: tuple[BackendKind, ...] = (
    BackendKind.SERVICE_MANAGED,
    BackendKind.SIMPLE_ALLOW_DENY,
    BackendKind.IPTABLES_LIKE,
)


def build_adapters(
    *,
    ssh_port: int = 22,
    firewalld_zone: str = DEFAULT_ZONE,
) -> dict[BackendKind, BackendAdapter]:
    """One adapter per supported backend, keyed by kind."""
    return {
        BackendKind.SERVICE_MANAGED: FirewalldAdapter(ssh_port=ssh_port, zone=firewalld_zone),
        BackendKind.SIMPLE_ALLOW_DENY: UfwAdapter(ssh_port=ssh_port),
        BackendKind.IPTABLES_LIKE: IptablesAdapter(ssh_port=ssh_port),
    }


def detect_backend(
    session: "HostSession",
    adapters: dict[BackendKind, BackendAdapter],
) -> Optional[BackendAdapter]:
    """Probe backends in priority order.

    Returns:
        The first adapter whose probe succeeds, or None (UNKNOWN)
    """
    for kind in DETECTION_ORDER:
        adapter = adapters.get(kind)
        if adapter is not None and adapter.probe(session):
            return adapter
    return None


__all__ = [
    "BackendAdapter",
    "BackendKind",
    "RestoreGranularity",
    "FirewalldAdapter",
    "UfwAdapter",
    "IptablesAdapter",
    "DETECTION_ORDER",
    "build_adapters",
    "detect_backend",
]
