"""Subnet leases, the events that announce them and the network configuration."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional, Union

from .ip4 import IP4, IP4Net
from .ip6 import IP6, IP6Net

RawJSON = Union[str, bytes]


@dataclass
class LeaseAttrs:
    """What a host publishes about itself alongside its subnet lease."""

    public_ip: IP4 = field(default_factory=IP4)
    public_ipv6: Optional[IP6] = None
    backend_type: str = ""
    backend_data: Optional[RawJSON] = None
    backend_v6_data: Optional[RawJSON] = None

    def __post_init__(self) -> None:
        self.public_ip = IP4(self.public_ip)
        if self.public_ipv6 is not None:
            self.public_ipv6 = IP6(self.public_ipv6)

    def __str__(self) -> str:
        v6 = "(nil)" if self.public_ipv6 is None else str(self.public_ipv6)
        return (
            f"PublicIP: {self.public_ip}, PublicIPv6: {v6}, "
            f"BackendType: {self.backend_type}"
        )


@dataclass
class Lease:
    """A subnet (and optionally an IPv6 subnet) leased to one host."""

    subnet: IP4Net = field(default_factory=IP4Net)
    ipv6_subnet: IP6Net = field(default_factory=IP6Net)
    attrs: LeaseAttrs = field(default_factory=LeaseAttrs)
    enable_ipv4: bool = False
    enable_ipv6: bool = False


class EventType(enum.Enum):
    """Whether a lease appeared or went away."""

    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class Event:
    """A change to the set of leases held by other hosts."""

    type: EventType
    lease: Lease


@dataclass
class NetworkConfig:
    """The overlay network as configured for the whole cluster."""

    network: IP4Net = field(default_factory=IP4Net)
    ipv6_network: IP6Net = field(default_factory=IP6Net)
    enable_ipv4: bool = False
    enable_ipv6: bool = False
    backend_type: str = ""
    backend: Optional[RawJSON] = None