"""Overlay network building blocks: IPv4/IPv6 subnet arithmetic, leases, interface discovery, and VXLAN and WireGuard lease handling."""

__version__ = "0.1.0"
__all__ = [
    "ip4",
    "ip6",
    "lease",
    "iface",
    "ipmatch",
    "vxlan_device",
    "vxlan_lease",
    "vxlan_network",
    "wireguard",
]