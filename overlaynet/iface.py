"""Host network interfaces, their addresses, routes and TUN devices.

Interface and address lists come from the host via psutil; routes and
address changes go through the ``ip`` command.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import os
import socket
import subprocess
import sys
from dataclasses import dataclass
from typing import Any, BinaryIO, Optional, Union

import psutil

from .ip4 import IP4Net, from_ip
from .ip6 import IP6Net

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

TUN_DEVICE = "/dev/net/tun"
_IFNAMSIZ = 16
_IFREQ_SIZE = 40
_TUNSETIFF = 0x400454CA
_IFF_TUN = 0x0001
_IFF_NO_PI = 0x1000

_BROADCAST4 = ipaddress.IPv4Address("255.255.255.255")


@dataclass(frozen=True)
class Interface:
    """A network interface of the host."""

    index: int
    name: str
    mtu: int = 0
    hardware_addr: str = ""


def interfaces() -> list[Interface]:
    """All interfaces of the host, ordered by index."""
    stats = psutil.net_if_stats()
    addrs = psutil.net_if_addrs()
    result = []
    for index, name in sorted(socket.if_nameindex()):
        stat = stats.get(name)
        mac = next(
            (a.address for a in addrs.get(name, ()) if a.family == psutil.AF_LINK),
            "",
        )
        result.append(Interface(index, name, stat.mtu if stat else 0, mac))
    return result


def interface_by_name(name: str) -> Interface:
    for iface in interfaces():
        if iface.name == name:
            return iface
    raise LookupError(f"no such network interface: {name}")


def interface_by_index(index: int) -> Interface:
    for iface in interfaces():
        if iface.index == index:
            return iface
    raise LookupError(f"no such network interface: index {index}")


def _address(ip: Any) -> IPAddress:
    if isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        address: IPAddress = ip
    else:
        address = ipaddress.ip_address(str(ip).split("%", 1)[0])
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _is_global_unicast(a: IPAddress) -> bool:
    if a == _BROADCAST4:
        return False
    return not (a.is_unspecified or a.is_loopback or a.is_multicast or a.is_link_local)


def _family_addrs(iface: Interface, family: int) -> list[IPAddress]:
    entries = psutil.net_if_addrs().get(iface.name, ())
    return [_address(a.address) for a in entries if a.family == family]


def _prefer_global(addrs: list[IPAddress], version: str) -> list[IPAddress]:
    global_addrs = [a for a in addrs if _is_global_unicast(a)]
    link_local = [a for a in addrs if not _is_global_unicast(a) and a.is_link_local]
    chosen = global_addrs + link_local
    if not chosen:
        raise LookupError(f"No {version} address found for given interface")
    return chosen


def get_interface_ip4_addrs(iface: Interface) -> list[IPAddress]:
    """IPv4 addresses of the interface, global ones before link-local ones."""
    return _prefer_global(_family_addrs(iface, socket.AF_INET), "IPv4")


def get_interface_ip6_addrs(iface: Interface) -> list[IPAddress]:
    """IPv6 addresses of the interface, global ones before link-local ones."""
    return _prefer_global(_family_addrs(iface, socket.AF_INET6), "IPv6")


def get_interface_ip4_addr_match(iface: Interface, match_addr: Any) -> None:
    """Raise LookupError unless the interface holds the given IPv4 address."""
    target = _address(match_addr)
    if not any(a == target for a in _family_addrs(iface, socket.AF_INET)):
        raise LookupError("No IPv4 address found for given interface")


def get_interface_ip6_addr_match(iface: Interface, match_addr: Any) -> None:
    """Raise LookupError unless the interface holds the given IPv6 address."""
    target = _address(match_addr)
    if not any(a == target for a in _family_addrs(iface, socket.AF_INET6)):
        raise LookupError("No IPv6 address found for given interface")


def _run_ip(*args: str) -> str:
    proc = subprocess.run(["ip", *args], capture_output=True, text=True, check=False)
    if proc.returncode != 0:
        message = (proc.stderr or proc.stdout or "").strip()
        raise OSError(message or f"ip exited with status {proc.returncode}")
    return proc.stdout


def _ip_json(*args: str) -> list[dict[str, Any]]:
    out = _run_ip("-j", *args)
    return json.loads(out) if out.strip() else []


def _default_route_interface(family_flag: str, default_dst: str, label: str) -> Interface:
    for route in _ip_json(family_flag, "route", "show"):
        if route.get("dst") in ("default", default_dst):
            dev = route.get("dev")
            if not dev:
                raise LookupError(f"Found default {label}route but could not determine interface")
            return interface_by_name(dev)
    raise LookupError(f"Unable to find default {label}route")


def get_default_gateway_interface() -> Interface:
    return _default_route_interface("-4", "0.0.0.0/0", "")


def get_default_v6_gateway_interface() -> Interface:
    return _default_route_interface("-6", "::/0", "v6 ")


def get_interface_by_ip(ip: Any) -> Interface:
    for iface in interfaces():
        try:
            get_interface_ip4_addr_match(iface, ip)
        except LookupError:
            continue
        return iface
    raise LookupError("No interface with given IP found")


def get_interface_by_ip6(ip: Any) -> Interface:
    for iface in interfaces():
        try:
            get_interface_ip6_addr_match(iface, ip)
        except LookupError:
            continue
        return iface
    raise LookupError("No interface with given IPv6 found")


def _route_get(ip: Any) -> list[dict[str, Any]]:
    address = _address(ip)
    try:
        return _ip_json("route", "get", str(address))
    except OSError as err:
        raise OSError(f"couldn't lookup route to {address}: {err}") from err


def get_interface_by_specific_ip_routing(ip: Any) -> tuple[Interface, Optional[IPAddress]]:
    """The interface and source address the kernel would use to reach ``ip``."""
    for route in _route_get(ip):
        try:
            iface = interface_by_name(route.get("dev", ""))
        except LookupError as err:
            raise LookupError(f"couldn't lookup interface: {err}") from err
        src = route.get("prefsrc")
        return iface, _address(src) if src else None
    raise LookupError("No interface with given IP found")


def direct_routing(ip: Any) -> bool:
    """Whether ``ip`` is reached by a single route without a gateway."""
    routes = _route_get(ip)
    return len(routes) == 1 and not routes[0].get("gateway")


def _link_name(link: Union[Interface, str]) -> str:
    return link if isinstance(link, str) else link.name


def _link_addrs(family_flag: str, name: str) -> list[Any]:
    return [
        ipaddress.ip_interface(f"{info['local'].split('%', 1)[0]}/{info['prefixlen']}")
        for entry in _ip_json(family_flag, "addr", "show", "dev", name)
        for info in entry.get("addr_info", [])
        if "local" in info
    ]


def ensure_v4_address_on_link(ipa: IP4Net, ipn: IP4Net, link: Union[Interface, str]) -> None:
    """Leave ``ipa`` as the only IPv4 address of ``link`` inside ``ipn``."""
    name = _link_name(link)
    wanted = ipa.to_ip_network()
    has_addr = False
    for existing in _link_addrs("-4", name):
        if existing == wanted:
            has_addr = True
            continue
        if ipn.contains(from_ip(existing.ip)):
            try:
                _run_ip("-4", "addr", "del", str(existing), "dev", name)
            except OSError as err:
                raise OSError(f"failed to remove IP address {existing} from {name}: {err}") from err
            log.info("removed IP address %s from %s", existing, name)

    if not has_addr:
        try:
            _run_ip("-4", "addr", "add", str(wanted), "dev", name)
        except OSError as err:
            raise OSError(f"failed to add IP address {wanted} to {name}: {err}") from err


def ensure_v6_address_on_link(ipa: IP6Net, ipn: IP6Net, link: Union[Interface, str]) -> None:
    """Leave ``ipa`` as the only non-link-local IPv6 address of ``link``."""
    name = _link_name(link)
    wanted = ipa.to_ip_network()
    for existing in _link_addrs("-6", name):
        if existing.ip.is_link_local:
            continue
        if existing == wanted:
            return
        try:
            _run_ip("-6", "addr", "del", str(existing), "dev", name)
        except OSError as err:
            raise OSError(f"failed to remove v6 IP address {ipn} from {name}: {err}") from err

    try:
        _run_ip("-6", "addr", "add", str(wanted), "dev", name)
    except OSError as err:
        raise OSError(f"failed to add v6 IP address {ipn} to {name}: {err}") from err


def _add_blackhole_route(family_flag: str, dest: Any) -> None:
    network = ipaddress.ip_network(str(dest), strict=False)
    try:
        _ip_json(family_flag, "route", "show", "type", "blackhole", "exact", str(network))
    except OSError:
        # The route is only added when it cannot be listed.
        _run_ip(family_flag, "route", "add", "blackhole", str(network))


def add_blackhole_v4_route(dest: Any) -> None:
    _add_blackhole_route("-4", dest)


def add_blackhole_v6_route(dest: Any) -> None:
    _add_blackhole_route("-6", dest)


def open_tun(name: str) -> tuple[BinaryIO, str]:
    """Open a TUN device without packet information; return it and its name."""
    import fcntl

    fd = os.open(TUN_DEVICE, os.O_RDWR)
    ifr = bytearray(_IFREQ_SIZE)
    raw = name.encode()[: _IFNAMSIZ - 1]
    ifr[: len(raw)] = raw
    ifr[_IFNAMSIZ : _IFNAMSIZ + 2] = (_IFF_TUN | _IFF_NO_PI).to_bytes(2, sys.byteorder)
    try:
        fcntl.ioctl(fd, _TUNSETIFF, ifr)
    except OSError as err:
        os.close(fd)
        raise OSError(f"ioctl failed with '{err.strerror or err}'") from err
    ifname = bytes(ifr[:_IFNAMSIZ]).rstrip(b"\0").decode()
    return os.fdopen(fd, "r+b", buffering=0), ifname