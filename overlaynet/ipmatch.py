"""Choosing the external interface and addresses the overlay network runs over."""

from __future__ import annotations

import enum
import ipaddress
import logging
import re
import sys
from dataclasses import dataclass
from typing import Iterable, Optional, Pattern, Union

from .iface import (
    Interface,
    get_default_gateway_interface,
    get_default_v6_gateway_interface,
    get_interface_by_ip,
    get_interface_by_ip6,
    get_interface_by_specific_ip_routing,
    get_interface_ip4_addrs,
    get_interface_ip6_addrs,
    interface_by_name,
    interfaces,
)

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class IPStack(enum.IntEnum):
    """Which address families the node runs the overlay over."""

    IPV4 = 0
    IPV6 = 1
    DUAL = 2
    NONE = 3


@dataclass(frozen=True)
class PublicIPOpts:
    """Addresses the node advertises instead of its interface addresses."""

    public_ip: str = ""
    public_ipv6: str = ""


@dataclass
class ExternalInterface:
    """The interface that carries overlay traffic and the addresses it uses."""

    iface: Interface
    iface_addr: Optional[IPAddress] = None
    iface_v6_addr: Optional[IPAddress] = None
    ext_addr: Optional[IPAddress] = None
    ext_v6_addr: Optional[IPAddress] = None


def get_ip_family(auto_detect_ipv4: bool, auto_detect_ipv6: bool) -> IPStack:
    """The stack implied by which families are auto-detected."""
    if auto_detect_ipv4 and not auto_detect_ipv6:
        return IPStack.IPV4
    if auto_detect_ipv6 and not auto_detect_ipv4:
        return IPStack.IPV6
    if auto_detect_ipv4 and auto_detect_ipv6:
        return IPStack.DUAL
    raise ValueError("none defined stack")


def match_ip(ifregex: Pattern[str], iface_ips: Iterable[IPAddress]) -> Optional[IPAddress]:
    """The first address whose text the pattern finds a match in."""
    return next((a for a in iface_ips if ifregex.search(str(a))), None)


def _parse_ip(text: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _is_v4(address: IPAddress) -> bool:
    if isinstance(address, ipaddress.IPv4Address):
        return True
    return address.ipv4_mapped is not None


def _format_addrs(addrs: Iterable[IPAddress]) -> str:
    return "[" + " ".join(str(a) for a in addrs) + "]"


def _addrs_or_empty(iface: Interface, ip_stack: IPStack) -> list[IPAddress]:
    lookup = get_interface_ip6_addrs if ip_stack == IPStack.IPV6 else get_interface_ip4_addrs
    try:
        return lookup(iface)
    except LookupError:
        return []


def _by_address(
    ifname: str, iface_addr: IPAddress, ip_stack: IPStack, opts: PublicIPOpts
) -> tuple[Optional[Interface], Optional[IPAddress], Optional[IPAddress]]:
    log.info("Searching for interface using %s", iface_addr)
    iface: Optional[Interface] = None
    iface_v6_addr: Optional[IPAddress] = None
    result_addr: Optional[IPAddress] = iface_addr

    if ip_stack == IPStack.IPV4:
        try:
            iface = get_interface_by_ip(iface_addr)
        except LookupError as err:
            raise LookupError(f"error looking up interface {ifname}: {err}") from err
    elif ip_stack == IPStack.IPV6:
        try:
            iface = get_interface_by_ip6(iface_addr)
        except LookupError as err:
            raise LookupError(f"error looking up v6 interface {ifname}: {err}") from err
        iface_v6_addr = iface_addr
    elif ip_stack == IPStack.DUAL:
        if _is_v4(iface_addr):
            try:
                iface = get_interface_by_ip(iface_addr)
            except LookupError as err:
                raise LookupError(f"error looking up interface {ifname}: {err}") from err
        if opts.public_ipv6:
            iface_v6_addr = _parse_ip(opts.public_ipv6)
            if iface_v6_addr is not None:
                try:
                    v6_iface = get_interface_by_ip6(iface_v6_addr)
                except LookupError as err:
                    raise LookupError(
                        f"error looking up v6 interface {opts.public_ipv6}: {err}"
                    ) from err
                if not _is_v4(iface_addr):
                    iface = v6_iface
                    result_addr = None
                elif iface is not None and iface.name != v6_iface.name:
                    raise ValueError(
                        f"v6 interface {v6_iface.name} must be the same with v4 interface {iface.name}"
                    )
    return iface, result_addr, iface_v6_addr


def _by_regex(
    ifregex: Pattern[str], ifregex_text: str, ip_stack: IPStack
) -> tuple[Interface, Optional[IPAddress], Optional[IPAddress]]:
    try:
        all_ifaces = interfaces()
    except OSError as err:
        raise OSError(f"error listing all interfaces: {err}") from err

    iface: Optional[Interface] = None
    iface_addr: Optional[IPAddress] = None
    iface_v6_addr: Optional[IPAddress] = None

    for candidate in all_ifaces:
        if ip_stack == IPStack.IPV4:
            try:
                ips = get_interface_ip4_addrs(candidate)
            except LookupError:
                continue
            matched = match_ip(ifregex, ips)
            if matched is not None:
                iface_addr, iface = matched, candidate
                break
        elif ip_stack == IPStack.IPV6:
            try:
                ips = get_interface_ip6_addrs(candidate)
            except LookupError:
                continue
            matched = match_ip(ifregex, ips)
            if matched is not None:
                iface_v6_addr, iface = matched, candidate
                break
        elif ip_stack == IPStack.DUAL:
            try:
                ips = get_interface_ip4_addrs(candidate)
                v6_ips = get_interface_ip6_addrs(candidate)
            except LookupError:
                continue
            matched = match_ip(ifregex, ips)
            if matched is None:
                continue
            iface_addr = matched
            matched_v6 = match_ip(ifregex, v6_ips)
            if matched_v6 is not None:
                iface_v6_addr, iface = matched_v6, candidate
                break

    if iface is None and (iface_addr is None or iface_v6_addr is None):
        iface = next((c for c in all_ifaces if ifregex.search(c.name)), None)

    if iface is None:
        available = ", ".join(
            f"{f.name}:{_format_addrs(_addrs_or_empty(f, ip_stack))}" for f in all_ifaces
        )
        raise LookupError(
            f"Could not match pattern {ifregex_text} to any of the available "
            f"network interfaces ({available})"
        )
    return iface, iface_addr, iface_v6_addr


def _by_default_route(ip_stack: IPStack) -> Interface:
    log.info("Determining IP address of default interface")
    if ip_stack == IPStack.IPV6:
        try:
            return get_default_v6_gateway_interface()
        except (LookupError, OSError) as err:
            raise LookupError(f"failed to get default v6 interface: {err}") from err
    try:
        iface = get_default_gateway_interface()
    except (LookupError, OSError) as err:
        raise LookupError(f"failed to get default interface: {err}") from err
    if ip_stack == IPStack.DUAL:
        try:
            v6_iface = get_default_v6_gateway_interface()
        except (LookupError, OSError) as err:
            raise LookupError(f"failed to get default v6 interface: {err}") from err
        if iface.name != v6_iface.name:
            raise ValueError(
                f"v6 default route interface {v6_iface.name} "
                f"must be the same with v4 default route interface {iface.name}"
            )
    return iface


def _first_addr(iface: Interface, v6: bool) -> IPAddress:
    lookup = get_interface_ip6_addrs if v6 else get_interface_ip4_addrs
    try:
        addrs = lookup(iface)
    except LookupError:
        addrs = []
    if not addrs:
        family = "IPv6" if v6 else "IPv4"
        raise LookupError(f"failed to find {family} address for interface {iface.name}")
    return addrs[0]


def lookup_ext_iface(
    ifname: str,
    ifregex: str,
    ifcanreach: str,
    ip_stack: IPStack,
    opts: PublicIPOpts,
) -> ExternalInterface:
    """Find the interface by name or address, pattern, reachability or default route."""
    pattern: Optional[Pattern[str]] = None
    if ifregex:
        try:
            pattern = re.compile(ifregex)
        except re.error as err:
            raise ValueError(f"could not compile the IP address regex '{ifregex}': {err}") from err

    ip_stack = IPStack(ip_stack)
    if ip_stack == IPStack.NONE:
        raise ValueError("none matched ip stack")

    iface: Optional[Interface] = None
    iface_addr: Optional[IPAddress] = None
    iface_v6_addr: Optional[IPAddress] = None

    if ifname:
        parsed = _parse_ip(ifname)
        if parsed is not None:
            iface, iface_addr, iface_v6_addr = _by_address(ifname, parsed, ip_stack, opts)
        else:
            try:
                iface = interface_by_name(ifname)
            except LookupError as err:
                raise LookupError(f"error looking up interface {ifname}: {err}") from err
    elif pattern is not None:
        iface, iface_addr, iface_v6_addr = _by_regex(pattern, ifregex, ip_stack)
    elif ifcanreach:
        if sys.platform == "win32":
            raise ValueError("ifcanreach is not supported on windows")
        log.info("Determining interface to use based on given ifcanreach: %s", ifcanreach)
        try:
            iface, iface_addr = get_interface_by_specific_ip_routing(ifcanreach)
        except (LookupError, OSError, ValueError) as err:
            raise LookupError(f"failed to get ifcanreach based interface: {err}") from err
    else:
        iface = _by_default_route(ip_stack)

    if iface is None:
        raise LookupError(f"could not determine an interface for {ifname}")

    if ip_stack == IPStack.IPV4 and iface_addr is None:
        iface_addr = _first_addr(iface, v6=False)
    elif ip_stack == IPStack.IPV6 and iface_v6_addr is None:
        iface_v6_addr = _first_addr(iface, v6=True)
    elif ip_stack == IPStack.DUAL and iface_addr is None and iface_v6_addr is None:
        iface_addr = _first_addr(iface, v6=False)
        iface_v6_addr = _first_addr(iface, v6=True)

    if iface_addr is not None:
        log.info("Using interface with name %s and address %s", iface.name, iface_addr)
    if iface_v6_addr is not None:
        log.info("Using interface with name %s and v6 address %s", iface.name, iface_v6_addr)

    if iface.mtu == 0:
        raise ValueError(f"failed to determine MTU for {iface_addr} interface")

    ext_addr: Optional[IPAddress] = None
    ext_v6_addr: Optional[IPAddress] = None

    if opts.public_ip:
        ext_addr = _parse_ip(opts.public_ip)
        if ext_addr is None:
            raise ValueError(f"invalid public IP address: {opts.public_ip}")
        log.info("Using %s as external address", ext_addr)

    if ext_addr is None and ip_stack != IPStack.IPV6:
        log.info("Defaulting external address to interface address (%s)", iface_addr)
        ext_addr = iface_addr

    if opts.public_ipv6:
        ext_v6_addr = _parse_ip(opts.public_ipv6)
        if ext_v6_addr is None:
            raise ValueError(f"invalid public IPv6 address: {opts.public_ipv6}")
        log.info("Using %s as external address", ext_v6_addr)

    if ext_v6_addr is None and ip_stack != IPStack.IPV4:
        log.info("Defaulting external v6 address to interface address (%s)", iface_v6_addr)
        ext_v6_addr = iface_v6_addr

    return ExternalInterface(
        iface=iface,
        iface_addr=iface_addr,
        iface_v6_addr=iface_v6_addr,
        ext_addr=ext_addr,
        ext_v6_addr=ext_v6_addr,
    )