"""VXLAN devices of the host and their neighbour and forwarding entries.

Links, neighbours and forwarding entries are managed through the ``ip`` and
``bridge`` commands.
"""

from __future__ import annotations

import errno
import ipaddress
import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any, Optional, Union

from .iface import (
    ensure_v4_address_on_link,
    ensure_v6_address_on_link,
    interface_by_index,
    interface_by_name,
)
from .ip4 import IP4, IP4Net
from .ip6 import IP6, IP6Net

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

ENCAP_OVERHEAD = 50


def _new_hardware_addr() -> str:
    """A random unicast, locally administered MAC address."""
    raw = bytearray(os.urandom(6))
    raw[0] = (raw[0] & 0xFE) | 0x02
    return ":".join(f"{b:02x}" for b in raw)


def _run(*cmd: str) -> str:
    proc = subprocess.run(list(cmd), capture_output=True, text=True, check=False)
    if proc.returncode != 0:
        message = (proc.stderr or proc.stdout or "").strip()
        message = message or f"{cmd[0]} exited with status {proc.returncode}"
        if "File exists" in message:
            raise FileExistsError(errno.EEXIST, message)
        raise OSError(message)
    return proc.stdout


def _optional_address(value: Any) -> Optional[IPAddress]:
    if value is None or value == "":
        return None
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    return ipaddress.ip_address(str(value))


def _go_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass
class VxlanDeviceAttrs:
    """What a VXLAN device should be created with."""

    vni: int
    name: str
    mtu: int
    vtep_index: int = 0
    vtep_addr: Optional[IPAddress] = None
    vtep_port: int = 0
    gbp: bool = False
    learning: bool = False
    hw_addr: Optional[str] = None


@dataclass
class VxlanLink:
    """A link as the kernel reports it, with its VXLAN settings."""

    name: str
    hardware_addr: str = ""
    mtu: int = 0
    vxlan_id: int = 0
    vtep_dev_index: int = 0
    src_addr: Optional[IPAddress] = None
    port: int = 0
    learning: bool = False
    gbp: bool = False
    group: Optional[IPAddress] = None
    l2miss: bool = False
    index: int = 0
    link_type: str = "vxlan"

    def __post_init__(self) -> None:
        self.hardware_addr = (self.hardware_addr or "").lower()
        self.src_addr = _optional_address(self.src_addr)
        self.group = _optional_address(self.group)


@dataclass(frozen=True)
class Neighbor:
    """A remote VTEP: its MAC and its IPv4 or IPv6 address."""

    mac: str
    ip: IP4 = IP4(0)
    ip6: Optional[IP6] = None


def _dev_index(name: Optional[str]) -> int:
    if not name:
        return 0
    try:
        return interface_by_name(name).index
    except (LookupError, OSError):
        return 0


def _link_from_json(entry: dict[str, Any]) -> VxlanLink:
    info = entry.get("linkinfo") or {}
    data = info.get("info_data") or {}
    return VxlanLink(
        name=entry.get("ifname", ""),
        hardware_addr=entry.get("address", ""),
        mtu=int(entry.get("mtu", 0)),
        vxlan_id=int(data.get("id", 0)),
        vtep_dev_index=_dev_index(data.get("link")),
        src_addr=data.get("local") or data.get("local6"),
        port=int(data.get("port", 0)),
        learning=bool(data.get("learning", False)),
        gbp=bool(data.get("gbp", False)),
        group=data.get("group") or data.get("group6"),
        l2miss=bool(data.get("l2miss", False)),
        index=int(entry.get("ifindex", 0)),
        link_type=info.get("info_kind", ""),
    )


def _read_link(name: str) -> VxlanLink:
    out = _run("ip", "-d", "-j", "link", "show", "dev", name)
    entries = json.loads(out) if out.strip() else []
    if not entries:
        raise LookupError(f"no such link: {name}")
    return _link_from_json(entries[0])


def _add_link(vxlan: VxlanLink) -> None:
    cmd = ["ip", "link", "add", vxlan.name]
    if vxlan.hardware_addr:
        cmd += ["address", vxlan.hardware_addr]
    if vxlan.mtu > 0:
        cmd += ["mtu", str(vxlan.mtu)]
    cmd += ["type", "vxlan", "id", str(vxlan.vxlan_id)]
    if vxlan.vtep_dev_index > 0:
        cmd += ["dev", interface_by_index(vxlan.vtep_dev_index).name]
    if vxlan.src_addr is not None:
        cmd += ["local", str(vxlan.src_addr)]
    if vxlan.group is not None:
        cmd += ["group", str(vxlan.group)]
    if vxlan.port > 0:
        cmd += ["dstport", str(vxlan.port)]
    cmd.append("learning" if vxlan.learning else "nolearning")
    if vxlan.l2miss:
        cmd.append("l2miss")
    if vxlan.gbp:
        cmd.append("gbp")
    _run(*cmd)


def vxlan_links_incompat(l1: VxlanLink, l2: VxlanLink) -> str:
    """Why two links cannot stand for each other, or "" when they can."""
    if l1.link_type != l2.link_type:
        return f"link type: {l1.link_type} vs {l2.link_type}"
    if l1.vxlan_id != l2.vxlan_id:
        return f"vni: {l1.vxlan_id} vs {l2.vxlan_id}"
    if l1.vtep_dev_index > 0 and l2.vtep_dev_index > 0 and l1.vtep_dev_index != l2.vtep_dev_index:
        return f"vtep (external) interface: {l1.vtep_dev_index} vs {l2.vtep_dev_index}"
    if l1.src_addr is not None and l2.src_addr is not None and l1.src_addr != l2.src_addr:
        return f"vtep (external) IP: {l1.src_addr} vs {l2.src_addr}"
    if l1.group is not None and l2.group is not None and l1.group != l2.group:
        return f"group address: {l1.group} vs {l2.group}"
    if l1.l2miss != l2.l2miss:
        return f"l2miss: {_go_value(l1.l2miss)} vs {_go_value(l2.l2miss)}"
    if l1.port > 0 and l2.port > 0 and l1.port != l2.port:
        return f"port: {l1.port} vs {l2.port}"
    if l1.gbp != l2.gbp:
        return f"gbp: {_go_value(l1.gbp)} vs {_go_value(l2.gbp)}"
    return ""


def ensure_link(vxlan: VxlanLink) -> VxlanLink:
    """Create the link, reusing a compatible one that already exists."""
    try:
        _add_link(vxlan)
    except FileExistsError:
        log.debug("VXLAN device already exists")
        existing = _read_link(vxlan.name)
        incompat = vxlan_links_incompat(vxlan, existing)
        if not incompat:
            log.debug("Returning existing device")
            return existing
        log.warning(
            "%r already exists with incompatible configuration: %s; recreating device",
            vxlan.name,
            incompat,
        )
        try:
            _run("ip", "link", "del", vxlan.name)
        except OSError as err:
            raise OSError(f"failed to delete interface: {err}") from err
        try:
            _add_link(vxlan)
        except OSError as err:
            raise OSError(f"failed to create vxlan interface: {err}") from err

    try:
        link = _read_link(vxlan.name)
    except (OSError, LookupError, ValueError) as err:
        raise LookupError(f"can't locate created vxlan device {vxlan.name}") from err
    if link.link_type != "vxlan":
        raise ValueError(f"created vxlan device {vxlan.name} is not vxlan")
    return link


@dataclass
class VxlanDevice:
    """A VXLAN device and the entries that steer traffic through it."""

    link: VxlanLink
    direct_routing: bool = False

    @property
    def name(self) -> str:
        return self.link.name

    def mac_addr(self) -> str:
        return self.link.hardware_addr

    def _set_up(self, label: str) -> None:
        try:
            _run("ip", "link", "set", "dev", self.name, "up")
        except OSError as err:
            raise OSError(f"failed to set {label}interface {self.name} to UP state: {err}") from err

    def _check_mac(self, label: str) -> None:
        try:
            current = _read_link(self.name)
        except (OSError, LookupError, ValueError):
            return
        if current.link_type == "vxlan" and current.hardware_addr != self.mac_addr().lower():
            raise ValueError(
                f"{self.name}'s {label}mac address wanted: {self.mac_addr()}, "
                f"but got: {current.hardware_addr}"
            )

    def configure(self, ipa: IP4Net, flannelnet: IP4Net) -> None:
        """Give the device its IPv4 address, bring it up and check its MAC."""
        try:
            ensure_v4_address_on_link(ipa, flannelnet, self.name)
        except (OSError, ValueError) as err:
            raise OSError(f"failed to ensure address of interface {self.name}: {err}") from err
        self._set_up("")
        self._check_mac("")

    def configure_ipv6(self, ipn: IP6Net, flannelnet: IP6Net) -> None:
        """Give the device its IPv6 address, bring it up and check its MAC."""
        try:
            ensure_v6_address_on_link(ipn, flannelnet, self.name)
        except (OSError, ValueError) as err:
            raise OSError(f"failed to ensure v6 address of interface {self.name}: {err}") from err
        self._set_up("v6 ")
        self._check_mac("v6 ")

    @staticmethod
    def _v6(n: Neighbor) -> str:
        if n.ip6 is None:
            raise ValueError("neighbor has no IPv6 address")
        return str(n.ip6)

    def add_fdb(self, n: Neighbor) -> None:
        log.debug("calling AddFDB: %s, %s", n.ip, n.mac)
        _run("bridge", "fdb", "replace", n.mac, "dev", self.name, "dst", str(n.ip), "self", "permanent")

    def add_v6_fdb(self, n: Neighbor) -> None:
        log.debug("calling AddV6FDB: %s, %s", n.ip6, n.mac)
        _run("bridge", "fdb", "replace", n.mac, "dev", self.name, "dst", self._v6(n), "self", "permanent")

    def del_fdb(self, n: Neighbor) -> None:
        log.debug("calling DelFDB: %s, %s", n.ip, n.mac)
        _run("bridge", "fdb", "del", n.mac, "dev", self.name, "dst", str(n.ip), "self")

    def del_v6_fdb(self, n: Neighbor) -> None:
        log.debug("calling DelV6FDB: %s, %s", n.ip6, n.mac)
        _run("bridge", "fdb", "del", n.mac, "dev", self.name, "dst", self._v6(n), "self")

    def add_arp(self, n: Neighbor) -> None:
        log.debug("calling AddARP: %s, %s", n.ip, n.mac)
        _run("ip", "neigh", "replace", str(n.ip), "lladdr", n.mac, "dev", self.name, "nud", "permanent")

    def add_v6_arp(self, n: Neighbor) -> None:
        log.debug("calling AddV6ARP: %s, %s", n.ip6, n.mac)
        _run("ip", "neigh", "replace", self._v6(n), "lladdr", n.mac, "dev", self.name, "nud", "permanent")

    def del_arp(self, n: Neighbor) -> None:
        log.debug("calling DelARP: %s, %s", n.ip, n.mac)
        _run("ip", "neigh", "del", str(n.ip), "lladdr", n.mac, "dev", self.name)

    def del_v6_arp(self, n: Neighbor) -> None:
        log.debug("calling DelV6ARP: %s, %s", n.ip6, n.mac)
        _run("ip", "neigh", "del", self._v6(n), "lladdr", n.mac, "dev", self.name)


def new_vxlan_device(dev_attrs: VxlanDeviceAttrs) -> VxlanDevice:
    """Create (or reuse) the VXLAN device the attributes describe."""
    hardware_addr = dev_attrs.hw_addr or _new_hardware_addr()
    link = VxlanLink(
        name=dev_attrs.name,
        hardware_addr=hardware_addr,
        mtu=dev_attrs.mtu - ENCAP_OVERHEAD,
        vxlan_id=dev_attrs.vni,
        vtep_dev_index=dev_attrs.vtep_index,
        src_addr=dev_attrs.vtep_addr,
        port=dev_attrs.vtep_port,
        learning=dev_attrs.learning,
        gbp=dev_attrs.gbp,
    )
    link = ensure_link(link)
    try:
        with open(f"/proc/sys/net/ipv6/conf/{dev_attrs.name}/accept_ra", "w") as f:
            f.write("0")
    except OSError:
        pass
    return VxlanDevice(link)