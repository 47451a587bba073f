"""What the VXLAN backend publishes in a lease, and its configuration."""

from __future__ import annotations

import json
import string
from dataclasses import dataclass
from typing import Any, Optional, Union

from .ip4 import from_ip
from .ip6 import from_ip6
from .lease import LeaseAttrs
from .vxlan_device import VxlanDevice

DEFAULT_VNI = 1
BACKEND_TYPE = "vxlan"

_MAC_LENGTHS = (6, 8, 20)
_HEX = set(string.hexdigits)


def _parse_mac(s: str) -> bytes:
    err = ValueError(f"address {s}: invalid MAC address")
    if len(s) < 14:
        raise err
    if s[2] in ":-":
        parts = s.split(s[2])
        if any(len(p) != 2 for p in parts):
            raise err
    elif s[4] == ".":
        groups = s.split(".")
        if any(len(g) != 4 for g in groups):
            raise err
        parts = [g[i : i + 2] for g in groups for i in (0, 2)]
    else:
        raise err
    if any(c not in _HEX for p in parts for c in p):
        raise err
    raw = bytes(int(p, 16) for p in parts)
    if len(raw) not in _MAC_LENGTHS:
        raise err
    return raw


def format_hardware_addr(hw: Union[str, bytes, bytearray, None]) -> str:
    """A hardware address as lower-case, colon-separated hex ("" when absent)."""
    if not hw:
        return ""
    raw = _parse_mac(hw) if isinstance(hw, str) else bytes(hw)
    return ":".join(f"{b:02x}" for b in raw)


def parse_hardware_addr(data: Union[str, bytes]) -> str:
    """Read a hardware address from its JSON string form."""
    text = data.decode() if isinstance(data, (bytes, bytearray)) else data
    if len(text) < 2 or text[0] != '"' or text[-1] != '"':
        raise ValueError("error parsing hardware addr")
    return format_hardware_addr(_parse_mac(text[1:-1]))


def _decode_object(data: Union[str, bytes, dict]) -> dict[str, Any]:
    obj = data if isinstance(data, dict) else json.loads(data)
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return obj


@dataclass
class VxlanLeaseAttrs:
    """The VNI and VTEP MAC a host announces for its VXLAN device."""

    vni: int = 0
    vtep_mac: str = ""

    def to_json(self) -> str:
        return json.dumps(
            {"VNI": self.vni, "VtepMAC": format_hardware_addr(self.vtep_mac)},
            separators=(",", ":"),
        )


def vxlan_lease_attrs_from_json(data: Union[str, bytes, dict]) -> VxlanLeaseAttrs:
    """Decode lease backend data; field names match case-insensitively."""
    attrs = VxlanLeaseAttrs()
    for key, value in _decode_object(data).items():
        name = key.lower()
        if name == "vni":
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < 1 << 32:
                raise ValueError(f"invalid VNI: {value!r}")
            attrs.vni = value
        elif name == "vtepmac":
            attrs.vtep_mac = parse_hardware_addr(json.dumps(value))
    return attrs


def new_subnet_attrs(
    public_ip: Any,
    public_ipv6: Any,
    vnid: int,
    dev: Optional[VxlanDevice],
    v6_dev: Optional[VxlanDevice],
) -> LeaseAttrs:
    """Lease attributes for the families that have both an address and a device."""
    attrs = LeaseAttrs(backend_type=BACKEND_TYPE)
    if public_ip is not None and dev is not None:
        attrs.public_ip = from_ip(public_ip)
        attrs.backend_data = VxlanLeaseAttrs(vnid, dev.mac_addr()).to_json()
    if public_ipv6 is not None and v6_dev is not None:
        attrs.public_ipv6 = from_ip6(public_ipv6)
        attrs.backend_v6_data = VxlanLeaseAttrs(vnid, v6_dev.mac_addr()).to_json()
    return attrs


@dataclass
class VxlanConfig:
    """Settings of the VXLAN backend."""

    vni: int = DEFAULT_VNI
    port: int = 0
    mtu: int = 0
    gbp: bool = False
    learning: bool = False
    direct_routing: bool = False


_INT_FIELDS = {"vni": "vni", "port": "port", "mtu": "mtu"}
_BOOL_FIELDS = {"gbp": "gbp", "learning": "learning", "directrouting": "direct_routing"}


def parse_vxlan_config(
    backend: Union[str, bytes, dict, None], default_mtu: int
) -> VxlanConfig:
    """Read the backend section of the network config over the defaults."""
    cfg = VxlanConfig(vni=DEFAULT_VNI, mtu=default_mtu)
    if not backend:
        return cfg
    try:
        obj = _decode_object(backend)
        for key, value in obj.items():
            name = key.lower()
            if value is None:
                continue
            if name in _INT_FIELDS:
                if isinstance(value, bool) or not isinstance(value, int):
                    raise ValueError(f"{key} must be an integer, got {value!r}")
                setattr(cfg, _INT_FIELDS[name], value)
            elif name in _BOOL_FIELDS:
                if not isinstance(value, bool):
                    raise ValueError(f"{key} must be a boolean, got {value!r}")
                setattr(cfg, _BOOL_FIELDS[name], value)
    except ValueError as err:
        raise ValueError(f"error decoding VXLAN backend config: {err}") from err
    return cfg