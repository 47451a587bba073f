"""The WireGuard backend: lease attributes and peers that follow remote leases."""

from __future__ import annotations

import enum
import ipaddress
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Protocol, Union

from .ip4 import IP4, from_ip
from .ip6 import IP6, from_ip6
from .ipmatch import ExternalInterface
from .lease import Event, EventType, Lease, LeaseAttrs, NetworkConfig

log = logging.getLogger(__name__)

BACKEND_TYPE = "wireguard"
DEFAULT_LISTEN_PORT = 51820
DEFAULT_LISTEN_PORT_V6 = 51821

# IP header (20 or 40), UDP header (8), type (4), key index (4), nonce (8)
# and authentication tag (16).
OVERHEAD = 80

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


class Mode(str, enum.Enum):
    """How IPv4 and IPv6 traffic is spread over WireGuard devices."""

    SEPARATE = "separate"
    AUTO = "auto"
    IPV4 = "ipv4"
    IPV6 = "ipv6"


@dataclass
class WireguardLeaseAttrs:
    """The public key and port a host announces for its WireGuard device."""

    public_key: str = ""
    port: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {"PublicKey": self.public_key, "Port": self.port}, separators=(",", ":")
        )

    @classmethod
    def from_json(cls, data: Union[str, bytes, dict]) -> "WireguardLeaseAttrs":
        """Decode lease backend data; field names match case-insensitively."""
        obj = data if isinstance(data, dict) else json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("expected a JSON object")
        attrs = cls()
        for key, value in obj.items():
            name = key.lower()
            if value is None:
                continue
            if name == "publickey":
                if not isinstance(value, str):
                    raise ValueError(f"invalid PublicKey: {value!r}")
                attrs.public_key = value
            elif name == "port":
                if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < 1 << 16:
                    raise ValueError(f"invalid Port: {value!r}")
                attrs.port = value
        return attrs


def new_subnet_attrs(
    public_ip: Any,
    public_ipv6: Any,
    enable_ipv4: bool,
    enable_ipv6: bool,
    public_key: str,
    v4_port: int,
    v6_port: int,
) -> LeaseAttrs:
    """Lease attributes carrying the public key and a port per enabled family."""
    v4_data = WireguardLeaseAttrs(public_key, v4_port).to_json()
    v6_data = WireguardLeaseAttrs(public_key, v6_port).to_json()
    attrs = LeaseAttrs(backend_type=BACKEND_TYPE)
    if public_ip is not None:
        attrs.public_ip = from_ip(public_ip)
    if enable_ipv4:
        attrs.backend_data = v4_data
    if public_ipv6 is not None:
        attrs.public_ipv6 = from_ip6(public_ipv6)
    if enable_ipv6:
        attrs.backend_v6_data = v6_data
    return attrs


class _WgDevice(Protocol):
    listen_port: int

    def add_peer(self, endpoint: str, public_key: str, allowed_ips: list[IPNetwork]) -> None: ...

    def remove_peer(self, public_key: str) -> None: ...

    def add_route(self, dst: IPNetwork) -> None: ...


class _SubnetManager(Protocol):
    def get_network_config(self) -> NetworkConfig: ...

    def watch_leases(self, own_lease: Lease) -> Iterable[list[Event]]: ...


def _network(n: Any) -> IPNetwork:
    return ipaddress.ip_network(str(n.to_ip_network()), strict=False)


class WireguardNetwork:
    """The local lease and WireGuard devices, kept in step with remote leases."""

    def __init__(
        self,
        sm: _SubnetManager,
        ext_iface: ExternalInterface,
        dev: Optional[_WgDevice],
        v6_dev: Optional[_WgDevice],
        mode: Mode,
        lease: Lease,
        mtu: int,
    ) -> None:
        self.sm = sm
        self.ext_iface = ext_iface
        self.dev = dev
        self.v6_dev = v6_dev
        self.mode = Mode(mode)
        self._lease = lease
        self._mtu = mtu

    def lease(self) -> Lease:
        return self._lease

    def mtu(self) -> int:
        """The MTU left for workloads once WireGuard encapsulation is paid for."""
        return self._mtu - OVERHEAD

    def run(self) -> None:
        """Apply lease events until the manager stops sending them."""
        log.info("Watching for new subnet leases")
        for batch in self.sm.watch_leases(self._lease):
            self.handle_subnet_events(batch)

    def select_mode(self, ip4: IP4, ip6: Optional[IP6]) -> Mode:
        """The family most likely to reach a peer with these public addresses.

        IPv4 is preferred when the peer's IPv4 address is public and there is
        a local external IPv4 address; IPv6 is used when both the peer's and
        the local external IPv6 addresses are public; otherwise IPv4.
        """
        if ip6 is None:
            return Mode.IPV4
        if not ip4.is_private() and self.ext_iface.ext_addr is not None:
            return Mode.IPV4
        ext_v6 = self.ext_iface.ext_v6_addr
        if not ip6.is_private() and ext_v6 is not None and not from_ip6(ext_v6).is_private():
            return Mode.IPV6
        return Mode.IPV4

    def handle_subnet_events(self, batch: Iterable[Event]) -> None:
        """Add or remove peers and routes for each remote lease."""
        for event in batch:
            if event.type == EventType.ADDED:
                self._handle_added(event.lease)
            elif event.type == EventType.REMOVED:
                self._handle_removed(event.lease)
            else:
                log.error("Internal error: unknown event type: %s", event.type)

    @staticmethod
    def _decode(data: Any) -> WireguardLeaseAttrs:
        if not data:
            return WireguardLeaseAttrs()
        return WireguardLeaseAttrs.from_json(data)

    def _network_config(self) -> Optional[NetworkConfig]:
        try:
            return self.sm.get_network_config()
        except Exception as err:  # noqa: BLE001 - reported and skipped
            log.error("could not read network config: %s", err)
            return None

    @staticmethod
    def _add_peer(
        dev: Optional[_WgDevice],
        endpoint: str,
        public_key: str,
        allowed: list[IPNetwork],
        label: str,
    ) -> None:
        if dev is None:
            log.error("failed to setup %speer (%s): no device", label, public_key)
            return
        try:
            dev.add_peer(endpoint, public_key, allowed)
        except Exception as err:  # noqa: BLE001
            log.error("failed to setup %speer (%s): %s", label, public_key, err)

    @staticmethod
    def _add_route(dev: Optional[_WgDevice], net: Any, label: str) -> None:
        if dev is None or net is None or net.empty():
            log.debug("no %s route to add for %s", label, net)
            return
        try:
            dev.add_route(_network(net))
        except Exception as err:  # noqa: BLE001
            log.error("failed to add %s route to (%s): %s", label, net, err)

    def _handle_added(self, lease: Lease) -> None:
        attrs = lease.attrs
        if attrs.backend_type != BACKEND_TYPE:
            log.warning("Ignoring non-wireguard subnet: type=%s", attrs.backend_type)
            return

        v4_attrs = WireguardLeaseAttrs()
        v6_attrs = WireguardLeaseAttrs()
        wg_attrs = WireguardLeaseAttrs()
        subnets: list[IPNetwork] = []
        if lease.enable_ipv4:
            try:
                v4_attrs = self._decode(attrs.backend_data)
            except (ValueError, TypeError) as err:
                log.error("failed to unmarshal BackendData: %s", err)
                return
            wg_attrs = v4_attrs
            subnets.append(_network(lease.subnet))
        if lease.enable_ipv6:
            try:
                v6_attrs = self._decode(attrs.backend_v6_data)
            except (ValueError, TypeError) as err:
                log.error("failed to unmarshal BackendData: %s", err)
                return
            wg_attrs = v6_attrs
            subnets.append(_network(lease.ipv6_subnet))

        # Older peers announce no port; they listen on the device's port.
        v4_port = v4_attrs.port
        if v4_port == 0 and self.dev is not None:
            v4_port = self.dev.listen_port & 0xFFFF
        v6_port = v6_attrs.port
        if v6_port == 0 and self.v6_dev is not None:
            v6_port = self.v6_dev.listen_port & 0xFFFF
        v4_endpoint = f"{attrs.public_ip}:{v4_port}"
        v6_endpoint = ""
        if attrs.public_ipv6 is not None:
            v6_endpoint = f"[{attrs.public_ipv6}]:{v6_port}"

        if self.mode == Mode.SEPARATE:
            if lease.enable_ipv4:
                log.info("Subnet added: %s via %s", lease.subnet, v4_endpoint)
                self._add_peer(
                    self.dev, v4_endpoint, v4_attrs.public_key, [_network(lease.subnet)], "ipv4 "
                )
                netconf = self._network_config()
                if netconf is not None:
                    self._add_route(self.dev, netconf.network, "ipv4")
            if lease.enable_ipv6:
                log.info("Subnet added: %s via %s", lease.ipv6_subnet, v6_endpoint)
                self._add_peer(
                    self.v6_dev,
                    v6_endpoint,
                    v6_attrs.public_key,
                    [_network(lease.ipv6_subnet)],
                    "ipv6 ",
                )
                netconf = self._network_config()
                if netconf is not None:
                    self._add_route(self.v6_dev, netconf.ipv6_network, "ipv6")
            return

        mode = self.mode
        if mode not in (Mode.IPV4, Mode.IPV6):
            mode = self.select_mode(attrs.public_ip, attrs.public_ipv6)
        endpoint = v4_endpoint if mode == Mode.IPV4 else v6_endpoint
        log.info("Subnet(s) added: %s via %s", [str(s) for s in subnets], endpoint)
        self._add_peer(self.dev, endpoint, wg_attrs.public_key, list(subnets), "")
        netconf = self._network_config()
        if netconf is not None:
            self._add_route(self.dev, netconf.network, "ipv4")
            self._add_route(self.dev, netconf.ipv6_network, "ipv6")

    def _handle_removed(self, lease: Lease) -> None:
        attrs = lease.attrs
        if attrs.backend_type != BACKEND_TYPE:
            log.warning("Ignoring non-wireguard subnet: type=%s", attrs.backend_type)
            return

        wg_attrs = WireguardLeaseAttrs()
        if lease.enable_ipv4 and self.dev is not None:
            log.info("Subnet removed: %s", lease.subnet)
            try:
                wg_attrs = self._decode(attrs.backend_data)
            except (ValueError, TypeError) as err:
                log.error("failed to unmarshal BackendData: %s", err)
                return
            try:
                self.dev.remove_peer(wg_attrs.public_key)
            except Exception as err:  # noqa: BLE001
                log.error("failed to remove ipv4 peer (%s): %s", wg_attrs.public_key, err)

        if lease.enable_ipv6:
            log.info("Subnet removed: %s", lease.ipv6_subnet)
            try:
                if attrs.backend_v6_data:
                    wg_attrs = WireguardLeaseAttrs.from_json(attrs.backend_v6_data)
            except (ValueError, TypeError) as err:
                log.error("failed to unmarshal BackendData: %s", err)
                return
            if self.mode == Mode.SEPARATE and self.v6_dev is not None:
                dev = self.v6_dev
            else:
                dev = self.dev
            try:
                if dev is None:
                    raise LookupError("no device")
                dev.remove_peer(wg_attrs.public_key)
            except Exception as err:  # noqa: BLE001
                log.error("failed to remove ipv6 peer (%s): %s", wg_attrs.public_key, err)