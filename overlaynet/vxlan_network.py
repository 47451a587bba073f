"""The VXLAN backend: registering the local host and following remote leases."""

from __future__ import annotations

import ipaddress
import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar, Union

from .iface import direct_routing
from .ip4 import IP4Net
from .ip6 import IP6Net
from .ipmatch import ExternalInterface
from .lease import Event, EventType, Lease, LeaseAttrs, NetworkConfig
from .vxlan_device import (
    ENCAP_OVERHEAD,
    Neighbor,
    VxlanDevice,
    VxlanDeviceAttrs,
    new_vxlan_device,
)
from .vxlan_lease import (
    BACKEND_TYPE,
    VxlanLeaseAttrs,
    format_hardware_addr,
    new_subnet_attrs,
    parse_vxlan_config,
    vxlan_lease_attrs_from_json,
)

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
T = TypeVar("T")

DEFAULT_RETRY_ATTEMPTS = 5
DEFAULT_RETRY_DELAY = 1.0


class _SubnetManager(Protocol):
    def get_stored_mac_addresses(self) -> tuple[str, str]: ...

    def acquire_lease(self, attrs: LeaseAttrs) -> Lease: ...

    def watch_leases(self, own_lease: Lease) -> Iterable[list[Event]]: ...


@dataclass(frozen=True)
class _Route:
    """A route to ``dst`` via ``gw``, optionally pinned on-link to a device."""

    dst: IPNetwork
    gw: IPAddress
    dev: Optional[str] = None
    onlink: bool = False

    def _args(self) -> list[str]:
        args = [str(self.dst), "via", str(self.gw)]
        if self.dev:
            args += ["dev", self.dev]
        if self.onlink:
            args.append("onlink")
        return args


class _IPRouteTable:
    """Routes of the host, changed through the ``ip`` command."""

    @staticmethod
    def _run(*args: str) -> None:
        proc = subprocess.run(["ip", *args], capture_output=True, text=True, check=False)
        if proc.returncode != 0:
            message = (proc.stderr or proc.stdout or "").strip()
            raise OSError(message or f"ip exited with status {proc.returncode}")

    def replace(self, route: _Route) -> None:
        self._run("route", "replace", *route._args())

    def delete(self, route: _Route) -> None:
        self._run("route", "del", *route._args())

    def is_direct(self, ip: IPAddress) -> bool:
        return direct_routing(ip)


def _network_of(n: Union[ipaddress.IPv4Interface, ipaddress.IPv6Interface]) -> IPNetwork:
    return n.network


class VxlanNetwork:
    """The local lease and devices, kept in step with the leases of other hosts."""

    def __init__(
        self,
        subnet_mgr: _SubnetManager,
        ext_iface: ExternalInterface,
        dev: Optional[VxlanDevice],
        v6_dev: Optional[VxlanDevice],
        subnet_lease: Lease,
        mtu: int,
        route_table: Any = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.subnet_mgr = subnet_mgr
        self.ext_iface = ext_iface
        self.dev = dev
        self.v6_dev = v6_dev
        self.subnet_lease = subnet_lease
        self._mtu = mtu
        self.route_table = route_table if route_table is not None else _IPRouteTable()
        self._retry_attempts = max(1, retry_attempts)
        self._retry_delay = retry_delay

    def mtu(self) -> int:
        """The MTU left for workloads once VXLAN encapsulation is paid for."""
        return self._mtu - ENCAP_OVERHEAD

    def run(self) -> None:
        """Apply lease events until the manager stops sending them."""
        log.info("watching for new subnet leases")
        for batch in self.subnet_mgr.watch_leases(self.subnet_lease):
            self.handle_subnet_events(batch)
        log.info("evts chan closed")

    def _retry(self, fn: Callable[[], T]) -> T:
        last: Optional[Exception] = None
        for attempt in range(self._retry_attempts):
            try:
                return fn()
            except Exception as err:  # noqa: BLE001 - any failure is retried
                last = err
                if attempt + 1 < self._retry_attempts and self._retry_delay > 0:
                    time.sleep(self._retry_delay)
        assert last is not None
        raise last

    def _try(self, fn: Callable[[], Any], message: str) -> bool:
        try:
            self._retry(fn)
        except Exception as err:  # noqa: BLE001
            log.error("%s: %s", message, err)
            return False
        return True

    def handle_subnet_events(self, batch: Iterable[Event]) -> None:
        """Add or remove the routes and entries for each remote lease."""
        for event in batch:
            self._handle_event(event)

    def _handle_event(self, event: Event) -> None:
        lease = event.lease
        sn, v6_sn, attrs = lease.subnet, lease.ipv6_subnet, lease.attrs
        log.info("Received Subnet Event with VxLan: %s", attrs)
        if attrs.backend_type != BACKEND_TYPE:
            log.warning(
                "ignoring non-vxlan v4Subnet(%s) v6Subnet(%s): type=%s",
                sn, v6_sn, attrs.backend_type,
            )
            return

        vxlan_attrs = VxlanLeaseAttrs()
        v6_vxlan_attrs = VxlanLeaseAttrs()
        direct_ok = v6_direct_ok = False
        direct_route: Optional[_Route] = None
        vxlan_route: Optional[_Route] = None
        v6_direct_route: Optional[_Route] = None
        v6_vxlan_route: Optional[_Route] = None

        if lease.enable_ipv4 and self.dev is not None:
            try:
                vxlan_attrs = vxlan_lease_attrs_from_json(attrs.backend_data)
            except (ValueError, TypeError) as err:
                log.error("error decoding subnet lease JSON: %s", err)
                return
            dst = _network_of(sn.to_ip_network())
            vxlan_route = _Route(dst, sn.ip.to_ip(), dev=self.dev.name, onlink=True)
            direct_route = _Route(dst, attrs.public_ip.to_ip())
            if self.dev.direct_routing:
                try:
                    direct_ok = bool(self.route_table.is_direct(attrs.public_ip.to_ip()))
                except (OSError, ValueError, LookupError) as err:
                    log.error("%s", err)

        if lease.enable_ipv6 and self.v6_dev is not None:
            try:
                v6_vxlan_attrs = vxlan_lease_attrs_from_json(attrs.backend_v6_data)
            except (ValueError, TypeError) as err:
                log.error("error decoding v6 subnet lease JSON: %s", err)
                return
            if v6_sn.ip is not None:
                dst6 = _network_of(v6_sn.to_ip_network())
                v6_vxlan_route = _Route(
                    dst6, ipaddress.IPv6Address(int(v6_sn.ip)), dev=self.v6_dev.name, onlink=True
                )
                gw6 = (
                    ipaddress.IPv6Address(int(attrs.public_ipv6))
                    if attrs.public_ipv6 is not None
                    else None
                )
                if gw6 is not None:
                    v6_direct_route = _Route(dst6, gw6)
                    if self.v6_dev.direct_routing:
                        try:
                            v6_direct_ok = bool(self.route_table.is_direct(gw6))
                        except (OSError, ValueError, LookupError) as err:
                            log.error("%s", err)

        if event.type == EventType.ADDED:
            if lease.enable_ipv4 and not self._add_v4(
                lease, vxlan_attrs, direct_ok, direct_route, vxlan_route
            ):
                return
            if lease.enable_ipv6:
                self._add_v6(lease, v6_vxlan_attrs, v6_direct_ok, v6_direct_route, v6_vxlan_route)
        elif event.type == EventType.REMOVED:
            if lease.enable_ipv4:
                self._remove_v4(lease, vxlan_attrs, direct_ok, direct_route, vxlan_route)
            if lease.enable_ipv6:
                self._remove_v6(lease, v6_vxlan_attrs, v6_direct_ok, v6_direct_route, v6_vxlan_route)
        else:
            log.error("internal error: unknown event type: %s", event.type)

    def _add_v4(
        self,
        lease: Lease,
        vxlan_attrs: VxlanLeaseAttrs,
        direct_ok: bool,
        direct_route: Optional[_Route],
        vxlan_route: Optional[_Route],
    ) -> bool:
        sn, attrs = lease.subnet, lease.attrs
        dev = self.dev
        if dev is None or vxlan_route is None or direct_route is None:
            log.error("no IPv4 vxlan device to add subnet %s", sn)
            return False
        if direct_ok:
            log.debug("Adding direct route to subnet: %s PublicIP: %s", sn, attrs.public_ip)
            return self._try(
                lambda: self.route_table.replace(direct_route),
                f"Error adding route to {sn} via {attrs.public_ip}",
            )

        mac = vxlan_attrs.vtep_mac
        log.debug("adding subnet: %s PublicIP: %s VtepMAC: %s", sn, attrs.public_ip, mac)
        arp = Neighbor(mac=mac, ip=sn.ip)
        fdb = Neighbor(mac=mac, ip=attrs.public_ip)
        if not self._try(lambda: dev.add_arp(arp), "AddARP failed"):
            return False
        if not self._try(lambda: dev.add_fdb(fdb), "AddFDB failed"):
            self._try(lambda: dev.del_arp(arp), "DelARP failed")
            return False
        # The kernel would ARP for the gateway unless the entries above exist.
        if not self._try(
            lambda: self.route_table.replace(vxlan_route),
            f"failed to add vxlanRoute ({vxlan_route.dst} -> {vxlan_route.gw})",
        ):
            for action, label in ((dev.del_arp, "DelARP failed"), (dev.del_fdb, "DelFDB failed")):
                try:
                    action(arp if action == dev.del_arp else fdb)
                except Exception as err:  # noqa: BLE001
                    log.error("%s: %s", label, err)
            return False
        return True

    def _add_v6(
        self,
        lease: Lease,
        vxlan_attrs: VxlanLeaseAttrs,
        direct_ok: bool,
        direct_route: Optional[_Route],
        vxlan_route: Optional[_Route],
    ) -> bool:
        v6_sn, attrs = lease.ipv6_subnet, lease.attrs
        dev = self.v6_dev
        if direct_ok and direct_route is not None:
            log.debug("Adding v6 direct route to v6 subnet: %s PublicIPv6: %s", v6_sn, attrs.public_ipv6)
            return self._try(
                lambda: self.route_table.replace(direct_route),
                f"Error adding v6 route to {v6_sn} via {attrs.public_ipv6}",
            )
        if dev is None or vxlan_route is None or v6_sn.ip is None:
            log.error("no IPv6 vxlan device to add subnet %s", v6_sn)
            return False

        mac = vxlan_attrs.vtep_mac
        log.debug("adding v6 subnet: %s PublicIPv6: %s VtepMAC: %s", v6_sn, attrs.public_ipv6, mac)
        arp = Neighbor(mac=mac, ip6=v6_sn.ip)
        fdb = Neighbor(mac=mac, ip6=attrs.public_ipv6)
        if not self._try(lambda: dev.add_v6_arp(arp), "AddV6ARP failed"):
            return False
        if not self._try(lambda: dev.add_v6_fdb(fdb), "AddV6FDB failed"):
            try:
                dev.del_v6_arp(arp)
            except Exception as err:  # noqa: BLE001
                log.error("DelV6ARP failed: %s", err)
            return False
        if not self._try(
            lambda: self.route_table.replace(vxlan_route),
            f"failed to add v6 vxlanRoute ({vxlan_route.dst} -> {vxlan_route.gw})",
        ):
            self._try(lambda: dev.del_v6_arp(arp), "DelV6ARP failed")
            self._try(lambda: dev.del_v6_fdb(fdb), "DelV6FDB failed")
            return False
        return True

    def _remove_v4(
        self,
        lease: Lease,
        vxlan_attrs: VxlanLeaseAttrs,
        direct_ok: bool,
        direct_route: Optional[_Route],
        vxlan_route: Optional[_Route],
    ) -> None:
        sn, attrs = lease.subnet, lease.attrs
        dev = self.dev
        if direct_ok and direct_route is not None:
            log.debug("Removing direct route to subnet: %s PublicIP: %s", sn, attrs.public_ip)
            self._try(
                lambda: self.route_table.delete(direct_route),
                f"Error deleting route to {sn} via {attrs.public_ip}",
            )
            return
        if dev is None or vxlan_route is None:
            log.error("no IPv4 vxlan device to remove subnet %s", sn)
            return
        mac = vxlan_attrs.vtep_mac
        log.debug("removing subnet: %s PublicIP: %s VtepMAC: %s", sn, attrs.public_ip, mac)
        # Every entry is attempted even when an earlier one fails.
        self._try(lambda: dev.del_arp(Neighbor(mac=mac, ip=sn.ip)), "DelARP failed")
        self._try(lambda: dev.del_fdb(Neighbor(mac=mac, ip=attrs.public_ip)), "DelFDB failed")
        self._try(
            lambda: self.route_table.delete(vxlan_route),
            f"failed to delete vxlanRoute ({vxlan_route.dst} -> {vxlan_route.gw})",
        )

    def _remove_v6(
        self,
        lease: Lease,
        vxlan_attrs: VxlanLeaseAttrs,
        direct_ok: bool,
        direct_route: Optional[_Route],
        vxlan_route: Optional[_Route],
    ) -> None:
        v6_sn, attrs = lease.ipv6_subnet, lease.attrs
        dev = self.v6_dev
        if direct_ok and direct_route is not None:
            log.debug("Removing v6 direct route to subnet: %s PublicIP: %s", v6_sn, attrs.public_ipv6)
            self._try(
                lambda: self.route_table.delete(direct_route),
                f"Error deleting v6 route to {v6_sn} via {attrs.public_ipv6}",
            )
            return
        if dev is None or vxlan_route is None or v6_sn.ip is None:
            log.error("no IPv6 vxlan device to remove subnet %s", v6_sn)
            return
        mac = vxlan_attrs.vtep_mac
        log.debug("removing v6subnet: %s PublicIPv6: %s VtepMAC: %s", v6_sn, attrs.public_ipv6, mac)
        self._try(lambda: dev.del_v6_arp(Neighbor(mac=mac, ip6=v6_sn.ip)), "DelV6ARP failed")
        self._try(
            lambda: dev.del_v6_fdb(Neighbor(mac=mac, ip6=attrs.public_ipv6)), "DelV6FDB failed"
        )
        self._try(
            lambda: self.route_table.delete(vxlan_route),
            f"failed to delete v6 vxlanRoute ({vxlan_route.dst} -> {vxlan_route.gw})",
        )


def _stored_mac(mac_str: str) -> Optional[str]:
    if not mac_str:
        return None
    try:
        return format_hardware_addr(mac_str)
    except ValueError as err:
        log.error("Failed to parse mac addr(%s): %s", mac_str, err)
        return None


class VXLANBackend:
    """Creates VXLAN devices for the enabled families and acquires the lease."""

    def __init__(
        self,
        subnet_mgr: _SubnetManager,
        ext_iface: ExternalInterface,
        route_table: Any = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self.subnet_mgr = subnet_mgr
        self.ext_iface = ext_iface
        self.route_table = route_table
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def register_network(self, config: NetworkConfig) -> VxlanNetwork:
        """Set up the devices, publish the lease and return the running network."""
        cfg = parse_vxlan_config(config.backend, self.ext_iface.iface.mtu)
        log.info(
            "VXLAN config: VNI=%d Port=%d GBP=%s Learning=%s DirectRouting=%s",
            cfg.vni, cfg.port, cfg.gbp, cfg.learning, cfg.direct_routing,
        )

        mac_str, mac_str_v6 = self.subnet_mgr.get_stored_mac_addresses()
        hw_addr = _stored_mac(mac_str)
        if mac_str:
            log.info("Interface flannel.%d mac address set to: %s", cfg.vni, mac_str)

        dev: Optional[VxlanDevice] = None
        v6_dev: Optional[VxlanDevice] = None
        if config.enable_ipv4:
            dev = new_vxlan_device(
                VxlanDeviceAttrs(
                    vni=cfg.vni,
                    name=f"flannel.{cfg.vni}",
                    mtu=cfg.mtu,
                    vtep_index=self.ext_iface.iface.index,
                    vtep_addr=self.ext_iface.iface_addr,
                    vtep_port=cfg.port,
                    gbp=cfg.gbp,
                    learning=cfg.learning,
                    hw_addr=hw_addr,
                )
            )
            dev.direct_routing = cfg.direct_routing

        hw_addr_v6 = _stored_mac(mac_str_v6)
        if mac_str_v6:
            log.info("Interface flannel-v6.%d mac address set to: %s", cfg.vni, mac_str_v6)

        if config.enable_ipv6:
            v6_dev = new_vxlan_device(
                VxlanDeviceAttrs(
                    vni=cfg.vni,
                    name=f"flannel-v6.{cfg.vni}",
                    mtu=cfg.mtu,
                    vtep_index=self.ext_iface.iface.index,
                    vtep_addr=self.ext_iface.iface_v6_addr,
                    vtep_port=cfg.port,
                    gbp=cfg.gbp,
                    learning=cfg.learning,
                    hw_addr=hw_addr_v6,
                )
            )
            v6_dev.direct_routing = cfg.direct_routing

        subnet_attrs = new_subnet_attrs(
            self.ext_iface.ext_addr, self.ext_iface.ext_v6_addr, cfg.vni, dev, v6_dev
        )

        try:
            lease = self.subnet_mgr.acquire_lease(subnet_attrs)
        except TimeoutError:
            raise
        except Exception as err:
            raise RuntimeError(f"failed to acquire lease: {err}") from err

        # A host address keeps broadcast routes from being created.
        if config.enable_ipv4 and dev is not None:
            if lease.subnet.empty():
                raise ValueError(
                    f"failed to configure interface {dev.name}: "
                    "IPv4 is enabled but the lease has no IPv4"
                )
            try:
                dev.configure(IP4Net(lease.subnet.ip, 32), config.network)
            except (OSError, ValueError) as err:
                raise OSError(f"failed to configure interface {dev.name}: {err}") from err
        if config.enable_ipv6 and v6_dev is not None:
            if lease.ipv6_subnet.empty():
                raise ValueError(
                    f"failed to configure interface {v6_dev.name}: "
                    "IPv6 is enabled but the lease has no IPv6"
                )
            try:
                v6_dev.configure_ipv6(IP6Net(lease.ipv6_subnet.ip, 128), config.ipv6_network)
            except (OSError, ValueError) as err:
                raise OSError(f"failed to configure interface {v6_dev.name}: {err}") from err

        return VxlanNetwork(
            self.subnet_mgr,
            self.ext_iface,
            dev,
            v6_dev,
            lease,
            cfg.mtu,
            route_table=self.route_table,
            retry_attempts=self.retry_attempts,
            retry_delay=self.retry_delay,
        )