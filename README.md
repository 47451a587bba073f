# overlaynet

Building blocks for a host-to-host overlay network on Linux.

- `overlaynet.ip4` and `overlaynet.ip6`: IPv4 and IPv6 addresses backed by integers
  (`IP4`, `IP6`) and subnets (`IP4Net`, `IP6Net`). They offer overlap and containment
  tests, network and next-subnet arithmetic, private-range detection
  (RFC 1918 / RFC 4193) and JSON text forms (`to_json`, `ip4_from_json`,
  `ip4net_from_json`, `ip6_from_json`, `ip6net_from_json`).
- `overlaynet.lease`: the data that the backends work on. `Lease` and `LeaseAttrs`
  describe a host's subnet lease. `Event` carries an `EventType.ADDED` or
  `EventType.REMOVED` change, and `NetworkConfig` holds the cluster-wide network
  settings.
- `overlaynet.iface`: host interfaces. `interfaces`, `interface_by_name` and
  `interface_by_index` read them through psutil. The module also lists an
  interface's addresses (`get_interface_ip4_addrs`, `get_interface_ip6_addrs`), looks
  up interfaces by address, by default route or by route to an address
  (`get_interface_by_ip`, `get_default_gateway_interface`,
  `get_interface_by_specific_ip_routing`, `direct_routing`) and keeps one address on a
  link (`ensure_v4_address_on_link`, `ensure_v6_address_on_link`). It can add blackhole
  routes and open TUN devices with `open_tun`. Routes and address changes go through
  the `ip` command.
- `overlaynet.ipmatch`: picks the external interface by name, by address, by
  regular expression, by reachability or by default route. `lookup_ext_iface` returns
  an `ExternalInterface`, and `get_ip_family` turns two auto-detect flags into an
  `IPStack`.
- `overlaynet.vxlan_device`: VXLAN devices (`new_vxlan_device`, `VxlanDevice`). It
  creates or reuses the link, sets addresses, and adds and removes ARP and FDB
  entries, all through the `ip` and `bridge` commands.
- `overlaynet.vxlan_lease`: the VXLAN lease payload (`VxlanLeaseAttrs`), MAC address
  formatting, `new_subnet_attrs`, and `parse_vxlan_config` for the backend settings
  (VNI, Port, MTU, GBP, Learning, DirectRouting).
- `overlaynet.vxlan_network`: `VXLANBackend.register_network` creates the devices,
  acquires the lease and configures the devices. It returns a `VxlanNetwork`, whose
  `run` and `handle_subnet_events` add or remove routes and neighbour entries for
  remote leases. Failed steps are retried.
- `overlaynet.wireguard`: the WireGuard lease payload (`WireguardLeaseAttrs`),
  `new_subnet_attrs`, `Mode`, and `WireguardNetwork`. `WireguardNetwork` chooses IPv4
  or IPv6 endpoints per peer (`select_mode`) and adds or removes peers and routes on
  lease events.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

Changing links, routes, neighbour entries and TUN devices needs root
privileges, or the `CAP_NET_ADMIN` capability.

## Examples

Subnet arithmetic:

```python
from overlaynet.ip4 import parse_ip4, IP4Net

net = IP4Net(parse_ip4("10.5.3.0"), 24)
print(net)                                              # 10.5.3.0/24
print(net.contains(parse_ip4("10.5.3.17")))             # True
print(net.next())                                       # 10.5.4.0/24
print(net.overlaps(IP4Net(parse_ip4("10.5.0.0"), 16)))  # True
print(net.to_json())                                    # "10.5.3.0/24"
```

IPv6:

```python
from overlaynet.ip6 import parse_ip6, IP6Net

net = IP6Net(parse_ip6("fc00:1::"), 64)
print(net.contains(parse_ip6("fc00:1::1")))    # True
print(parse_ip6("fd00::1").is_private())       # True
```

VXLAN lease payload:

```python
from overlaynet.vxlan_lease import VxlanLeaseAttrs, vxlan_lease_attrs_from_json

data = VxlanLeaseAttrs(1, "02:00:00:00:00:01").to_json()
print(data)                                    # {"VNI":1,"VtepMAC":"02:00:00:00:00:01"}
print(vxlan_lease_attrs_from_json(data).vni)   # 1
```

Choosing the external interface:

```python
from overlaynet.ipmatch import get_ip_family, lookup_ext_iface, PublicIPOpts

stack = get_ip_family(True, False)
ext = lookup_ext_iface("", r"eth\d+", "", stack, PublicIPOpts())
print(ext.iface.name, ext.iface_addr, ext.ext_addr)
```

Lookups that find nothing raise `LookupError`. Invalid settings raise `ValueError`,
and failed `ip` or `bridge` commands raise `OSError`.

## What this package does not do

- It has no daemon and no command-line program. Nothing here runs on its own.
- It does not allocate or store subnet leases. `VXLANBackend` and
  `WireguardNetwork` are handed a subnet manager object. For VXLAN it provides
  `get_stored_mac_addresses`, `acquire_lease` and `watch_leases`; for WireGuard it
  provides `get_network_config` and `watch_leases`.
- It does not create WireGuard devices or keys. `WireguardNetwork` is given device
  objects that provide `listen_port`, `add_peer`, `remove_peer` and `add_route`.