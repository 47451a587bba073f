import ipaddress
import json
import subprocess
from unittest.mock import patch

import pytest

from overlaynet.ip4 import IP4Net, parse_ip4
from overlaynet.ip6 import parse_ip6
from overlaynet.vxlan_device import (
    Neighbor,
    VxlanDevice,
    VxlanDeviceAttrs,
    VxlanLink,
    ensure_link,
    new_vxlan_device,
    vxlan_links_incompat,
)

MAC = "02:00:00:00:00:01"
OTHER_MAC = "02:00:00:00:00:02"


def _link_json(name, mac, vni, kind="vxlan", **data):
    return json.dumps(
        [
            {
                "ifindex": 7,
                "ifname": name,
                "mtu": 1450,
                "address": mac,
                "linkinfo": {"info_kind": kind, "info_data": {"id": vni, **data}},
            }
        ]
    )


class FakeRunner:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(list(cmd))
        for prefix, result in self.responses:
            if tuple(cmd[: len(prefix)]) == prefix:
                if isinstance(result, tuple):
                    code, err = result
                    return subprocess.CompletedProcess(cmd, code, "", err)
                return subprocess.CompletedProcess(cmd, 0, result, "")
        return subprocess.CompletedProcess(cmd, 0, "", "")


def test_identical_links_are_compatible():
    a = VxlanLink("flannel.1", MAC, vxlan_id=1, src_addr="10.0.0.1", port=8472)
    b = VxlanLink("flannel.1", OTHER_MAC, vxlan_id=1, src_addr="10.0.0.1", port=8472)
    assert vxlan_links_incompat(a, b) == ""


def test_link_type_mismatch():
    a = VxlanLink("x", vxlan_id=1)
    b = VxlanLink("x", vxlan_id=1, link_type="dummy")
    assert vxlan_links_incompat(a, b) == "link type: vxlan vs dummy"


def test_vni_mismatch():
    assert vxlan_links_incompat(VxlanLink("x", vxlan_id=1), VxlanLink("x", vxlan_id=2)) == "vni: 1 vs 2"


def test_unset_index_and_port_are_ignored():
    a = VxlanLink("x", vxlan_id=1, vtep_dev_index=0, port=0)
    b = VxlanLink("x", vxlan_id=1, vtep_dev_index=3, port=4789)
    assert vxlan_links_incompat(a, b) == ""


def test_vtep_index_and_port_mismatch():
    a = VxlanLink("x", vxlan_id=1, vtep_dev_index=2)
    b = VxlanLink("x", vxlan_id=1, vtep_dev_index=3)
    assert vxlan_links_incompat(a, b) == "vtep (external) interface: 2 vs 3"
    c = VxlanLink("x", vxlan_id=1, port=8472)
    d = VxlanLink("x", vxlan_id=1, port=4789)
    assert vxlan_links_incompat(c, d) == "port: 8472 vs 4789"


def test_src_addr_mismatch():
    a = VxlanLink("x", vxlan_id=1, src_addr="10.0.0.1")
    b = VxlanLink("x", vxlan_id=1, src_addr="10.0.0.2")
    assert vxlan_links_incompat(a, b) == "vtep (external) IP: 10.0.0.1 vs 10.0.0.2"


def test_gbp_mismatch_uses_lowercase_booleans():
    a = VxlanLink("x", vxlan_id=1, gbp=True)
    b = VxlanLink("x", vxlan_id=1, gbp=False)
    assert vxlan_links_incompat(a, b) == "gbp: true vs false"


def test_l2miss_mismatch_reported():
    a = VxlanLink("x", vxlan_id=1, l2miss=True)
    b = VxlanLink("x", vxlan_id=1)
    assert vxlan_links_incompat(a, b).startswith("l2miss:")


def test_mac_addr_is_link_address():
    dev = VxlanDevice(VxlanLink("flannel.1", MAC.upper(), vxlan_id=1))
    assert dev.mac_addr() == MAC


def test_add_fdb_command():
    runner = FakeRunner([])
    dev = VxlanDevice(VxlanLink("flannel.1", MAC, vxlan_id=1))
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        dev.add_fdb(Neighbor(mac=OTHER_MAC, ip=parse_ip4("192.0.2.7")))
    assert runner.calls == [
        ["bridge", "fdb", "replace", OTHER_MAC, "dev", "flannel.1", "dst", "192.0.2.7", "self", "permanent"]
    ]


def test_del_v6_arp_command():
    runner = FakeRunner([])
    dev = VxlanDevice(VxlanLink("flannel-v6.1", MAC, vxlan_id=1))
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        dev.del_v6_arp(Neighbor(mac=OTHER_MAC, ip6=parse_ip6("fc00:1::")))
    assert runner.calls == [["ip", "neigh", "del", "fc00:1::", "lladdr", OTHER_MAC, "dev", "flannel-v6.1"]]


def test_v6_entry_without_address_raises():
    dev = VxlanDevice(VxlanLink("flannel-v6.1", MAC, vxlan_id=1))
    with pytest.raises(ValueError):
        dev.add_v6_fdb(Neighbor(mac=OTHER_MAC))


def test_command_failure_raises_oserror():
    runner = FakeRunner([(("ip", "neigh"), (2, "RTNETLINK answers: No such device"))])
    dev = VxlanDevice(VxlanLink("flannel.1", MAC, vxlan_id=1))
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        with pytest.raises(OSError, match="No such device"):
            dev.add_arp(Neighbor(mac=OTHER_MAC, ip=parse_ip4("10.1.2.0")))


def test_ensure_link_reuses_compatible_existing_link():
    runner = FakeRunner(
        [
            (("ip", "link", "add"), (2, "RTNETLINK answers: File exists")),
            (("ip", "-d", "-j", "link", "show"), _link_json("flannel.1", OTHER_MAC, 1, port=8472)),
        ]
    )
    wanted = VxlanLink("flannel.1", MAC, vxlan_id=1, port=8472)
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        link = ensure_link(wanted)
    assert link.hardware_addr == OTHER_MAC
    assert link.vxlan_id == 1
    assert not any(call[:3] == ["ip", "link", "del"] for call in runner.calls)


def test_ensure_link_recreates_incompatible_link():
    runner = FakeRunner(
        [
            (("ip", "-d", "-j", "link", "show"), _link_json("flannel.1", MAC, 2)),
        ]
    )
    state = {"first": True}

    def run(cmd, **kwargs):
        if cmd[:3] == ["ip", "link", "add"] and state["first"]:
            state["first"] = False
            runner.calls.append(list(cmd))
            return subprocess.CompletedProcess(cmd, 2, "", "RTNETLINK answers: File exists")
        return runner(cmd, **kwargs)

    with patch("overlaynet.vxlan_device.subprocess.run", run):
        link = ensure_link(VxlanLink("flannel.1", MAC, vxlan_id=1))
    assert ["ip", "link", "del", "flannel.1"] in runner.calls
    assert link.link_type == "vxlan"


def test_ensure_link_rejects_non_vxlan_result():
    runner = FakeRunner([(("ip", "-d", "-j", "link", "show"), _link_json("flannel.1", MAC, 1, kind="dummy"))])
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        with pytest.raises(ValueError, match="is not vxlan"):
            ensure_link(VxlanLink("flannel.1", MAC, vxlan_id=1))


def test_new_vxlan_device_subtracts_overhead_and_makes_local_mac():
    runner = FakeRunner([])
    shown = {}

    def run(cmd, **kwargs):
        if cmd[:3] == ["ip", "link", "add"]:
            shown["mac"] = cmd[cmd.index("address") + 1]
            shown["mtu"] = cmd[cmd.index("mtu") + 1]
            return runner(cmd, **kwargs)
        if cmd[:5] == ["ip", "-d", "-j", "link", "show"]:
            return subprocess.CompletedProcess(cmd, 0, _link_json("flannel.1", shown["mac"], 1), "")
        return runner(cmd, **kwargs)

    attrs = VxlanDeviceAttrs(vni=1, name="flannel.1", mtu=1500)
    with patch("overlaynet.vxlan_device.subprocess.run", run):
        dev = new_vxlan_device(attrs)
    assert shown["mtu"] == "1450"
    first = int(dev.mac_addr().split(":")[0], 16)
    assert first & 0x02 == 0x02
    assert first & 0x01 == 0
    assert dev.mac_addr() == shown["mac"]


def test_configure_detects_mac_mismatch():
    runner = FakeRunner(
        [
            (("ip", "-4", "-j", "addr", "show"), "[]"),
            (("ip", "-d", "-j", "link", "show"), _link_json("flannel.1", OTHER_MAC, 1)),
        ]
    )
    dev = VxlanDevice(VxlanLink("flannel.1", MAC, vxlan_id=1))
    ipa = IP4Net(parse_ip4("10.5.1.0"), 32)
    net = IP4Net(parse_ip4("10.5.0.0"), 16)
    with patch("overlaynet.vxlan_device.subprocess.run", runner):
        with pytest.raises(ValueError, match="mac address wanted"):
            dev.configure(ipa, net)
    assert ["ip", "link", "set", "dev", "flannel.1", "up"] in runner.calls


def test_link_parses_addresses():
    link = VxlanLink("x", src_addr="10.0.0.1", group="239.1.1.1")
    assert link.src_addr == ipaddress.ip_address("10.0.0.1")
    assert link.group == ipaddress.ip_address("239.1.1.1")