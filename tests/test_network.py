"""Tests for b2d.network module."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from b2d import network
from b2d.exceptions import CommandFailed, ManagerError, ParseError
from b2d.models import DHCP, HostonlyNet

HOSTONLY = """\
Name:            vboxnet0
DHCP:            Disabled
IPAddress:       192.168.59.3
NetworkMask:     255.255.255.0
VBoxNetworkName: HostInterfaceNetworking-vboxnet0
"""


def dhcp_text(lower="192.168.59.103", enabled="Yes"):
    return (
        "NetworkName:    HostInterfaceNetworking-vboxnet0\n"
        "IP:             192.168.59.99\n"
        "NetworkMask:    255.255.255.0\n"
        f"lowerIPAddress: {lower}\n"
        "upperIPAddress: 192.168.59.254\n"
        f"Enabled:        {enabled}\n"
    )


class FakeHost:
    """Tracks host-only interfaces and DHCP servers the way VBoxManage would."""

    def __init__(self, hostonly="", dhcps="") -> None:
        self.hostonly = hostonly
        self.dhcps = dhcps
        self.created = 0
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if args == ("list", "hostonlyifs"):
            return self.hostonly
        if args == ("list", "dhcpservers"):
            return self.dhcps
        if args == ("hostonlyif", "create"):
            name = f"vboxnet{self.created + 1}"
            self.created += 1
            self.hostonly += f"\nName:            {name}\nIPAddress:       0.0.0.0\n"
            return f"0%...100%\nInterface '{name}' was successfully created\n"
        if args[:2] == ("dhcpserver", "add"):
            ifname = args[args.index("--ifname") + 1]
            self.dhcps += (
                f"\nNetworkName:    HostInterfaceNetworking-{ifname}\n"
                f"IP:             {args[args.index('--ip') + 1]}\n"
                f"NetworkMask:    {args[args.index('--netmask') + 1]}\n"
                f"lowerIPAddress: {args[args.index('--lowerip') + 1]}\n"
                f"upperIPAddress: {args[args.index('--upperip') + 1]}\n"
                f"Enabled:        {'Yes' if '--enable' in args else 'No'}\n"
            )
        return ""


class TestFindMatchingInterface:
    def _desired(self, **overrides):
        fields = dict(
            network_name="",
            ip="192.168.59.99",
            mask="255.255.255.0",
            lower_ip="192.168.59.103",
            upper_ip="192.168.59.254",
            enabled=True,
        )
        fields.update(overrides)
        return DHCP(**fields)

    def test_exact_match(self):
        nets = {"vboxnet0": HostonlyNet(name="vboxnet0", network_name="HostInterfaceNetworking-vboxnet0")}
        dhcps = {"HostInterfaceNetworking-vboxnet0": self._desired(network_name="HostInterfaceNetworking-vboxnet0")}
        assert network.find_matching_interface(nets, dhcps, self._desired()) == "vboxnet0"

    @pytest.mark.parametrize(
        "field, value",
        [
            ("ip", "192.168.59.98"),
            ("mask", "255.255.0.0"),
            ("lower_ip", "192.168.59.104"),
            ("upper_ip", "192.168.59.200"),
            ("enabled", False),
        ],
    )
    def test_any_field_mismatch_rejects(self, field, value):
        nets = {"vboxnet0": HostonlyNet(name="vboxnet0", network_name="HostInterfaceNetworking-vboxnet0")}
        dhcps = {"HostInterfaceNetworking-vboxnet0": self._desired(**{field: value})}
        assert network.find_matching_interface(nets, dhcps, self._desired()) == ""

    def test_interface_without_dhcp(self):
        nets = {"vboxnet0": HostonlyNet(name="vboxnet0")}
        assert network.find_matching_interface(nets, {}, self._desired()) == ""


class TestGetHostonlyInterface:
    def test_reuses_exact_match(self, machine_config):
        host = FakeHost(HOSTONLY, dhcp_text())
        assert network.get_hostonly_interface(host, machine_config) == "vboxnet0"
        assert ("hostonlyif", "create") not in host.calls

    def test_partial_match_creates_new_interface(self, machine_config):
        host = FakeHost(HOSTONLY, dhcp_text(lower="192.168.59.110"))
        name = network.get_hostonly_interface(host, machine_config)
        assert name == "vboxnet1"
        assert ("hostonlyif", "ipconfig", "vboxnet1", "--ip", "192.168.59.3", "--netmask", "255.255.255.0") in host.calls
        add = next(call for call in host.calls if call[:2] == ("dhcpserver", "add"))
        assert add[add.index("--ifname") + 1] == "vboxnet1"
        assert "--enable" in add

    def test_idempotent(self, machine_config):
        host = FakeHost()
        first = network.get_hostonly_interface(host, machine_config)
        second = network.get_hostonly_interface(host, machine_config)
        assert first == second == "vboxnet1"
        assert host.created == 1

    def test_dhcp_failure_is_wrapped(self, machine_config):
        host = FakeHost()

        def vbm(*args):
            if args[0] == "dhcpserver":
                raise CommandFailed(["VBoxManage", *args], 1, "denied")
            return host(*args)

        with pytest.raises(ManagerError, match="Failed to add DHCP server to 'vboxnet1'"):
            network.get_hostonly_interface(vbm, machine_config)


class TestCreateHostonlyIf:
    def test_unparseable_output(self):
        vbm = MagicMock(return_value="something unexpected")
        with pytest.raises(ParseError, match="could not find interface name"):
            network.create_hostonly_if(vbm, "192.168.59.3", "255.255.255.0")

    def test_stale_dhcp_record_is_modified(self):
        vbm = MagicMock(return_value="")
        dhcp = DHCP("", "192.168.59.99", "255.255.255.0", "192.168.59.103", "192.168.59.254", False)
        network.set_hostonly_dhcp(vbm, "vboxnet0", dhcp, exists=True)
        vbm.assert_called_once_with(
            "dhcpserver", "modify", "--ifname", "vboxnet0",
            "--ip", "192.168.59.99", "--netmask", "255.255.255.0",
            "--lowerip", "192.168.59.103", "--upperip", "192.168.59.254", "--disable",
        )

    def test_internal_network_dhcp(self):
        vbm = MagicMock(return_value="")
        dhcp = DHCP("", "10.0.0.1", "255.0.0.0", "10.0.0.2", "10.0.0.9", True)
        network.set_internal_dhcp(vbm, "intnet", dhcp)
        assert vbm.call_args.args[:4] == ("dhcpserver", "add", "--netname", "intnet")
