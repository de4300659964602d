"""Host-only network and DHCP server reconciliation for b2d."""

from __future__ import annotations

from typing import Dict, List

from b2d.constants import DHCP_NETWORK_PREFIX, HOSTONLY_CREATED_RE
from b2d.exceptions import ManagerError, ParseError
from b2d.models import DHCP, HostonlyNet, MachineConfig, NATNet
from b2d.utils import log
from b2d.vbm import VBoxManage, parse_dhcp_servers, parse_hostonly_ifs, parse_natnets


def list_hostonly_ifs(vbm: VBoxManage) -> Dict[str, HostonlyNet]:
    return parse_hostonly_ifs(vbm("list", "hostonlyifs"))


def list_dhcp_servers(vbm: VBoxManage) -> Dict[str, DHCP]:
    return parse_dhcp_servers(vbm("list", "dhcpservers"))


def list_natnets(vbm: VBoxManage) -> Dict[str, NATNet]:
    return parse_natnets(vbm("list", "natnets"))


def create_hostonly_if(vbm: VBoxManage, ip: str, netmask: str) -> str:
    """Create a host-only interface with a static address and return its name."""
    out = vbm("hostonlyif", "create")
    match = HOSTONLY_CREATED_RE.search(out)
    if match is None:
        raise ParseError(f"could not find interface name in: {out.strip()}", text=out)
    name = match.group(1)
    vbm("hostonlyif", "ipconfig", name, "--ip", ip, "--netmask", netmask)
    return name


def dhcp_server_args(dhcp: DHCP) -> List[str]:
    return [
        "--ip",
        dhcp.ip,
        "--netmask",
        dhcp.mask,
        "--lowerip",
        dhcp.lower_ip,
        "--upperip",
        dhcp.upper_ip,
        "--enable" if dhcp.enabled else "--disable",
    ]


def set_hostonly_dhcp(vbm: VBoxManage, ifname: str, dhcp: DHCP, exists: bool = False) -> None:
    """Attach a DHCP server to a host-only interface, modifying a stale record in place."""
    action = "modify" if exists else "add"
    vbm("dhcpserver", action, "--ifname", ifname, *dhcp_server_args(dhcp))


def set_internal_dhcp(vbm: VBoxManage, netname: str, dhcp: DHCP, exists: bool = False) -> None:
    action = "modify" if exists else "add"
    vbm("dhcpserver", action, "--netname", netname, *dhcp_server_args(dhcp))


def find_matching_interface(
    nets: Dict[str, HostonlyNet], dhcps: Dict[str, DHCP], desired: DHCP
) -> str:
    """Return the first interface whose DHCP record matches ``desired`` exactly, or ''."""
    for name in sorted(nets):
        net = nets[name]
        dhcp = dhcps.get(net.network_name) or dhcps.get(f"{DHCP_NETWORK_PREFIX}{name}")
        if dhcp is not None and dhcp.same_addressing(desired):
            return name
    return ""


def get_hostonly_interface(vbm: VBoxManage, cfg: MachineConfig) -> str:
    """Return a host-only interface whose DHCP server serves the desired range.

    An interface is only reused when its DHCP record matches on every field;
    any partial overlap is treated as someone else's network and a fresh
    interface is created instead.
    """
    desired = cfg.desired_dhcp()
    nets = list_hostonly_ifs(vbm)
    dhcps = list_dhcp_servers(vbm)

    name = find_matching_interface(nets, dhcps, desired)
    if name:
        log("INFO", f"Reusing host-only network interface {name!r}")
        return name

    log("INFO", "Creating a new host-only network interface")
    name = create_hostonly_if(vbm, cfg.host_ip, cfg.netmask)
    network_name = f"{DHCP_NETWORK_PREFIX}{name}"
    try:
        set_hostonly_dhcp(vbm, name, desired, exists=network_name in dhcps)
    except ManagerError as exc:
        raise ManagerError(f"Failed to add DHCP server to {name!r}: {exc}") from exc
    log("SUCCESS", f"Host-only network {name!r} ready ({cfg.host_ip}/{cfg.netmask})")
    return name
