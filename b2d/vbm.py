"""VBoxManage invocation and output parsing.

The parsers here are pure functions over the text VBoxManage prints, so the
formats they accept are pinned down by table-driven tests rather than by a
running VirtualBox.
"""

from __future__ import annotations

import os
import subprocess
from typing import Dict, Iterator, List, Optional, Tuple

from b2d.constants import (
    COLON_LINE_RE,
    DHCP_NETWORK_PREFIX,
    MACHINE_NOT_FOUND_RE,
    VM_INFO_LINE_RE,
    VM_NAME_UUID_RE,
)
from b2d.exceptions import CommandFailed, MachineNotFound, ParseError, ToolUnavailable
from b2d.models import DHCP, Flag, HostonlyNet, Machine, MachineState, NATNet
from b2d.utils import log, run


class VBoxManage:
    """Callable wrapper around the VBoxManage executable."""

    def __init__(self, path: str = "VBoxManage") -> None:
        self.path = path

    def __call__(self, *args: str) -> str:
        """Run a sub-command and return its stdout.

        Raises ToolUnavailable when the executable cannot be run, MachineNotFound
        when VBoxManage reports an unknown machine and CommandFailed otherwise.
        """
        argv = [self.path, *args]
        result = run(argv, check=False, capture_output=True)
        if result.returncode != 0:
            match = MACHINE_NOT_FOUND_RE.search(result.stderr or "")
            if match:
                raise MachineNotFound(match.group(1))
            raise CommandFailed(argv, result.returncode, result.stderr or "")
        return result.stdout or ""

    def popen(self, *args: str) -> subprocess.Popen:
        """Start a sub-command that consumes a binary stream on stdin."""
        argv = [self.path, *args]
        log("DEBUG", f"Running: {' '.join(argv)}")
        try:
            return subprocess.Popen(argv, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except (FileNotFoundError, PermissionError) as exc:
            raise ToolUnavailable(self.path, exc.strerror or str(exc)) from exc


def _lines(text: str) -> Iterator[str]:
    for line in text.splitlines():
        yield line.rstrip("\r")


def parse_info_line(line: str) -> Optional[Tuple[str, str]]:
    """Split a ``key="value"`` line, either side optionally quoted."""
    match = VM_INFO_LINE_RE.match(line)
    if match is None:
        return None
    key = match.group(1) if match.group(1) is not None else match.group(2)
    value = match.group(3) if match.group(3) is not None else match.group(4)
    return key, value


def parse_vm_info(text: str) -> Machine:
    """Parse ``showvminfo <vm> --machinereadable`` output into a Machine."""
    machine = Machine(name="")
    boot: Dict[int, str] = {}
    for line in _lines(text):
        parsed = parse_info_line(line)
        if parsed is None:
            continue
        key, value = parsed
        if key == "name":
            machine.name = value
        elif key == "UUID":
            machine.uuid = value
        elif key == "VMState":
            machine.state = MachineState.parse(value)
        elif key == "memory":
            machine.memory = _to_int(key, value)
        elif key == "cpus":
            machine.cpus = _to_int(key, value)
        elif key == "vram":
            machine.vram = _to_int(key, value)
        elif key == "ostype":
            machine.ostype = value
        elif key == "CfgFile":
            machine.cfg_file = value
            machine.base_folder = os.path.dirname(value)
        elif key == "uartmode1":
            # uartmode1="server,/home/user/.boot2docker/boot2docker-vm.sock"
            parts = value.split(",", 1)
            if len(parts) == 2:
                machine.serial_file = parts[1]
        elif key.startswith("boot") and key[4:].isdigit():
            if value and value != "none":
                boot[int(key[4:])] = value
        elif key.startswith("Forwarding("):
            # Forwarding(0)="docker,tcp,127.0.0.1,2375,,2375"
            vals = value.split(",")
            if len(vals) < 6:
                raise ParseError(f"malformed port forwarding rule: {value}", text=value)
            if vals[0] == "docker":
                machine.docker_port = _to_int(key, vals[3])
            elif vals[0] == "ssh":
                machine.ssh_port = _to_int(key, vals[3])
        elif key.startswith("SharedFolderNameMachineMapping"):
            index = key[len("SharedFolderNameMachineMapping"):]
            machine.shares[value] = index
        elif key.startswith("SharedFolderPathMachineMapping"):
            index = key[len("SharedFolderPathMachineMapping"):]
            for share_name, share_index in list(machine.shares.items()):
                if share_index == index:
                    machine.shares[share_name] = value
        else:
            flag = _FLAG_KEYS.get(key)
            if flag is not None and value == "on":
                machine.flag |= flag
    if not machine.name:
        raise ParseError("machine info has no name field", text=text)
    machine.boot_order = [boot[i] for i in sorted(boot)]
    return machine


_FLAG_KEYS = {
    "acpi": Flag.ACPI,
    "ioapic": Flag.IOAPIC,
    "rtcuseutc": Flag.RTCUSEUTC,
    "cpu-hotplug": Flag.CPUHOTPLUG,
    "pae": Flag.PAE,
    "longmode": Flag.LONGMODE,
    "hpet": Flag.HPET,
    "hwvirtex": Flag.HWVIRTEX,
    "triplefaultreset": Flag.TRIPLEFAULTRESET,
    "nestedpaging": Flag.NESTEDPAGING,
    "largepages": Flag.LARGEPAGES,
    "vtxvpid": Flag.VTXVPID,
    "vtxux": Flag.VTXUX,
    "accelerate3d": Flag.ACCELERATE3D,
}


def _to_int(key: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ParseError(f"{key} is not an integer: {value!r}", text=value) from None


def parse_vm_list(text: str) -> List[Tuple[str, str]]:
    """Parse ``list vms`` output into (name, uuid) pairs."""
    machines = []
    for line in _lines(text):
        match = VM_NAME_UUID_RE.match(line.strip())
        if match:
            machines.append((match.group(1), match.group(2)))
    return machines


def parse_colon_records(text: str) -> List[Dict[str, str]]:
    """Split blank-line separated blocks of ``key: value`` lines."""
    records: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    for line in _lines(text):
        if not line.strip():
            if current:
                records.append(current)
                current = {}
            continue
        match = COLON_LINE_RE.match(line)
        if match:
            current[match.group(1).strip()] = match.group(2).strip()
    if current:
        records.append(current)
    return records


def parse_dhcp_servers(text: str) -> Dict[str, DHCP]:
    """Parse ``list dhcpservers`` output, keyed by network name."""
    servers = {}
    for record in parse_colon_records(text):
        name = record.get("NetworkName")
        if not name:
            continue
        servers[name] = DHCP(
            network_name=name,
            ip=_first(record, "IP", "Dhcpd IP"),
            mask=_first(record, "NetworkMask"),
            lower_ip=_first(record, "lowerIPAddress", "LowerIPAddress"),
            upper_ip=_first(record, "upperIPAddress", "UpperIPAddress"),
            enabled=record.get("Enabled", "").lower() == "yes",
        )
    return servers


def parse_hostonly_ifs(text: str) -> Dict[str, HostonlyNet]:
    """Parse ``list hostonlyifs`` output, keyed by interface name."""
    nets = {}
    for record in parse_colon_records(text):
        name = record.get("Name")
        if not name:
            continue
        nets[name] = HostonlyNet(
            name=name,
            guid=record.get("GUID", ""),
            dhcp=record.get("DHCP", "").lower() == "enabled",
            ipv4=record.get("IPAddress", ""),
            netmask=record.get("NetworkMask", ""),
            hw_addr=record.get("HardwareAddress", ""),
            medium=record.get("MediumType", ""),
            status=record.get("Status", ""),
            network_name=record.get("VBoxNetworkName", f"{DHCP_NETWORK_PREFIX}{name}"),
        )
    return nets


def parse_natnets(text: str) -> Dict[str, NATNet]:
    """Parse ``list natnets`` output, keyed by network name."""
    nets = {}
    for record in parse_colon_records(text):
        name = record.get("NetworkName")
        if not name:
            continue
        nets[name] = NATNet(
            name=name,
            ipv4=record.get("IP", ""),
            network=record.get("Network", ""),
            dhcp=record.get("DHCP Enabled", "").lower() == "yes",
            enabled=record.get("Enabled", "").lower() == "yes",
        )
    return nets


def _first(record: Dict[str, str], *keys: str) -> str:
    # Key spelling differs between VirtualBox releases.
    for key in keys:
        if key in record:
            return record[key]
    return ""
