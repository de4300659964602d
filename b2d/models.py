"""Data models for b2d."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Tuple


class MachineState(str, enum.Enum):
    POWEROFF = "poweroff"
    RUNNING = "running"
    PAUSED = "paused"
    SAVED = "saved"
    ABORTED = "aborted"
    # Never reported by the hypervisor.
    UNREGISTERED = "unregistered"
    DRIVER_UNAVAILABLE = "driver-unavailable"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: str) -> "MachineState":
        try:
            return cls(raw.strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_shadow(self) -> bool:
        return self in SHADOW_STATES

    def __str__(self) -> str:
        return self.value


SHADOW_STATES = frozenset(
    {MachineState.UNREGISTERED, MachineState.DRIVER_UNAVAILABLE, MachineState.UNKNOWN}
)


class Flag(enum.IntFlag):
    """Virtualization feature switches passed to ``modifyvm``."""

    NONE = 0
    ACPI = 1 << 0
    IOAPIC = 1 << 1
    RTCUSEUTC = 1 << 2
    CPUHOTPLUG = 1 << 3
    PAE = 1 << 4
    LONGMODE = 1 << 5
    HPET = 1 << 7
    HWVIRTEX = 1 << 8
    TRIPLEFAULTRESET = 1 << 9
    NESTEDPAGING = 1 << 10
    LARGEPAGES = 1 << 11
    VTXVPID = 1 << 12
    VTXUX = 1 << 13
    ACCELERATE3D = 1 << 14

    def switches(self) -> List[Tuple[str, str]]:
        """Return ``(option, on|off)`` pairs for every known flag."""
        pairs = []
        for member in Flag:
            if member is Flag.NONE:
                continue
            pairs.append((f"--{member.name.lower()}", "on" if self & member else "off"))
        return pairs


class PFProto(str, enum.Enum):
    TCP = "tcp"
    UDP = "udp"


class PFRule(NamedTuple):
    """A NAT port-forwarding rule."""

    proto: PFProto
    host_ip: str
    host_port: int
    guest_port: int
    guest_ip: str = ""

    def format(self) -> str:
        """Render in the ``proto,hostip,hostport,guestip,guestport`` form VBoxManage takes."""
        return f"{self.proto.value},{self.host_ip},{self.host_port},{self.guest_ip},{self.guest_port}"

    def __str__(self) -> str:
        guest = self.guest_ip or ""
        return f"{self.proto.value}://{self.host_ip}:{self.host_port} --> {guest}:{self.guest_port}"


class NICNetwork(str, enum.Enum):
    NONE = "none"
    NULL = "null"
    NAT = "nat"
    BRIDGED = "bridged"
    INTNET = "intnet"
    HOSTONLY = "hostonly"
    GENERIC = "generic"


class NICHardware(str, enum.Enum):
    AMD_PCNET_PCI_II = "Am79C970A"
    AMD_PCNET_FAST_III = "Am79C973"
    INTEL_PRO1000_MT_DESKTOP = "82540EM"
    INTEL_PRO1000_T_SERVER = "82543GC"
    INTEL_PRO1000_MT_SERVER = "82545EM"
    VIRTIO = "virtio"


@dataclass
class NIC:
    network: NICNetwork
    hardware: NICHardware = NICHardware.VIRTIO
    hostonly_adapter: Optional[str] = None


class SysBus(str, enum.Enum):
    IDE = "ide"
    SATA = "sata"
    SCSI = "scsi"
    FLOPPY = "floppy"


class DriveType(str, enum.Enum):
    DVD = "dvddrive"
    HDD = "hdd"
    FDD = "fdd"


@dataclass
class StorageController:
    sys_bus: SysBus
    port_count: int = 4
    chipset: Optional[str] = None
    host_io_cache: bool = False
    bootable: bool = False


@dataclass
class StorageMedium:
    port: int
    device: int
    drive_type: DriveType
    medium: str


@dataclass(frozen=True)
class DHCP:
    """A DHCP server record. Two records describe the same network only if all fields match."""

    network_name: str
    ip: str
    mask: str
    lower_ip: str
    upper_ip: str
    enabled: bool

    def same_addressing(self, other: "DHCP") -> bool:
        return (self.ip, self.mask, self.lower_ip, self.upper_ip, self.enabled) == (
            other.ip,
            other.mask,
            other.lower_ip,
            other.upper_ip,
            other.enabled,
        )


@dataclass
class HostonlyNet:
    name: str
    guid: str = ""
    dhcp: bool = False
    ipv4: str = ""
    netmask: str = ""
    hw_addr: str = ""
    medium: str = ""
    status: str = ""
    network_name: str = ""


@dataclass
class NATNet:
    name: str
    ipv4: str = ""
    network: str = ""
    dhcp: bool = False
    enabled: bool = False


@dataclass
class Machine:
    """Observed machine state, rebuilt from the hypervisor on every query."""

    name: str
    uuid: str = ""
    state: MachineState = MachineState.UNKNOWN
    cpus: int = 0
    memory: int = 0
    vram: int = 0
    cfg_file: str = ""
    base_folder: str = ""
    ostype: str = ""
    flag: Flag = Flag.NONE
    boot_order: List[str] = field(default_factory=list)
    docker_port: int = 0
    ssh_port: int = 0
    serial_file: str = ""
    shares: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class MachineConfig:
    """Desired machine shape for one invocation."""

    vm: str
    driver: str
    dir: Path
    iso: Path
    ssh: str
    ssh_gen: str
    ssh_key: Path
    disk_size: int
    memory: int
    cpus: int
    ssh_port: int
    docker_port: int
    host_ip: str
    netmask: str
    dhcp_ip: str
    lower_ip: str
    upper_ip: str
    dhcp_enabled: bool
    serial: bool
    serial_file: Path
    vbm: str
    vmdk: Optional[Path] = None
    shares: Tuple[str, ...] = ()
    verbose: bool = False
    init: bool = False

    @property
    def cert_root(self) -> Path:
        return self.dir / "certs"

    def desired_dhcp(self, network_name: str = "") -> DHCP:
        return DHCP(
            network_name=network_name,
            ip=self.dhcp_ip,
            mask=self.netmask,
            lower_ip=self.lower_ip,
            upper_ip=self.upper_ip,
            enabled=self.dhcp_enabled,
        )
