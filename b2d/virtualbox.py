"""VirtualBox driver for b2d, backed by the VBoxManage command-line tool."""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from b2d import network
from b2d.constants import (
    CREATE_ATTEMPTS,
    DEFAULT_SHARE,
    DEFAULT_VBM,
    GUEST_DOCKER_PORT,
    GUEST_SSH_PORT,
    HVP_EXTRA_KEY,
    STORAGE_CONTROLLER,
    STORAGE_PORT_COUNT,
    VM_OSTYPE,
)
from b2d.disk import build_disk
from b2d.driver import DriverRegistry, Machine
from b2d.exceptions import CommandFailed, MachineExists, MachineNotFound, ManagerError, ParseError, ToolUnavailable
from b2d.models import (
    NIC,
    DriveType,
    Flag,
    MachineConfig,
    MachineState,
    NICHardware,
    NICNetwork,
    PFProto,
    PFRule,
    StorageController,
    StorageMedium,
    SysBus,
)
from b2d.models import Machine as MachineInfo
from b2d.utils import log
from b2d.vbm import VBoxManage, parse_vm_info, parse_vm_list

CREATE_FLAGS = (
    Flag.PAE
    | Flag.LONGMODE
    | Flag.RTCUSEUTC
    | Flag.ACPI
    | Flag.IOAPIC
    | Flag.HPET
    | Flag.HWVIRTEX
    | Flag.VTXVPID
    | Flag.LARGEPAGES
    | Flag.NESTEDPAGING
)
BOOT_SLOTS = 4


def parse_shares(values: Iterable[str]) -> Dict[str, str]:
    """Turn ``DIR[=NAME]`` entries into a name -> host directory map.

    Without an explicit name the directory minus its leading slashes is used,
    since VirtualBox mishandles share names starting with '/'. The literal
    ``disable`` switches sharing off.
    """
    shares: Dict[str, str] = {}
    values = list(values) or [DEFAULT_SHARE]
    for value in values:
        share_dir, _, share_name = value.partition("=")
        if share_dir == "disable":
            continue
        if not share_name:
            share_name = share_dir.lstrip("/")
        shares[share_name] = share_dir
    return shares


class VirtualBoxMachine(Machine):
    def __init__(self, vbm: VBoxManage, info: MachineInfo, shares: Optional[Dict[str, str]] = None) -> None:
        super().__init__(info)
        self.vbm = vbm
        self.shares = shares or {}

    def refresh(self) -> None:
        try:
            text = self.vbm("showvminfo", self.name, "--machinereadable")
        except MachineNotFound:
            self.info.state = MachineState.UNREGISTERED
            return
        except ToolUnavailable as exc:
            log("DEBUG", str(exc))
            self.info.state = MachineState.DRIVER_UNAVAILABLE
            return
        except CommandFailed as exc:
            log("WARN", f"Could not query machine {self.name!r}: {exc}")
            self.info.state = MachineState.UNKNOWN
            return
        try:
            self.info = parse_vm_info(text)
        except ParseError as exc:
            log("WARN", f"Unexpected machine info for {self.name!r}: {exc}")
            self.info.state = MachineState.UNKNOWN

    def _controlvm(self, *args: str) -> None:
        self.vbm("controlvm", self.name, *args)

    def _resume(self) -> None:
        self._controlvm("resume")

    def _boot(self) -> None:
        if self.state in (MachineState.POWEROFF, MachineState.ABORTED):
            self._setup_shares()
        self.vbm("startvm", self.name, "--type", "headless")

    def _acpi_shutdown(self) -> None:
        self._controlvm("acpipowerbutton")

    def _savestate(self) -> None:
        self._controlvm("savestate")

    def _pause(self) -> None:
        self._controlvm("pause")

    def _hard_poweroff(self) -> None:
        self._controlvm("poweroff")

    def _reset(self) -> None:
        self._controlvm("reset")

    def _unregister(self) -> None:
        self.vbm("unregistervm", self.name, "--delete")

    def _setup_shares(self) -> None:
        if not self.shares:
            return
        for key in ("MountPrefix", "MountDir"):
            self.vbm("guestproperty", "set", self.name, f"/VirtualBox/GuestAdd/SharedFolders/{key}", "/")
        for share_name, share_dir in sorted(self.shares.items()):
            if share_name in self.info.shares:
                continue
            if not os.path.isdir(share_dir):
                log("WARN", f"Skipping share {share_name!r}: {share_dir} is not a directory")
                continue
            self.vbm("sharedfolder", "add", self.name, "--name", share_name, "--hostpath", share_dir, "--automount")
            self.vbm("setextradata", self.name, f"VBoxInternal2/SharedFoldersEnableSymlinksCreate/{share_name}", "1")
            log("INFO", f"Sharing {share_dir} as {share_name!r}")

    def modify(self) -> None:
        info = self.info
        args: List[str] = [
            "modifyvm",
            self.name,
            "--firmware", "bios",
            "--bioslogofadein", "off",
            "--bioslogofadeout", "off",
            "--bioslogodisplaytime", "0",
            "--biosbootmenu", "disabled",
            "--natdnshostresolver1", "on",
            "--ostype", info.ostype,
            "--cpus", str(info.cpus),
            "--memory", str(info.memory),
            "--vram", str(info.vram),
        ]
        for option, value in info.flag.switches():
            args += [option, value]
        if info.serial_file:
            args += ["--uart1", "0x3F8", "4", "--uartmode1", "server", info.serial_file]
        for slot in range(1, BOOT_SLOTS + 1):
            device = info.boot_order[slot - 1] if slot <= len(info.boot_order) else "none"
            args += [f"--boot{slot}", device]
        self.vbm(*args)
        self.refresh()

    def add_natpf(self, n: int, name: str, rule: PFRule) -> None:
        rule_arg = f"{name},{rule.format()}"
        if self.state is MachineState.RUNNING:
            self._controlvm(f"natpf{n}", rule_arg)
        else:
            self.vbm("modifyvm", self.name, f"--natpf{n}", rule_arg)

    def del_natpf(self, n: int, name: str) -> None:
        if self.state is MachineState.RUNNING:
            self._controlvm(f"natpf{n}", "delete", name)
        else:
            self.vbm("modifyvm", self.name, f"--natpf{n}", "delete", name)

    def set_nic(self, n: int, nic: NIC) -> None:
        args = [
            "modifyvm",
            self.name,
            f"--nic{n}", nic.network.value,
            f"--nictype{n}", nic.hardware.value,
            f"--cableconnected{n}", "on",
        ]
        if nic.network is NICNetwork.HOSTONLY:
            if not nic.hostonly_adapter:
                raise ManagerError(f"NIC #{n} is host-only but has no adapter name")
            args += [f"--hostonlyadapter{n}", nic.hostonly_adapter]
        self.vbm(*args)

    def add_storage_ctl(self, name: str, ctl: StorageController) -> None:
        args = ["storagectl", self.name, "--name", name, "--add", ctl.sys_bus.value]
        if ctl.chipset:
            args += ["--controller", ctl.chipset]
        if ctl.port_count > 0:
            args += ["--portcount", str(ctl.port_count)]
        args += ["--hostiocache", "on" if ctl.host_io_cache else "off"]
        args += ["--bootable", "on" if ctl.bootable else "off"]
        self.vbm(*args)

    def del_storage_ctl(self, name: str) -> None:
        self.vbm("storagectl", self.name, "--name", name, "--remove")

    def attach_storage(self, ctl_name: str, medium: StorageMedium) -> None:
        self.vbm(
            "storageattach",
            self.name,
            "--storagectl", ctl_name,
            "--port", str(medium.port),
            "--device", str(medium.device),
            "--type", medium.drive_type.value,
            "--medium", medium.medium,
        )


def get_machine(vbm: VBoxManage, name: str, shares: Optional[Dict[str, str]] = None) -> VirtualBoxMachine:
    """Query the machine; raises MachineNotFound, ToolUnavailable or ParseError."""
    text = vbm("showvminfo", name, "--machinereadable")
    return VirtualBoxMachine(vbm, parse_vm_info(text), shares)


def list_machines(vbm: VBoxManage) -> List[str]:
    return [name for name, _uuid in parse_vm_list(vbm("list", "vms"))]


def set_extra(vbm: VBoxManage, name: str, key: str, value: str) -> None:
    vbm("setextradata", name, key, value)


def _register(vbm: VBoxManage, name: str) -> None:
    for attempt in range(1, CREATE_ATTEMPTS + 1):
        try:
            vbm("createvm", "--name", name, "--register")
            return
        except CommandFailed as exc:
            # The VirtualBox service sometimes fails on first contact after install or reboot.
            if attempt == CREATE_ATTEMPTS:
                raise
            log("WARN", f"Failed to create VM {name!r}, retrying: {exc}")


def create_machine(vbm: VBoxManage, cfg: MachineConfig) -> VirtualBoxMachine:
    """Register and fully configure a new machine.

    An existing disk image at the expected path is attached as-is, so
    re-running creation after a partial failure never loses user data.
    """
    if not cfg.vm:
        raise ManagerError("machine name is empty")
    if cfg.vm in list_machines(vbm):
        raise MachineExists(cfg.vm)

    log("INFO", f"Creating VM {cfg.vm}...")
    _register(vbm, cfg.vm)
    m = get_machine(vbm, cfg.vm, parse_shares(cfg.shares))

    set_extra(vbm, cfg.vm, HVP_EXTRA_KEY, "1")
    m.info.ostype = VM_OSTYPE
    m.info.cpus = cfg.cpus
    m.info.memory = cfg.memory
    m.info.serial_file = str(cfg.serial_file) if cfg.serial else ""
    m.info.flag |= CREATE_FLAGS
    m.info.boot_order = ["dvd"]
    m.modify()

    log("INFO", "Setting NIC #1 to use NAT network...")
    m.set_nic(1, NIC(network=NICNetwork.NAT, hardware=NICHardware.VIRTIO))
    rules = {
        "ssh": PFRule(PFProto.TCP, "127.0.0.1", cfg.ssh_port, GUEST_SSH_PORT),
        "docker": PFRule(PFProto.TCP, "127.0.0.1", cfg.docker_port, GUEST_DOCKER_PORT),
    }
    for name, rule in rules.items():
        m.add_natpf(1, name, rule)
        log("INFO", f"Port forwarding [{name}] {rule}")

    ifname = network.get_hostonly_interface(vbm, cfg)
    log("INFO", f"Setting NIC #2 to use host-only network {ifname!r}...")
    m.set_nic(2, NIC(network=NICNetwork.HOSTONLY, hardware=NICHardware.VIRTIO, hostonly_adapter=ifname))

    log("INFO", "Setting VM storage...")
    m.add_storage_ctl(
        STORAGE_CONTROLLER,
        StorageController(sys_bus=SysBus.SATA, port_count=STORAGE_PORT_COUNT, host_io_cache=True, bootable=True),
    )
    # The ISO has to be attached before the disk for the dvd-first boot order to apply.
    m.attach_storage(STORAGE_CONTROLLER, StorageMedium(port=0, device=0, drive_type=DriveType.DVD, medium=str(cfg.iso)))

    disk = Path(m.info.base_folder) / f"{cfg.vm}.vmdk"
    build_disk(vbm, disk, cfg.disk_size, cfg.ssh_key, cfg.vmdk)
    m.attach_storage(STORAGE_CONTROLLER, StorageMedium(port=1, device=0, drive_type=DriveType.HDD, medium=str(disk)))

    m.refresh()
    return m


def init_driver(cfg: MachineConfig) -> VirtualBoxMachine:
    vbm = VBoxManage(cfg.vbm)
    try:
        return get_machine(vbm, cfg.vm, parse_shares(cfg.shares))
    except MachineNotFound:
        if not cfg.init:
            raise
    return create_machine(vbm, cfg)


def add_options(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("virtualbox driver")
    group.add_argument("--vbm", default=DEFAULT_VBM, help="path to VirtualBox management utility")
    group.add_argument("--basevmdk", default="", help="path to VMDK to use as base for persistent partition")
    group.add_argument(
        "--vbox-share",
        dest="vbox_share",
        action="append",
        default=[],
        metavar="DIR[=NAME]",
        help=f"directory to share via Guest Additions on boot (default '{DEFAULT_SHARE}'; 'disable' turns sharing off)",
    )


def register(registry: DriverRegistry) -> None:
    registry.register("virtualbox", init_driver)
    registry.register_config("virtualbox", add_options)
