"""In-memory driver. Nothing is persisted; useful for tests and dry runs of the command surface."""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from b2d.driver import DriverRegistry, Machine
from b2d.exceptions import MachineNotFound
from b2d.models import NIC, MachineConfig, MachineState, PFRule, StorageController, StorageMedium
from b2d.models import Machine as MachineInfo


class DummyMachine(Machine):
    """Applies every primitive instantly and records the calls it received."""

    def __init__(self, info: MachineInfo, stop_responds: bool = True) -> None:
        super().__init__(info)
        self.stop_responds = stop_responds
        self.calls: List[Tuple[str, ...]] = []

    def refresh(self) -> None:
        self.calls.append(("refresh",))

    def _record(self, *call: str) -> None:
        self.calls.append(call)

    def _resume(self) -> None:
        self._record("resume")
        self.info.state = MachineState.RUNNING

    def _boot(self) -> None:
        self._record("boot")
        self.info.state = MachineState.RUNNING

    def _acpi_shutdown(self) -> None:
        self._record("acpi_shutdown")
        if self.stop_responds:
            self.info.state = MachineState.POWEROFF

    def _savestate(self) -> None:
        self._record("savestate")
        self.info.state = MachineState.SAVED

    def _pause(self) -> None:
        self._record("pause")
        self.info.state = MachineState.PAUSED

    def _hard_poweroff(self) -> None:
        self._record("poweroff")
        self.info.state = MachineState.POWEROFF

    def _reset(self) -> None:
        self._record("reset")
        self.info.state = MachineState.RUNNING

    def _unregister(self) -> None:
        self._record("unregister")
        self.info.state = MachineState.UNREGISTERED

    def modify(self) -> None:
        self._record("modify")

    def add_natpf(self, n: int, name: str, rule: PFRule) -> None:
        self._record("add_natpf", str(n), name, rule.format())
        if name == "ssh":
            self.info.ssh_port = rule.host_port
        elif name == "docker":
            self.info.docker_port = rule.host_port

    def del_natpf(self, n: int, name: str) -> None:
        self._record("del_natpf", str(n), name)

    def set_nic(self, n: int, nic: NIC) -> None:
        self._record("set_nic", str(n), nic.network.value)

    def add_storage_ctl(self, name: str, ctl: StorageController) -> None:
        self._record("add_storage_ctl", name, ctl.sys_bus.value)

    def del_storage_ctl(self, name: str) -> None:
        self._record("del_storage_ctl", name)

    def attach_storage(self, ctl_name: str, medium: StorageMedium) -> None:
        self._record("attach_storage", ctl_name, str(medium.port), medium.medium)


def new_machine(cfg: MachineConfig, state: Optional[MachineState] = None) -> DummyMachine:
    info = MachineInfo(
        name=cfg.vm,
        state=state or MachineState.POWEROFF,
        memory=cfg.memory,
        cpus=cfg.cpus,
        docker_port=cfg.docker_port,
        ssh_port=cfg.ssh_port,
        serial_file=str(cfg.serial_file) if cfg.serial else "",
    )
    return DummyMachine(info)


class DummyDriver:
    """Holds the machines of one registry; nothing outlives the process."""

    def __init__(self) -> None:
        self.machines: Dict[str, DummyMachine] = {}

    def init(self, cfg: MachineConfig) -> DummyMachine:
        machine = self.machines.get(cfg.vm)
        if machine is None or machine.state is MachineState.UNREGISTERED:
            if not cfg.init:
                raise MachineNotFound(cfg.vm)
            machine = new_machine(cfg)
            self.machines[cfg.vm] = machine
        return machine


def register(registry: DriverRegistry, driver: Optional[DummyDriver] = None) -> DummyDriver:
    driver = driver or DummyDriver()
    registry.register("dummy", driver.init)
    return driver
