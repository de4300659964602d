"""Driver contract and registry.

A driver turns a ``MachineConfig`` into a live ``Machine`` for one hypervisor.
The orchestrator only ever talks to the abstract ``Machine`` below; concrete
backends supply the primitive steps and the hardware configuration calls.
"""

from __future__ import annotations

import abc
import argparse
import dataclasses
import time
from typing import Callable, Dict, List, Tuple

from b2d import models, state
from b2d.constants import STOP_POLL_INTERVAL, STOP_POLLS
from b2d.exceptions import CommandFailed, DriverAlreadyRegistered, DriverNotSupported, PollTimeout
from b2d.models import MachineConfig, MachineState
from b2d.utils import log

InitFunc = Callable[[MachineConfig], "Machine"]
ConfigHook = Callable[[argparse.ArgumentParser], None]

_STEP_METHODS = {
    state.Step.RESUME: "_resume",
    state.Step.BOOT: "_boot",
    state.Step.SAVESTATE: "_savestate",
    state.Step.PAUSE: "_pause",
    state.Step.POWEROFF: "_hard_poweroff",
    state.Step.RESET: "_reset",
    state.Step.UNREGISTER: "_unregister",
}


class Machine(abc.ABC):
    """A hypervisor-backed machine.

    ``info`` holds the last observed state and is only trusted until the next
    ``refresh()``; every high-level operation refreshes before and after acting.
    """

    addr = "localhost"

    def __init__(self, info: models.Machine) -> None:
        self.info = info

    @property
    def name(self) -> str:
        return self.info.name

    @property
    def state(self) -> MachineState:
        return self.info.state

    @property
    def serial_file(self) -> str:
        return self.info.serial_file

    @property
    def docker_port(self) -> int:
        return self.info.docker_port

    @property
    def ssh_port(self) -> int:
        return self.info.ssh_port

    # High-level operations.

    def start(self) -> None:
        self._transition("start")

    def stop(self) -> None:
        """Gracefully shut down, polling until the hypervisor reports poweroff."""
        self._transition("stop")

    def save(self) -> None:
        self._transition("save")

    def pause(self) -> None:
        self._transition("pause")

    def poweroff(self) -> None:
        """Cut power immediately. May corrupt the guest filesystem."""
        self._transition("poweroff")

    def restart(self) -> None:
        self._transition("restart")

    def reset(self) -> None:
        """Cold reboot. May corrupt the guest filesystem."""
        self._transition("reset")

    def delete(self) -> None:
        """Unregister the machine and delete its backing storage."""
        self._transition("delete")

    def _transition(self, operation: str) -> None:
        self.refresh()
        steps = state.plan(operation, self.state, self.name)
        if not steps:
            log("DEBUG", f"{operation}: nothing to do for {self.name} ({self.state})")
            return
        log("DEBUG", f"{operation}: {self.name} {self.state} -> {', '.join(step.value for step in steps)}")
        for step in steps:
            if step is state.Step.ACPI_SHUTDOWN:
                self._wait_for_poweroff()
            else:
                getattr(self, _STEP_METHODS[step])()
                self.refresh()

    def _wait_for_poweroff(self) -> None:
        for _ in range(STOP_POLLS):
            try:
                self._acpi_shutdown()
            except CommandFailed:
                # The guest may have powered off since the last poll.
                self.refresh()
                if self.state is MachineState.POWEROFF:
                    return
                raise
            time.sleep(STOP_POLL_INTERVAL)
            self.refresh()
            if self.state is MachineState.POWEROFF:
                return
        raise PollTimeout("timed out waiting for VM to stop", f"state is {self.state}")

    def to_dict(self) -> Dict[str, object]:
        data = dataclasses.asdict(self.info)
        data["state"] = self.info.state.value
        data["flag"] = sorted(member.name.lower() for member in models.Flag if member and member in self.info.flag)
        return data

    @abc.abstractmethod
    def refresh(self) -> None:
        """Re-read ``info`` from the hypervisor, using shadow states instead of raising."""

    # Primitives used by the transition table.

    @abc.abstractmethod
    def _resume(self) -> None: ...

    @abc.abstractmethod
    def _boot(self) -> None: ...

    @abc.abstractmethod
    def _acpi_shutdown(self) -> None: ...

    @abc.abstractmethod
    def _savestate(self) -> None: ...

    @abc.abstractmethod
    def _pause(self) -> None: ...

    @abc.abstractmethod
    def _hard_poweroff(self) -> None: ...

    @abc.abstractmethod
    def _reset(self) -> None: ...

    @abc.abstractmethod
    def _unregister(self) -> None: ...

    # Hardware description.

    @abc.abstractmethod
    def modify(self) -> None:
        """Apply ``info`` (cpus, memory, flags, boot order, serial) in one call."""

    @abc.abstractmethod
    def add_natpf(self, n: int, name: str, rule: models.PFRule) -> None: ...

    @abc.abstractmethod
    def del_natpf(self, n: int, name: str) -> None: ...

    @abc.abstractmethod
    def set_nic(self, n: int, nic: models.NIC) -> None: ...

    @abc.abstractmethod
    def add_storage_ctl(self, name: str, ctl: models.StorageController) -> None: ...

    @abc.abstractmethod
    def del_storage_ctl(self, name: str) -> None: ...

    @abc.abstractmethod
    def attach_storage(self, ctl_name: str, medium: models.StorageMedium) -> None: ...


class DriverRegistry:
    """Maps driver names to init functions and option hooks."""

    def __init__(self) -> None:
        self._drivers: Dict[str, InitFunc] = {}
        self._config_hooks: Dict[str, ConfigHook] = {}

    def register(self, name: str, init_fn: InitFunc) -> None:
        if name in self._drivers:
            raise DriverAlreadyRegistered(name)
        self._drivers[name] = init_fn

    def register_config(self, name: str, hook: ConfigHook) -> None:
        if name in self._config_hooks:
            raise DriverAlreadyRegistered(name)
        self._config_hooks[name] = hook

    def init(self, cfg: MachineConfig) -> Machine:
        try:
            init_fn = self._drivers[cfg.driver]
        except KeyError:
            raise DriverNotSupported(cfg.driver) from None
        return init_fn(cfg)

    def names(self) -> List[str]:
        return sorted(self._drivers)

    def config_hooks(self) -> List[Tuple[str, ConfigHook]]:
        return sorted(self._config_hooks.items())

    def __contains__(self, name: object) -> bool:
        return name in self._drivers


def default_registry() -> DriverRegistry:
    """Build a registry with the bundled drivers."""
    from b2d import dummy, virtualbox

    registry = DriverRegistry()
    virtualbox.register(registry)
    dummy.register(registry)
    return registry
