"""Tests for b2d.driver module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from b2d import driver
from b2d.driver import DriverRegistry, default_registry
from b2d.exceptions import DriverAlreadyRegistered, DriverNotSupported, IllegalState, MachineNotFound, PollTimeout
from b2d.models import Flag, MachineState


class TestDriverRegistry:
    def test_duplicate_registration_fails_fast(self):
        registry = DriverRegistry()
        registry.register("fake", MagicMock())
        with pytest.raises(DriverAlreadyRegistered, match="driver already registered fake"):
            registry.register("fake", MagicMock())

    def test_duplicate_config_hook_fails(self):
        registry = DriverRegistry()
        registry.register_config("fake", MagicMock())
        with pytest.raises(DriverAlreadyRegistered):
            registry.register_config("fake", MagicMock())

    def test_unknown_driver_not_supported(self, machine_config):
        registry = DriverRegistry()
        with pytest.raises(DriverNotSupported, match="driver not supported: dummy"):
            registry.init(machine_config)

    def test_init_calls_registered_function(self, machine_config):
        registry = DriverRegistry()
        init_fn = MagicMock(return_value="machine")
        registry.register("dummy", init_fn)
        assert registry.init(machine_config) == "machine"
        init_fn.assert_called_once_with(machine_config)

    def test_registries_are_independent(self):
        first = default_registry()
        second = default_registry()
        assert first.names() == ["dummy", "virtualbox"]
        first.register("extra", MagicMock())
        assert "extra" in first
        assert "extra" not in second

    def test_config_hooks_listed(self):
        registry = default_registry()
        assert [name for name, _hook in registry.config_hooks()] == ["virtualbox"]


class TestMachineTransitions:
    def test_start_from_poweroff_boots(self, dummy_machine):
        machine = dummy_machine(MachineState.POWEROFF)
        machine.start()
        assert machine.state is MachineState.RUNNING
        assert ("boot",) in machine.calls

    def test_start_from_paused_resumes(self, dummy_machine):
        machine = dummy_machine(MachineState.PAUSED)
        machine.start()
        assert ("resume",) in machine.calls
        assert ("boot",) not in machine.calls

    def test_stop_on_poweroff_is_noop(self, dummy_machine):
        machine = dummy_machine(MachineState.POWEROFF)
        machine.stop()
        assert machine.state is MachineState.POWEROFF
        assert machine.calls == [("refresh",)]

    def test_stop_polls_until_poweroff(self, dummy_machine):
        machine = dummy_machine(MachineState.RUNNING)
        with patch("b2d.driver.time.sleep") as mock_sleep:
            machine.stop()
        assert machine.state is MachineState.POWEROFF
        mock_sleep.assert_called_once_with(driver.STOP_POLL_INTERVAL)

    def test_stop_times_out_when_guest_ignores_acpi(self, dummy_machine):
        machine = dummy_machine(MachineState.RUNNING, stop_responds=False)
        with patch("b2d.driver.time.sleep") as mock_sleep:
            with pytest.raises(PollTimeout, match="timed out waiting for VM to stop") as exc:
                machine.stop()
        assert mock_sleep.call_count == driver.STOP_POLLS
        assert machine.calls.count(("acpi_shutdown",)) == driver.STOP_POLLS
        assert "running" in str(exc.value.last_error)

    def test_delete_running_forces_poweroff_first(self, dummy_machine):
        machine = dummy_machine(MachineState.RUNNING)
        machine.delete()
        primitives = [call for call in machine.calls if call != ("refresh",)]
        assert primitives == [("poweroff",), ("unregister",)]
        assert machine.state is MachineState.UNREGISTERED

    def test_delete_unregistered_is_noop(self, dummy_machine):
        machine = dummy_machine(MachineState.UNREGISTERED)
        machine.delete()
        assert machine.calls == [("refresh",)]

    def test_pause_from_poweroff_names_state(self, dummy_machine):
        machine = dummy_machine(MachineState.POWEROFF)
        with pytest.raises(IllegalState, match="poweroff"):
            machine.pause()

    def test_operations_on_unregistered_raise_not_found(self, dummy_machine):
        machine = dummy_machine(MachineState.UNREGISTERED)
        with pytest.raises(MachineNotFound):
            machine.start()

    def test_restart_from_saved(self, dummy_machine):
        machine = dummy_machine(MachineState.SAVED)
        with patch("b2d.driver.time.sleep"):
            machine.restart()
        primitives = [call for call in machine.calls if call != ("refresh",)]
        assert primitives == [("boot",), ("acpi_shutdown",), ("boot",)]
        assert machine.state is MachineState.RUNNING


class TestToDict:
    def test_serialises_state_and_flags(self, dummy_machine):
        machine = dummy_machine(MachineState.RUNNING)
        machine.info.flag = Flag.PAE | Flag.ACPI
        data = machine.to_dict()
        assert data["state"] == "running"
        assert data["flag"] == ["acpi", "pae"]
        assert data["name"] == "boot2docker-vm"
