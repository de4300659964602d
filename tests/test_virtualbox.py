"""Tests for b2d.virtualbox module."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from b2d import virtualbox
from b2d.driver import DriverRegistry
from b2d.exceptions import CommandFailed, MachineExists, MachineNotFound, ManagerError, ToolUnavailable
from b2d.models import (
    NIC,
    DriveType,
    Flag,
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
from b2d.virtualbox import VirtualBoxMachine, create_machine, init_driver, parse_shares


def vm_info_text(state="poweroff", base="/vms/boot2docker-vm"):
    return (
        'name="boot2docker-vm"\n'
        'UUID="4c9ee4ef-8ca2-4c3a-9a6b-0a1d1b2c3d4e"\n'
        f'CfgFile="{base}/boot2docker-vm.vbox"\n'
        "memory=1024\n"
        "cpus=1\n"
        f'VMState="{state}"\n'
    )


def make_machine(state=MachineState.POWEROFF, shares=None):
    vbm = MagicMock(return_value="")
    info = MachineInfo(name="boot2docker-vm", state=state, cpus=2, memory=2048, vram=8, ostype="Linux26_64")
    return VirtualBoxMachine(vbm, info, shares), vbm


def commands(vbm):
    return [c.args for c in vbm.call_args_list]


class TestParseShares:
    def test_default_share_used_when_empty(self):
        with patch("b2d.virtualbox.DEFAULT_SHARE", "/Users=Users"):
            assert parse_shares([]) == {"Users": "/Users"}

    def test_name_derived_from_directory(self):
        assert parse_shares(["/home/docker"]) == {"home/docker": "/home/docker"}

    def test_explicit_names(self):
        assert parse_shares(["/srv=data", "/opt=tools"]) == {"data": "/srv", "tools": "/opt"}

    def test_disable(self):
        assert parse_shares(["disable"]) == {}


class TestRefresh:
    def test_parses_info(self):
        machine, vbm = make_machine()
        vbm.return_value = vm_info_text("running")
        machine.refresh()
        assert machine.state is MachineState.RUNNING
        vbm.assert_called_once_with("showvminfo", "boot2docker-vm", "--machinereadable")

    def test_missing_machine_is_unregistered(self):
        machine, vbm = make_machine()
        vbm.side_effect = MachineNotFound("boot2docker-vm")
        machine.refresh()
        assert machine.state is MachineState.UNREGISTERED

    def test_missing_tool_is_driver_unavailable(self):
        machine, vbm = make_machine()
        vbm.side_effect = ToolUnavailable("VBoxManage")
        machine.refresh()
        assert machine.state is MachineState.DRIVER_UNAVAILABLE

    def test_failed_query_is_unknown(self):
        machine, vbm = make_machine()
        vbm.side_effect = CommandFailed(["VBoxManage"], 1, "E_ACCESSDENIED")
        machine.refresh()
        assert machine.state is MachineState.UNKNOWN

    def test_garbage_output_is_unknown(self):
        machine, vbm = make_machine()
        vbm.return_value = "memory=1024\n"
        machine.refresh()
        assert machine.state is MachineState.UNKNOWN


class TestPrimitives:
    @pytest.mark.parametrize(
        "method, expected",
        [
            ("_resume", ("controlvm", "boot2docker-vm", "resume")),
            ("_acpi_shutdown", ("controlvm", "boot2docker-vm", "acpipowerbutton")),
            ("_savestate", ("controlvm", "boot2docker-vm", "savestate")),
            ("_pause", ("controlvm", "boot2docker-vm", "pause")),
            ("_hard_poweroff", ("controlvm", "boot2docker-vm", "poweroff")),
            ("_reset", ("controlvm", "boot2docker-vm", "reset")),
            ("_unregister", ("unregistervm", "boot2docker-vm", "--delete")),
        ],
    )
    def test_argv(self, method, expected):
        machine, vbm = make_machine(MachineState.RUNNING)
        getattr(machine, method)()
        vbm.assert_called_once_with(*expected)

    def test_boot_headless(self):
        machine, vbm = make_machine()
        machine._boot()
        vbm.assert_called_once_with("startvm", "boot2docker-vm", "--type", "headless")

    def test_boot_sets_up_shares_from_poweroff(self, tmp_path):
        machine, vbm = make_machine(shares={"data": str(tmp_path), "gone": str(tmp_path / "missing")})
        machine._boot()
        calls = commands(vbm)
        assert ("sharedfolder", "add", "boot2docker-vm", "--name", "data", "--hostpath", str(tmp_path), "--automount") in calls
        assert ("setextradata", "boot2docker-vm", "VBoxInternal2/SharedFoldersEnableSymlinksCreate/data", "1") in calls
        assert not any(call[:2] == ("sharedfolder", "add") and "gone" in call for call in calls)
        assert calls[-1] == ("startvm", "boot2docker-vm", "--type", "headless")

    def test_boot_skips_shares_from_saved(self, tmp_path):
        machine, vbm = make_machine(MachineState.SAVED, shares={"data": str(tmp_path)})
        machine._boot()
        assert commands(vbm) == [("startvm", "boot2docker-vm", "--type", "headless")]

    def test_existing_share_not_added_again(self, tmp_path):
        machine, vbm = make_machine(shares={"data": str(tmp_path)})
        machine.info.shares = {"data": str(tmp_path)}
        machine._boot()
        assert not any(call[0] == "sharedfolder" for call in commands(vbm))


class ScriptedVBoxManage:
    """Keeps one machine's VMState in step with the controlvm and unregistervm calls it sees.

    ``shutdown_delay`` is how many showvminfo queries still report the machine
    as running after the first ACPI power button press.
    """

    def __init__(self, state="running", shutdown_delay=0, acpi_fails=False) -> None:
        self.state = state
        self.shutdown_delay = shutdown_delay
        self.acpi_fails = acpi_fails
        self.pending = None
        self.registered = True
        self.calls = []

    def _settle(self) -> None:
        if self.pending == 0:
            self.state = "poweroff"
            self.pending = None

    def __call__(self, *args):
        self.calls.append(args)
        if not self.registered:
            raise MachineNotFound("boot2docker-vm")
        if args[0] == "showvminfo":
            text = vm_info_text(self.state)
            if self.pending is not None:
                self.pending -= 1
                self._settle()
            return text
        if args[0] == "controlvm":
            if self.state != "running" or (self.acpi_fails and args[2] == "acpipowerbutton"):
                raise CommandFailed(["VBoxManage", *args], 1, "Machine 'boot2docker-vm' is not currently running")
            if args[2] == "acpipowerbutton" and self.pending is None:
                self.pending = self.shutdown_delay
                self._settle()
            elif args[2] == "poweroff":
                self.state = "poweroff"
            return ""
        if args[0] == "unregistervm":
            self.registered = False
            return ""
        raise AssertionError(f"unexpected VBoxManage call {args}")


def scripted_machine(vbm):
    info = MachineInfo(name="boot2docker-vm", state=MachineState.UNKNOWN)
    return VirtualBoxMachine(vbm, info)


SHOWVMINFO = ("showvminfo", "boot2docker-vm", "--machinereadable")


class TestOperations:
    def test_stop_presses_power_button_then_requeries(self):
        vbm = ScriptedVBoxManage()
        machine = scripted_machine(vbm)
        with patch("b2d.driver.time.sleep"):
            machine.stop()
        assert machine.state is MachineState.POWEROFF
        assert vbm.calls == [SHOWVMINFO, ("controlvm", "boot2docker-vm", "acpipowerbutton"), SHOWVMINFO]

    def test_stop_tolerates_guest_finishing_between_presses(self):
        vbm = ScriptedVBoxManage(shutdown_delay=1)
        machine = scripted_machine(vbm)
        with patch("b2d.driver.time.sleep") as mock_sleep:
            machine.stop()
        assert machine.state is MachineState.POWEROFF
        assert vbm.calls == [
            SHOWVMINFO,
            ("controlvm", "boot2docker-vm", "acpipowerbutton"),
            SHOWVMINFO,
            ("controlvm", "boot2docker-vm", "acpipowerbutton"),
            SHOWVMINFO,
        ]
        mock_sleep.assert_called_once()

    def test_stop_power_button_failure_while_running(self):
        vbm = ScriptedVBoxManage(acpi_fails=True)
        machine = scripted_machine(vbm)
        with patch("b2d.driver.time.sleep"):
            with pytest.raises(CommandFailed, match="not currently running"):
                machine.stop()
        assert machine.state is MachineState.RUNNING
        assert vbm.calls[-1] == SHOWVMINFO

    def test_stop_on_poweroff_only_queries(self):
        vbm = ScriptedVBoxManage(state="poweroff")
        scripted_machine(vbm).stop()
        assert vbm.calls == [SHOWVMINFO]

    def test_delete_running_powers_off_then_unregisters(self):
        vbm = ScriptedVBoxManage()
        machine = scripted_machine(vbm)
        machine.delete()
        assert vbm.calls == [
            SHOWVMINFO,
            ("controlvm", "boot2docker-vm", "poweroff"),
            SHOWVMINFO,
            ("unregistervm", "boot2docker-vm", "--delete"),
            SHOWVMINFO,
        ]
        assert machine.state is MachineState.UNREGISTERED

    def test_delete_poweroff_unregisters_directly(self):
        vbm = ScriptedVBoxManage(state="poweroff")
        machine = scripted_machine(vbm)
        machine.delete()
        assert [call[0] for call in vbm.calls] == ["showvminfo", "unregistervm", "showvminfo"]
        assert machine.state is MachineState.UNREGISTERED


class TestHardware:

    def test_modify_single_call(self):
        machine, vbm = make_machine()
        machine.info.flag = Flag.ACPI | Flag.PAE
        machine.info.boot_order = ["dvd"]
        machine.info.serial_file = "/tmp/vm.sock"
        vbm.return_value = vm_info_text()
        machine.modify()
        args = vbm.call_args_list[0].args
        assert args[:2] == ("modifyvm", "boot2docker-vm")
        flat = list(args)
        assert flat[flat.index("--cpus") + 1] == "2"
        assert flat[flat.index("--memory") + 1] == "2048"
        assert flat[flat.index("--acpi") + 1] == "on"
        assert flat[flat.index("--pae") + 1] == "on"
        assert flat[flat.index("--hpet") + 1] == "off"
        assert flat[flat.index("--boot1") + 1] == "dvd"
        assert flat[flat.index("--boot4") + 1] == "none"
        assert flat[flat.index("--uartmode1") + 1 : flat.index("--uartmode1") + 3] == ["server", "/tmp/vm.sock"]
        # modify re-reads the machine afterwards
        assert vbm.call_args_list[1].args == ("showvminfo", "boot2docker-vm", "--machinereadable")

    def test_natpf_uses_modifyvm_when_stopped(self):
        machine, vbm = make_machine(MachineState.POWEROFF)
        machine.add_natpf(1, "ssh", PFRule(PFProto.TCP, "127.0.0.1", 2022, 22))
        vbm.assert_called_once_with("modifyvm", "boot2docker-vm", "--natpf1", "ssh,tcp,127.0.0.1,2022,,22")

    def test_natpf_uses_controlvm_when_running(self):
        machine, vbm = make_machine(MachineState.RUNNING)
        machine.add_natpf(1, "docker", PFRule(PFProto.TCP, "127.0.0.1", 2375, 2375))
        vbm.assert_called_once_with("controlvm", "boot2docker-vm", "natpf1", "docker,tcp,127.0.0.1,2375,,2375")

    def test_del_natpf(self):
        machine, vbm = make_machine(MachineState.POWEROFF)
        machine.del_natpf(1, "ssh")
        vbm.assert_called_once_with("modifyvm", "boot2docker-vm", "--natpf1", "delete", "ssh")

    def test_set_nic_hostonly(self):
        machine, vbm = make_machine()
        machine.set_nic(2, NIC(network=NICNetwork.HOSTONLY, hardware=NICHardware.VIRTIO, hostonly_adapter="vboxnet0"))
        vbm.assert_called_once_with(
            "modifyvm", "boot2docker-vm",
            "--nic2", "hostonly",
            "--nictype2", "virtio",
            "--cableconnected2", "on",
            "--hostonlyadapter2", "vboxnet0",
        )

    def test_set_nic_hostonly_without_adapter(self):
        machine, _vbm = make_machine()
        with pytest.raises(ManagerError, match="has no adapter name"):
            machine.set_nic(2, NIC(network=NICNetwork.HOSTONLY))

    def test_storage_controller(self):
        machine, vbm = make_machine()
        machine.add_storage_ctl("SATA", StorageController(sys_bus=SysBus.SATA, port_count=4, host_io_cache=True, bootable=True))
        vbm.assert_called_once_with(
            "storagectl", "boot2docker-vm", "--name", "SATA", "--add", "sata",
            "--portcount", "4", "--hostiocache", "on", "--bootable", "on",
        )

    def test_del_storage_controller(self):
        machine, vbm = make_machine()
        machine.del_storage_ctl("SATA")
        vbm.assert_called_once_with("storagectl", "boot2docker-vm", "--name", "SATA", "--remove")

    def test_attach_storage(self):
        machine, vbm = make_machine()
        machine.attach_storage("SATA", StorageMedium(port=0, device=0, drive_type=DriveType.DVD, medium="/iso"))
        vbm.assert_called_once_with(
            "storageattach", "boot2docker-vm", "--storagectl", "SATA",
            "--port", "0", "--device", "0", "--type", "dvddrive", "--medium", "/iso",
        )


class FakeVBoxManage:
    """Answers the queries issued while creating a machine and records everything."""

    def __init__(self, base: Path, existing=(), create_failures=0) -> None:
        self.base = base
        self.existing = list(existing)
        self.create_failures = create_failures
        self.calls = []

    def __call__(self, *args):
        self.calls.append(args)
        if args[:2] == ("list", "vms"):
            return "".join(f'"{name}" {{00000000-0000-0000-0000-000000000000}}\n' for name in self.existing)
        if args[0] == "createvm":
            if self.create_failures:
                self.create_failures -= 1
                raise CommandFailed(["VBoxManage", *args], 1, "VBoxSVC not ready")
            return ""
        if args[0] == "showvminfo":
            return vm_info_text(base=str(self.base))
        return ""


class TestCreateMachine:
    def test_existing_machine_refused(self, machine_config, tmp_path):
        vbm = FakeVBoxManage(tmp_path, existing=["boot2docker-vm"])
        with pytest.raises(MachineExists):
            create_machine(vbm, machine_config)
        assert not any(call[0] == "createvm" for call in vbm.calls)

    def test_full_sequence(self, machine_config, tmp_path):
        vbm = FakeVBoxManage(tmp_path / "vms", create_failures=1)
        with (
            patch("b2d.virtualbox.network.get_hostonly_interface", return_value="vboxnet0") as mock_net,
            patch("b2d.virtualbox.build_disk", return_value=True) as mock_disk,
        ):
            machine = create_machine(vbm, machine_config)

        assert machine.name == "boot2docker-vm"
        mock_net.assert_called_once_with(vbm, machine_config)
        disk = tmp_path / "vms" / "boot2docker-vm.vmdk"
        mock_disk.assert_called_once_with(vbm, disk, 20000, machine_config.ssh_key, None)

        calls = vbm.calls
        assert sum(1 for call in calls if call[0] == "createvm") == 2
        assert ("setextradata", "boot2docker-vm", "VBoxInternal/CPUM/EnableHVP", "1") in calls
        assert ("modifyvm", "boot2docker-vm", "--natpf1", "ssh,tcp,127.0.0.1,2022,,22") in calls
        assert ("modifyvm", "boot2docker-vm", "--natpf1", "docker,tcp,127.0.0.1,2375,,2375") in calls

        attaches = [call for call in calls if call[0] == "storageattach"]
        assert [call[call.index("--port") + 1] for call in attaches] == ["0", "1"]
        assert attaches[0][-1] == str(machine_config.iso)
        assert attaches[1][-1] == str(disk)
        nic2 = next(call for call in calls if "--nic2" in call)
        assert nic2[-1] == "vboxnet0"

    def test_configured_cpus_reach_modifyvm(self, machine_config, tmp_path):
        cfg = replace(machine_config, cpus=3)
        vbm = FakeVBoxManage(tmp_path / "vms")
        with (
            patch("b2d.virtualbox.network.get_hostonly_interface", return_value="vboxnet0"),
            patch("b2d.virtualbox.build_disk", return_value=True),
        ):
            create_machine(vbm, cfg)
        modify = next(call for call in vbm.calls if call[0] == "modifyvm" and "--cpus" in call)
        assert modify[modify.index("--cpus") + 1] == "3"
        assert modify[modify.index("--memory") + 1] == "1024"

    def test_create_retry_exhausted(self, machine_config, tmp_path):
        vbm = FakeVBoxManage(tmp_path, create_failures=2)
        with pytest.raises(CommandFailed, match="VBoxSVC not ready"):
            create_machine(vbm, machine_config)


class TestInitDriver:
    def test_returns_existing_machine(self, machine_config):
        with patch("b2d.virtualbox.get_machine", return_value="machine") as mock_get:
            assert init_driver(machine_config) == "machine"
        assert mock_get.call_args[0][0].path == "VBoxManage"

    def test_missing_machine_without_init(self, machine_config):
        with patch("b2d.virtualbox.get_machine", side_effect=MachineNotFound("boot2docker-vm")):
            with pytest.raises(MachineNotFound):
                init_driver(machine_config)

    def test_missing_machine_with_init_creates(self, machine_config):
        cfg = replace(machine_config, init=True)
        with (
            patch("b2d.virtualbox.get_machine", side_effect=MachineNotFound("boot2docker-vm")),
            patch("b2d.virtualbox.create_machine", return_value="created") as mock_create,
        ):
            assert init_driver(cfg) == "created"
        mock_create.assert_called_once()


class TestRegister:
    def test_registers_driver_and_options(self):
        registry = DriverRegistry()
        virtualbox.register(registry)
        assert "virtualbox" in registry
        assert [name for name, _ in registry.config_hooks()] == ["virtualbox"]
