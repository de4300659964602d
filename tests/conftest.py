"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from b2d import dummy, utils
from b2d.driver import DriverRegistry
from b2d.models import MachineConfig, MachineState


@pytest.fixture
def machine_config(tmp_path) -> MachineConfig:
    """Return a MachineConfig with the stock defaults rooted in a temp dir."""
    return MachineConfig(
        vm="boot2docker-vm",
        driver="dummy",
        dir=tmp_path,
        iso=tmp_path / "boot2docker.iso",
        ssh="ssh",
        ssh_gen="ssh-keygen",
        ssh_key=tmp_path / "id_boot2docker",
        disk_size=20000,
        memory=1024,
        cpus=2,
        ssh_port=2022,
        docker_port=2375,
        host_ip="192.168.59.3",
        netmask="255.255.255.0",
        dhcp_ip="192.168.59.99",
        lower_ip="192.168.59.103",
        upper_ip="192.168.59.254",
        dhcp_enabled=True,
        serial=False,
        serial_file=tmp_path / "boot2docker-vm.sock",
        vbm="VBoxManage",
    )


@pytest.fixture
def dummy_registry():
    """A registry holding only the in-memory driver; returns (registry, driver)."""
    registry = DriverRegistry()
    driver = dummy.register(registry)
    return registry, driver


@pytest.fixture
def dummy_machine(machine_config):
    def _make(state: MachineState = MachineState.POWEROFF, stop_responds: bool = True):
        machine = dummy.new_machine(machine_config, state)
        machine.stop_responds = stop_responds
        return machine

    return _make


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Point config lookups at an empty temp dir and clear related env vars."""
    for name in ("BOOT2DOCKER_PROFILE", "B2D_VERBOSE", "DOCKER_HOST", "DOCKER_CERT_PATH", "DOCKER_TLS_VERIFY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BOOT2DOCKER_DIR", str(tmp_path))
    monkeypatch.setenv("SHELL", "/bin/bash")
    return Path(tmp_path)


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep DEBUG output off unless a test turns it on."""
    utils.set_verbose(False)
    yield
    utils.set_verbose(False)
