"""Machine provisioning and the ``up`` readiness pipeline for b2d."""

from __future__ import annotations

import dataclasses
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

from b2d.constants import PROBE_TIMEOUT, PROBE_WAIT, SETTLE_DELAY, UP_ATTEMPTS
from b2d.driver import DriverRegistry, Machine
from b2d.exceptions import MachineExists, MachineNotFound, ManagerError, PollTimeout, ToolUnavailable
from b2d.models import MachineConfig, MachineState
from b2d.remote import GuestShell, SSHTarget, request_certs, request_ip, request_ip_from_serial, request_socket, request_tls
from b2d.utils import ensure_directory, log, port_in_use, read_port, run


@dataclass
class Endpoint:
    """Where the guest's Docker daemon can be reached from the host."""

    ip: str = ""
    socket: str = ""
    cert_dir: Optional[Path] = None
    tls: bool = False


def ssh_port(machine: Machine, cfg: MachineConfig) -> int:
    """The host port forwarded to the guest's sshd; the configured one when the machine reports none."""
    return machine.ssh_port or cfg.ssh_port


def guest_shell(machine: Machine, cfg: MachineConfig) -> GuestShell:
    return GuestShell(SSHTarget(ssh=cfg.ssh, key=cfg.ssh_key, port=ssh_port(machine, cfg), host=machine.addr))


def ensure_ssh_key(cfg: MachineConfig) -> None:
    if cfg.ssh_key.exists():
        return
    ensure_directory(cfg.ssh_key.parent)
    log("INFO", f"Generating SSH key {cfg.ssh_key}")
    result = run([cfg.ssh_gen, "-t", "rsa", "-N", "", "-f", str(cfg.ssh_key)], check=False)
    if result.returncode != 0:
        raise ManagerError(f"Error generating new SSH key into {cfg.ssh_key} (exit status {result.returncode})")


def check_port_free(option: str, port: int) -> None:
    if port_in_use("localhost", port):
        raise ManagerError(f"--{option}={port} on localhost is occupied. Please choose another one.")


def init_machine(registry: DriverRegistry, cfg: MachineConfig) -> Machine:
    """Check the host is ready, then have the driver create and configure the machine."""
    try:
        registry.init(cfg)
    except MachineNotFound:
        pass
    else:
        raise MachineExists(cfg.vm)

    check_port_free("dockerport", cfg.docker_port)
    check_port_free("sshport", cfg.ssh_port)
    if not cfg.iso.is_file():
        raise ManagerError(f"ISO image not found at {cfg.iso}; download boot2docker.iso there or pass --iso")
    ensure_ssh_key(cfg)

    machine = registry.init(dataclasses.replace(cfg, init=True))
    log("SUCCESS", f"Created VM {machine.name}")
    return machine


def _serial_supported(machine: Machine, cfg: MachineConfig) -> bool:
    return cfg.serial and bool(machine.serial_file) and sys.platform != "win32"


def wait_for_ip(machine: Machine, cfg: MachineConfig, shell: GuestShell, attempts: int = UP_ATTEMPTS) -> str:
    """Poll the serial console (if enabled) and then SSH until the guest reports its host-only address."""
    port = ssh_port(machine, cfg)
    last_error: Optional[object] = None
    for _ in range(attempts):
        if _serial_supported(machine, cfg):
            try:
                return request_ip_from_serial(machine.serial_file, timeout=PROBE_WAIT)
            except (OSError, ManagerError) as exc:
                log("DEBUG", f"Serial console probe failed: {exc}")
                last_error = exc
        try:
            read_port(machine.addr, port, attempts=1, wait=PROBE_WAIT, timeout=PROBE_TIMEOUT)
        except OSError as exc:
            last_error = exc
            print(".", end="", file=sys.stderr, flush=True)
            continue
        try:
            return request_ip(shell)
        except ToolUnavailable:
            raise
        except ManagerError as exc:
            log("DEBUG", f"SSH address lookup failed: {exc}")
            last_error = exc
            time.sleep(PROBE_WAIT)
    raise PollTimeout("Auto detection of the VM's IP address failed", last_error)


def wait_for_socket(shell: GuestShell, ip: str, attempts: int = UP_ATTEMPTS) -> str:
    """Poll for the daemon's listen address, then try once more after a short pause."""
    for _ in range(attempts):
        try:
            return request_socket(shell, ip)
        except ToolUnavailable:
            raise
        except ManagerError as exc:
            log("DEBUG", f"Docker socket lookup failed: {exc}")
            time.sleep(PROBE_WAIT)
    time.sleep(SETTLE_DELAY)
    log("INFO", "Trying to get Docker socket one more time")
    try:
        return request_socket(shell, ip)
    except ToolUnavailable:
        raise
    except ManagerError as exc:
        raise PollTimeout("Docker daemon did not report a socket", exc) from exc


def fetch_tls(shell: GuestShell, cfg: MachineConfig, endpoint: Endpoint, name: str) -> None:
    """Best effort: a guest without TLS material is not an error."""
    try:
        endpoint.tls = request_tls(shell)
        endpoint.cert_dir = request_certs(shell, cfg.cert_root, name)
    except ManagerError as exc:
        log("WARN", f"Could not fetch TLS certificates: {exc}")


def up(machine: Machine, cfg: MachineConfig, shell: Optional[GuestShell] = None) -> Endpoint:
    """Start the machine from any state and wait until its Docker daemon is reachable."""
    machine.refresh()
    if machine.state is MachineState.UNREGISTERED:
        raise MachineNotFound(machine.name)
    machine.start()
    if machine.state is not MachineState.RUNNING:
        raise ManagerError(f"Failed to start machine {machine.name!r}: state is {machine.state} (run again with -v for details)")

    log("INFO", "Waiting for VM and Docker daemon to start...")
    # Probing too early can kill the serial pipe/socket.
    time.sleep(SETTLE_DELAY)
    shell = shell or guest_shell(machine, cfg)
    endpoint = Endpoint()
    try:
        endpoint.ip = wait_for_ip(machine, cfg, shell)
    finally:
        print("", file=sys.stderr, flush=True)
    log("SUCCESS", "Started.")
    endpoint.socket = wait_for_socket(shell, endpoint.ip)
    fetch_tls(shell, cfg, endpoint, machine.name)
    return endpoint


def discover(machine: Machine, cfg: MachineConfig, shell: Optional[GuestShell] = None) -> Endpoint:
    """Resolve the endpoint of an already running machine without waiting."""
    if machine.state is not MachineState.RUNNING:
        raise ManagerError(f"VM {machine.name!r} is not running.")
    shell = shell or guest_shell(machine, cfg)
    endpoint = Endpoint(ip=request_ip(shell))
    endpoint.socket = request_socket(shell, endpoint.ip)
    fetch_tls(shell, cfg, endpoint, machine.name)
    return endpoint


def env_vars(endpoint: Endpoint) -> Mapping[str, Optional[str]]:
    """Variables a Docker client needs; None means the variable must be unset."""
    tls = endpoint.tls and endpoint.cert_dir is not None
    return {
        "DOCKER_HOST": endpoint.socket,
        "DOCKER_CERT_PATH": str(endpoint.cert_dir) if tls else None,
        "DOCKER_TLS_VERIFY": "1" if tls else None,
    }


def shell_commands(endpoint: Endpoint, shell_name: str = "sh") -> List[str]:
    """Render ``env_vars`` as statements for the given shell flavour."""
    lines = []
    for name, value in env_vars(endpoint).items():
        if shell_name == "fish":
            lines.append(f"set -e {name}" if value is None else f"set -x {name} {value}")
        else:
            lines.append(f"unset {name}" if value is None else f"export {name}={value}")
    return lines


def export_hint(endpoint: Endpoint, environ: Mapping[str, str], shell_name: str = "sh") -> List[str]:
    """Describe how to point the caller's environment at ``endpoint``; never touches ``environ``."""
    desired = env_vars(endpoint)
    if all(environ.get(name) == value for name, value in desired.items()):
        return ["Your environment variables are already set correctly."]
    lines = ["To connect the Docker client to the Docker daemon, please set:"]
    lines += [f"    {line}" for line in shell_commands(endpoint, shell_name)]
    return lines
