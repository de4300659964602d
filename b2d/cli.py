"""CLI entry points for b2d.

Exit codes: 0 on success, 1 when the requested operation failed and 2 when
the machine could not be queried at all (hypervisor tool missing, unknown
machine, unreadable state).
"""

from __future__ import annotations

import os
from typing import Callable, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from b2d import __version__
from b2d.config import COMMANDS, config_dir, dump_config, parse_config, profile_path
from b2d.driver import DriverRegistry, Machine, default_registry
from b2d.exceptions import MachineNotFound, ManagerError
from b2d.models import MachineConfig, MachineState
from b2d.provision import discover, export_hint, guest_shell, init_machine, shell_commands, up
from b2d.remote import request_ip
from b2d.state import UNSAFE_OPERATIONS
from b2d.utils import get_env, is_verbose, log, set_verbose

Handler = Callable[[MachineConfig, DriverRegistry, List[str]], int]

ALIASES = {
    "start": "up",
    "boot": "up",
    "resume": "up",
    "suspend": "save",
    "down": "stop",
    "halt": "stop",
    "destroy": "delete",
}


def _shell_name() -> str:
    return "fish" if (get_env("SHELL") or "").endswith("fish") else "sh"


def get_machine(cfg: MachineConfig, registry: DriverRegistry) -> Optional[Machine]:
    """Look the machine up, logging why it could not be found."""
    try:
        return registry.init(cfg)
    except MachineNotFound:
        log("ERROR", f"Machine {cfg.vm!r} does not exist (run 'b2d init' first)")
    except ManagerError as exc:
        log("ERROR", f"Failed to get machine {cfg.vm!r}: {exc}")
    return None


def _transition(operation: str) -> Handler:
    def handler(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
        machine = get_machine(cfg, registry)
        if machine is None:
            return 2
        if operation in UNSAFE_OPERATIONS:
            log("WARN", f"{operation} skips the guest shutdown and may corrupt the VM's disk")
        try:
            getattr(machine, operation)()
        except ManagerError as exc:
            log("ERROR", f"Failed to {operation} machine {cfg.vm!r}: {exc}")
            return exc.exit_code
        log("INFO", f"{cfg.vm}: {machine.state}")
        return 0

    handler.__name__ = f"cmd_{operation}"
    return handler


def cmd_init(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    try:
        init_machine(registry, cfg)
    except ManagerError as exc:
        log("ERROR", f"Failed to create VM {cfg.vm!r}: {exc}")
        return exc.exit_code
    log("INFO", "Done. Type 'b2d up' to start the VM.")
    return 0


def cmd_up(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    machine = get_machine(cfg, registry)
    if machine is None:
        return 2
    try:
        endpoint = up(machine, cfg)
    except ManagerError as exc:
        log("ERROR", f"Failed to start machine {cfg.vm!r}: {exc}")
        return exc.exit_code
    for line in export_hint(endpoint, os.environ, _shell_name()):
        log("INFO", line)
    return 0


def cmd_delete(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    try:
        machine = registry.init(cfg)
    except MachineNotFound:
        log("INFO", f"Machine {cfg.vm!r} does not exist.")
        return 0
    except ManagerError as exc:
        log("ERROR", f"Failed to get machine {cfg.vm!r}: {exc}")
        return 2
    try:
        machine.delete()
    except ManagerError as exc:
        log("ERROR", f"Failed to delete machine {cfg.vm!r}: {exc}")
        return exc.exit_code
    log("SUCCESS", f"Deleted {cfg.vm}")
    return 0


def cmd_ssh(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    machine = get_machine(cfg, registry)
    if machine is None:
        return 2
    if machine.state is not MachineState.RUNNING:
        log("ERROR", f"VM {cfg.vm!r} is not running.")
        return 1
    try:
        rc = guest_shell(machine, cfg).interactive(extra)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return exc.exit_code
    return 0 if rc == 0 else 1


def cmd_info(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    machine = get_machine(cfg, registry)
    if machine is None:
        return 2
    print(yaml.safe_dump(machine.to_dict(), default_flow_style=False, sort_keys=True), end="")
    return 0


def cmd_status(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    machine = get_machine(cfg, registry)
    if machine is None:
        return 2
    print(machine.state)
    return 0


def cmd_ip(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    machine = get_machine(cfg, registry)
    if machine is None:
        return 2
    if machine.state is not MachineState.RUNNING:
        log("ERROR", f"VM {cfg.vm!r} is not running.")
        return 1
    try:
        ip = request_ip(guest_shell(machine, cfg))
    except ManagerError as exc:
        log("ERROR", f"Failed to get VM host-only IP address: {exc}")
        return exc.exit_code
    print(ip)
    return 0


def _endpoint_command(render: Callable) -> Handler:
    def handler(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
        machine = get_machine(cfg, registry)
        if machine is None:
            return 2
        try:
            endpoint = discover(machine, cfg)
        except ManagerError as exc:
            log("ERROR", f"Failed to find the Docker endpoint of {cfg.vm!r}: {exc}")
            return exc.exit_code
        for line in render(endpoint):
            print(line)
        return 0

    return handler


cmd_socket = _endpoint_command(lambda endpoint: [endpoint.socket])
cmd_shellinit = _endpoint_command(lambda endpoint: shell_commands(endpoint, _shell_name()))


def cmd_config(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    log("INFO", f"b2d profile filename: {profile_path(config_dir())}")
    print(dump_config(cfg), end="")
    return 0


def cmd_version(cfg: MachineConfig, registry: DriverRegistry, extra: List[str]) -> int:
    print(f"b2d {__version__}")
    return 0


HANDLERS: Dict[str, Handler] = {
    "init": cmd_init,
    "up": cmd_up,
    "ssh": cmd_ssh,
    "save": _transition("save"),
    "pause": _transition("pause"),
    "stop": _transition("stop"),
    "poweroff": _transition("poweroff"),
    "restart": _transition("restart"),
    "reset": _transition("reset"),
    "delete": cmd_delete,
    "info": cmd_info,
    "status": cmd_status,
    "ip": cmd_ip,
    "socket": cmd_socket,
    "shellinit": cmd_shellinit,
    "config": cmd_config,
    "version": cmd_version,
}


def run_command(command: str, extra: List[str], cfg: MachineConfig, registry: DriverRegistry) -> int:
    handler = HANDLERS.get(ALIASES.get(command, command))
    if handler is None:
        log("ERROR", f"Unknown command '{command}'. Use one of: {', '.join(COMMANDS)}")
        return 1
    return handler(cfg, registry, extra)


def main(argv: Optional[List[str]] = None, registry: Optional[DriverRegistry] = None) -> int:
    registry = registry or default_registry()
    try:
        cfg, args = parse_config(argv, registry)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    set_verbose(cfg.verbose or is_verbose())
    if args.command == "help":
        print(f"Usage: b2d [<options>] {{{'|'.join(COMMANDS)}}} [<args>]")
        return 0
    return run_command(args.command, args.args, cfg, registry)
