"""Configuration loading for b2d: built-in defaults, the YAML profile and command-line flags."""

from __future__ import annotations

import argparse
import dataclasses
import ipaddress
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from b2d.constants import (
    DEFAULT_CPUS,
    DEFAULT_DHCP_IP,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_DOCKER_PORT,
    DEFAULT_DRIVER,
    DEFAULT_HOST_IP,
    DEFAULT_LOWER_IP,
    DEFAULT_MEMORY_MB,
    DEFAULT_NETMASK,
    DEFAULT_SSH,
    DEFAULT_SSH_KEY,
    DEFAULT_SSH_KEYGEN,
    DEFAULT_SSH_PORT,
    DEFAULT_UPPER_IP,
    DEFAULT_VBM,
    DEFAULT_VM_NAME,
    MAX_CPUS,
)
from b2d.driver import DriverRegistry
from b2d.exceptions import ManagerError
from b2d.models import MachineConfig
from b2d.utils import get_env, parse_bool, parse_int

COMMANDS = (
    "init",
    "up",
    "start",
    "boot",
    "resume",
    "ssh",
    "save",
    "suspend",
    "pause",
    "down",
    "stop",
    "halt",
    "poweroff",
    "restart",
    "reset",
    "delete",
    "destroy",
    "info",
    "status",
    "ip",
    "socket",
    "shellinit",
    "config",
    "version",
)


def config_dir() -> Path:
    """Return the directory holding the profile, ISO, serial socket and certificates."""
    raw = get_env("BOOT2DOCKER_DIR")
    if raw:
        return Path(os.path.expanduser(raw))
    return Path.home() / ".boot2docker"


def profile_path(directory: Optional[Path] = None) -> Path:
    raw = get_env("BOOT2DOCKER_PROFILE")
    if raw:
        return Path(os.path.expanduser(raw))
    return (directory or config_dir()) / "profile"


def _expand(value: object) -> object:
    if isinstance(value, str):
        return os.path.expanduser(os.path.expandvars(value))
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


def load_profile(path: Path) -> Dict[str, object]:
    """Read the YAML profile; option names may use dashes or underscores."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ManagerError(f"Profile {path} is not valid YAML: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManagerError(f"Profile {path} must be a mapping of option names to values")
    return {str(key).strip().lower().replace("-", "_"): _expand(value) for key, value in data.items()}


def build_parser(registry: DriverRegistry) -> argparse.ArgumentParser:
    """Create the shared options, then let every registered driver add its own."""
    parser = argparse.ArgumentParser(prog="b2d", description="Manage the boot2docker virtual machine")
    parser.add_argument("-v", "--verbose", action="store_true", default=False, help="display verbose command invocations")
    parser.add_argument("--driver", default=DEFAULT_DRIVER, help=f"virtual machine backend ({', '.join(registry.names())})")
    parser.add_argument("--vm", default=DEFAULT_VM_NAME, help="virtual machine name")
    parser.add_argument("--iso", default=None, help="path to boot2docker ISO image (default <dir>/boot2docker.iso)")
    parser.add_argument("-s", "--disksize", default=DEFAULT_DISK_SIZE_MB, help="boot2docker disk image size (in MB)")
    parser.add_argument("-m", "--memory", default=DEFAULT_MEMORY_MB, help="virtual machine memory size (in MB)")
    parser.add_argument("--cpus", default=DEFAULT_CPUS, help=f"number of virtual CPUs (at most {MAX_CPUS})")
    parser.add_argument("--sshport", default=DEFAULT_SSH_PORT, help="host SSH port (forward to port 22 in VM)")
    parser.add_argument("--dockerport", default=DEFAULT_DOCKER_PORT, help="host Docker port (forward to port 2375 in VM)")
    parser.add_argument("--hostip", default=DEFAULT_HOST_IP, help="VirtualBox host-only network IP address")
    parser.add_argument("--netmask", default=DEFAULT_NETMASK, help="VirtualBox host-only network mask")
    parser.add_argument("--dhcp", action=argparse.BooleanOptionalAction, default=True, help="enable VirtualBox host-only network DHCP")
    parser.add_argument("--dhcpip", default=DEFAULT_DHCP_IP, help="VirtualBox host-only network DHCP server address")
    parser.add_argument("--lowerip", default=DEFAULT_LOWER_IP, help="VirtualBox host-only network DHCP lower bound")
    parser.add_argument("--upperip", default=DEFAULT_UPPER_IP, help="VirtualBox host-only network DHCP upper bound")
    parser.add_argument("--ssh", default=DEFAULT_SSH, help="path to SSH client utility")
    parser.add_argument("--ssh-keygen", dest="ssh_keygen", default=DEFAULT_SSH_KEYGEN, help="path to ssh-keygen utility")
    parser.add_argument("--sshkey", default=str(DEFAULT_SSH_KEY), help="path to SSH key to use")
    parser.add_argument("--serial", action=argparse.BooleanOptionalAction, default=False, help="try serial console to get IP address")
    parser.add_argument("--serialfile", default=None, help="path to the serial socket/pipe (default <dir>/<vm>.sock)")
    parser.add_argument("command", nargs="?", default="help", help=f"one of: {', '.join(COMMANDS)}")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="extra arguments (passed to the remote side by 'ssh')")
    for _name, hook in registry.config_hooks():
        hook(parser)
    return parser


def _ipv4(name: str, raw: object) -> str:
    try:
        return str(ipaddress.IPv4Address(str(raw).strip()))
    except ipaddress.AddressValueError:
        raise ManagerError(f"{name} must be an IPv4 address (got '{raw}')") from None


def make_config(args: argparse.Namespace, directory: Path) -> MachineConfig:
    """Validate parsed options and freeze them into a MachineConfig."""
    vm = str(args.vm).strip()
    if not vm:
        raise ManagerError("vm must not be empty")
    basevmdk = str(getattr(args, "basevmdk", "") or "").strip()
    return MachineConfig(
        vm=vm,
        driver=str(args.driver).strip(),
        dir=directory,
        iso=Path(args.iso) if args.iso else directory / "boot2docker.iso",
        ssh=str(args.ssh),
        ssh_gen=str(args.ssh_keygen),
        ssh_key=Path(os.path.expanduser(str(args.sshkey))),
        disk_size=parse_int("disksize", args.disksize),
        memory=parse_int("memory", args.memory),
        cpus=parse_int("cpus", args.cpus, max_val=MAX_CPUS),
        ssh_port=parse_int("sshport", args.sshport, max_val=65535),
        docker_port=parse_int("dockerport", args.dockerport, max_val=65535),
        host_ip=_ipv4("hostip", args.hostip),
        netmask=_ipv4("netmask", args.netmask),
        dhcp_ip=_ipv4("dhcpip", args.dhcpip),
        lower_ip=_ipv4("lowerip", args.lowerip),
        upper_ip=_ipv4("upperip", args.upperip),
        dhcp_enabled=parse_bool("dhcp", args.dhcp),
        serial=parse_bool("serial", args.serial),
        serial_file=Path(args.serialfile) if args.serialfile else directory / f"{vm}.sock",
        vbm=str(getattr(args, "vbm", DEFAULT_VBM)),
        vmdk=Path(os.path.expanduser(basevmdk)) if basevmdk else None,
        shares=tuple(str(item) for item in (getattr(args, "vbox_share", None) or [])),
        verbose=parse_bool("verbose", args.verbose),
    )


def parse_config(argv: Optional[List[str]], registry: DriverRegistry) -> Tuple[MachineConfig, argparse.Namespace]:
    """Resolve defaults, then the profile, then flags; returns the config and the raw namespace."""
    parser = build_parser(registry)
    directory = config_dir()
    profile = load_profile(profile_path(directory))
    if profile:
        allowed = set(vars(parser.parse_args([]))) - {"command", "args"}
        unknown = sorted(set(profile) - allowed)
        if unknown:
            raise ManagerError(f"Unknown option(s) in profile {profile_path(directory)}: {', '.join(unknown)}")
        parser.set_defaults(**profile)
    args = parser.parse_args(argv)
    return make_config(args, directory), args


def config_as_dict(cfg: MachineConfig) -> Dict[str, object]:
    data: Dict[str, object] = {}
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if isinstance(value, Path):
            value = str(value)
        elif isinstance(value, tuple):
            value = list(value)
        data[field.name] = value
    return data


def dump_config(cfg: MachineConfig) -> str:
    return yaml.safe_dump(config_as_dict(cfg), default_flow_style=False, sort_keys=True)
