"""Global constants and path configuration for b2d."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("B2D_VERBOSE", "").lower() in TRUTHY

DEFAULT_DRIVER = "virtualbox"
DEFAULT_VM_NAME = "boot2docker-vm"
DEFAULT_SSH = "ssh"
DEFAULT_SSH_KEYGEN = "ssh-keygen"
DEFAULT_SSH_KEY = Path.home() / ".ssh" / "id_boot2docker"
DEFAULT_DISK_SIZE_MB = 20000
DEFAULT_MEMORY_MB = 1024
DEFAULT_SSH_PORT = 2022
DEFAULT_DOCKER_PORT = 2375
DEFAULT_HOST_IP = "192.168.59.3"
DEFAULT_NETMASK = "255.255.255.0"
DEFAULT_DHCP_IP = "192.168.59.99"
DEFAULT_LOWER_IP = "192.168.59.103"
DEFAULT_UPPER_IP = "192.168.59.254"

# Ports inside the guest that the NAT rules forward to.
GUEST_SSH_PORT = 22
GUEST_DOCKER_PORT = 2375

if sys.platform == "win32":
    _vbox_dir = os.environ.get("VBOX_INSTALL_PATH") or os.environ.get("VBOX_MSI_INSTALL_PATH") or r"C:\Program Files\Oracle\VirtualBox"
    DEFAULT_VBM = str(Path(_vbox_dir) / "VBoxManage.exe")
    DEFAULT_SHARE = r"C:\Users=c/Users"
elif sys.platform == "darwin":
    DEFAULT_VBM = "VBoxManage"
    DEFAULT_SHARE = "/Users=Users"
else:
    DEFAULT_VBM = "VBoxManage"
    DEFAULT_SHARE = "disable"

# Machine creation
VM_OSTYPE = "Linux26_64"
MAX_CPUS = 32
DEFAULT_CPUS = min(os.cpu_count() or 1, MAX_CPUS)
STORAGE_CONTROLLER = "SATA"
STORAGE_PORT_COUNT = 4
HVP_EXTRA_KEY = "VBoxInternal/CPUM/EnableHVP"
CREATE_ATTEMPTS = 2

# Guest boot contract
MAGIC_MARKER = "boot2docker, please format-me"
AUTHORIZED_KEYS_PATHS = (".ssh/authorized_keys", ".ssh/authorized_keys2")
GUEST_USER = "docker"
GUEST_IFACE = "eth1"
GUEST_CERT_GLOB = "/home/docker/.docker/*.pem"

# Remote commands
IP_COMMAND = f"ip addr show dev {GUEST_IFACE}"
SOCKET_COMMAND = "grep tcp:// /proc/$(cat /var/run/docker.pid)/cmdline"
DAEMON_ARGS_COMMAND = "cat /proc/$(cat /var/run/docker.pid)/cmdline"
CERTS_COMMAND = f"tar c {GUEST_CERT_GLOB}"
TLS_FLAGS = ("--tlsverify", "--tls")

# Polling limits
SETTLE_DELAY = 0.6
UP_ATTEMPTS = 30
PROBE_WAIT = 2.0
PROBE_TIMEOUT = 1.0
STOP_POLLS = 10
STOP_POLL_INTERVAL = 1.0
SERIAL_TIMEOUT = 30.0
SERIAL_INTERVAL = 1.0
SSH_TIMEOUT = 30

# Regexes for VBoxManage output
VM_NAME_UUID_RE = re.compile(r'^"(.+)" \{([0-9a-f-]+)\}$')
VM_INFO_LINE_RE = re.compile(r'^(?:"(.+?)"|(.+?))=(?:"(.*)"|(.*))$')
COLON_LINE_RE = re.compile(r"^(.+?):\s+(.*)$")
MACHINE_NOT_FOUND_RE = re.compile(r"Could not find a registered machine named '(.+)'")
HOSTONLY_CREATED_RE = re.compile(r"Interface '(.+)' was successfully created")
SERIAL_INET_RE = re.compile(r"^[\t ]*inet ([0-9.]*).*$")
SOCKET_URL_RE = re.compile(r"^tcp://([^:/\s]+):(\d+)$")
SOCKET_WILDCARD_HOST = "0.0.0.0"
DHCP_NETWORK_PREFIX = "HostInterfaceNetworking-"
