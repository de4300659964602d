"""Utility functions for b2d."""

from __future__ import annotations

import os
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional

from b2d.constants import _LOG_VERBOSE, TRUTHY
from b2d.exceptions import ManagerError, ToolUnavailable

_verbose = _LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    return _verbose


def log(level: str, message: str) -> None:
    """Lightweight structured logging; stdout is kept free for eval-able output."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_bool(name: str, raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in TRUTHY:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ManagerError(f"{name} must be a boolean (got '{raw}')")


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging; a missing executable raises ToolUnavailable."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("text", True)
    try:
        result = subprocess.run(cmd, check=check, **kwargs)
    except (FileNotFoundError, PermissionError) as exc:
        raise ToolUnavailable(cmd[0], exc.strerror or str(exc)) from exc
    return result


def read_port(host: str, port: int, attempts: int = 1, wait: float = 2.0, timeout: float = 1.0) -> None:
    """Connect to host:port and read one byte, retrying ``attempts`` times.

    Raises the last OSError when no attempt succeeds. Services such as sshd
    announce themselves on connect, so a successful read means the service
    behind a NAT forward is actually up rather than just the forwarder.
    """
    last_error: Optional[OSError] = None
    for attempt in range(attempts):
        log("DEBUG", f"Connecting to tcp://{host}:{port} (attempt #{attempt})")
        try:
            with socket.create_connection((host, port), timeout=timeout) as conn:
                conn.settimeout(timeout)
                if conn.recv(1):
                    return
                last_error = ConnectionError(f"connection to {host}:{port} closed without data")
        except OSError as exc:
            last_error = exc
        time.sleep(wait)
    assert last_error is not None
    raise last_error


def port_in_use(host: str, port: int, timeout: float = 1.0) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
