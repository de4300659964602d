"""Custom exceptions for b2d."""

from __future__ import annotations

from typing import List, Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""

    exit_code = 1


class MachineNotFound(ManagerError):
    """The requested machine is not registered with the hypervisor."""

    exit_code = 2

    def __init__(self, name: str) -> None:
        super().__init__(f"machine {name!r} does not exist")
        self.name = name


class MachineExists(ManagerError):
    def __init__(self, name: str) -> None:
        super().__init__(f"machine {name!r} already exists")
        self.name = name


class ToolUnavailable(ManagerError):
    """An external executable (VBoxManage, ssh, ssh-keygen) cannot be run."""

    exit_code = 2

    def __init__(self, tool: str, reason: str = "not found") -> None:
        super().__init__(f"{tool}: {reason}")
        self.tool = tool


class IllegalState(ManagerError):
    """The requested operation is not valid from the machine's current state."""

    def __init__(self, operation: str, state: str) -> None:
        super().__init__(f"cannot {operation} machine in state '{state}'")
        self.operation = operation
        self.state = state


class PollTimeout(ManagerError):
    """A bounded poll ran out of attempts or time."""

    def __init__(self, message: str, last_error: Optional[object] = None) -> None:
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)
        self.last_error = last_error


class ParseError(ManagerError):
    """Hypervisor or guest output did not match the expected format."""

    def __init__(self, message: str, text: str = "") -> None:
        super().__init__(message)
        self.text = text


class CommandFailed(ManagerError):
    """An external command exited with a non-zero status."""

    def __init__(self, argv: List[str], returncode: int, stderr: str = "") -> None:
        detail = stderr.strip()
        message = f"{' '.join(argv)} exited with status {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


class DiskImageError(ManagerError):
    """Building the persistent disk image failed."""


class DriverError(ManagerError):
    exit_code = 2


class DriverAlreadyRegistered(DriverError):
    def __init__(self, name: str) -> None:
        super().__init__(f"driver already registered {name}")
        self.name = name


class DriverNotSupported(DriverError):
    def __init__(self, name: str) -> None:
        super().__init__(f"driver not supported: {name}")
        self.name = name
