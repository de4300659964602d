"""Legal machine state transitions.

Each high-level operation is resolved against the machine's current state to
either a sequence of backend primitives (possibly empty, meaning nothing to do)
or an error kind. The table covers every operation for every state, shadow
states included, so callers never hit an undefined combination.
"""

from __future__ import annotations

import enum
from typing import Dict, Tuple, Union

from b2d.exceptions import IllegalState, MachineNotFound, ManagerError, ParseError, ToolUnavailable
from b2d.models import MachineState


class Step(str, enum.Enum):
    RESUME = "resume"
    BOOT = "boot"
    ACPI_SHUTDOWN = "acpi_shutdown"
    SAVESTATE = "savestate"
    PAUSE = "pause"
    POWEROFF = "poweroff"
    RESET = "reset"
    UNREGISTER = "unregister"


class Failure(str, enum.Enum):
    ILLEGAL = "illegal-state"
    NOT_FOUND = "not-found"
    TOOL_UNAVAILABLE = "tool-unavailable"
    UNPARSEABLE = "parse-failure"


Outcome = Union[Tuple[Step, ...], Failure]

OPERATIONS = ("start", "stop", "save", "pause", "poweroff", "restart", "reset", "delete")

# Operations that bypass guest-initiated shutdown and may corrupt the guest filesystem.
UNSAFE_OPERATIONS = frozenset({"poweroff", "reset"})

S = MachineState
_RESUME, _BOOT, _ACPI = Step.RESUME, Step.BOOT, Step.ACPI_SHUTDOWN

_REAL: Dict[str, Dict[MachineState, Outcome]] = {
    "start": {
        S.RUNNING: (),
        S.PAUSED: (_RESUME,),
        S.POWEROFF: (_BOOT,),
        S.ABORTED: (_BOOT,),
        S.SAVED: (_BOOT,),
    },
    "stop": {
        S.RUNNING: (_ACPI,),
        S.PAUSED: (_RESUME, _ACPI),
        S.SAVED: (_BOOT, _ACPI),
        S.POWEROFF: (),
        S.ABORTED: (),
    },
    "save": {
        S.RUNNING: (Step.SAVESTATE,),
        S.PAUSED: (_RESUME, Step.SAVESTATE),
        S.SAVED: (),
        S.POWEROFF: (),
        S.ABORTED: (),
    },
    "pause": {
        S.RUNNING: (Step.PAUSE,),
        S.PAUSED: (),
        S.SAVED: Failure.ILLEGAL,
        S.POWEROFF: Failure.ILLEGAL,
        S.ABORTED: Failure.ILLEGAL,
    },
    "poweroff": {
        S.RUNNING: (Step.POWEROFF,),
        S.PAUSED: (Step.POWEROFF,),
        S.SAVED: (_BOOT, Step.POWEROFF),
        S.POWEROFF: (),
        S.ABORTED: (),
    },
    "restart": {
        S.RUNNING: (_ACPI, _BOOT),
        S.PAUSED: (_RESUME, _ACPI, _BOOT),
        S.SAVED: (_BOOT, _ACPI, _BOOT),
        S.POWEROFF: (_BOOT,),
        S.ABORTED: (_BOOT,),
    },
    "reset": {
        S.RUNNING: (Step.RESET,),
        S.PAUSED: (_RESUME, Step.RESET),
        S.SAVED: (_BOOT, Step.RESET),
        S.POWEROFF: Failure.ILLEGAL,
        S.ABORTED: Failure.ILLEGAL,
    },
    "delete": {
        S.RUNNING: (Step.POWEROFF, Step.UNREGISTER),
        S.PAUSED: (Step.POWEROFF, Step.UNREGISTER),
        S.SAVED: (Step.UNREGISTER,),
        S.POWEROFF: (Step.UNREGISTER,),
        S.ABORTED: (Step.UNREGISTER,),
    },
}


def _build() -> Dict[str, Dict[MachineState, Outcome]]:
    table: Dict[str, Dict[MachineState, Outcome]] = {}
    for operation in OPERATIONS:
        row = dict(_REAL[operation])
        row[S.UNREGISTERED] = () if operation == "delete" else Failure.NOT_FOUND
        row[S.DRIVER_UNAVAILABLE] = Failure.TOOL_UNAVAILABLE
        row[S.UNKNOWN] = Failure.UNPARSEABLE
        table[operation] = row
    return table


TRANSITIONS = _build()


def failure_error(failure: Failure, operation: str, name: str, state: MachineState) -> ManagerError:
    if failure is Failure.NOT_FOUND:
        return MachineNotFound(name)
    if failure is Failure.TOOL_UNAVAILABLE:
        return ToolUnavailable("hypervisor management tool", "could not be executed")
    if failure is Failure.UNPARSEABLE:
        return ParseError(f"cannot {operation} machine {name!r}: state could not be determined")
    return IllegalState(operation, state.value)


def plan(operation: str, state: MachineState, name: str = "") -> Tuple[Step, ...]:
    """Return the primitive steps that carry out ``operation`` from ``state``.

    Raises the matching ManagerError subclass when the table holds a failure.
    """
    try:
        outcome = TRANSITIONS[operation][state]
    except KeyError:
        raise ManagerError(f"unknown operation '{operation}'") from None
    if isinstance(outcome, Failure):
        raise failure_error(outcome, operation, name, state)
    return outcome
