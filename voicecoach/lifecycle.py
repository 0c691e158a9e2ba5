"""Capture lifecycle states.

Each state is its own immutable class.  Only :class:`Active` carries a
capture source and only :class:`Failed` carries a reason, so a session
cannot be active without a device or failed without an explanation.

Legal transitions::

    Idle -> RequestingPermission -> Initializing -> Active -> Stopped
                     |                   |
                     +------> Failed <---+

``Stopped`` and ``Failed`` are terminal for a session; a new session
starts again from ``Idle``.  Any non-terminal state may also go to
``Stopped`` when the owner tears the session down.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .capture import SampleSource


class CaptureState(Enum):
    IDLE = "idle"
    REQUESTING_PERMISSION = "requesting_permission"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(frozen=True)
class Idle:
    kind = CaptureState.IDLE


@dataclass(frozen=True)
class RequestingPermission:
    kind = CaptureState.REQUESTING_PERMISSION


@dataclass(frozen=True)
class Initializing:
    attempt: int = 1
    kind = CaptureState.INITIALIZING


@dataclass(frozen=True)
class Active:
    source: "SampleSource"
    kind = CaptureState.ACTIVE


@dataclass(frozen=True)
class Stopped:
    kind = CaptureState.STOPPED


@dataclass(frozen=True)
class Failed:
    reason: str
    kind = CaptureState.FAILED


LifecycleState = Union[Idle, RequestingPermission, Initializing, Active, Stopped, Failed]

_TRANSITIONS: dict[CaptureState, frozenset[CaptureState]] = {
    CaptureState.IDLE: frozenset(
        {CaptureState.REQUESTING_PERMISSION, CaptureState.STOPPED}
    ),
    CaptureState.REQUESTING_PERMISSION: frozenset(
        {CaptureState.INITIALIZING, CaptureState.FAILED, CaptureState.STOPPED}
    ),
    CaptureState.INITIALIZING: frozenset(
        {
            CaptureState.INITIALIZING,
            CaptureState.ACTIVE,
            CaptureState.FAILED,
            CaptureState.STOPPED,
        }
    ),
    CaptureState.ACTIVE: frozenset({CaptureState.STOPPED}),
    CaptureState.STOPPED: frozenset(),
    CaptureState.FAILED: frozenset(),
}


def can_transition(current: CaptureState, new: CaptureState) -> bool:
    return new in _TRANSITIONS[current]


def describe(state: LifecycleState) -> tuple[str, str]:
    """Return ``(state name, reason)`` for change notifications."""
    reason = state.reason if isinstance(state, Failed) else ""
    return state.kind.value, reason


__all__ = [
    "CaptureState",
    "Idle",
    "RequestingPermission",
    "Initializing",
    "Active",
    "Stopped",
    "Failed",
    "LifecycleState",
    "can_transition",
    "describe",
]
