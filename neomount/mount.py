"""
Module with the readiness state of the mounted tiers.

Every tier owns a MountHandle that moves through the states below. The union view
consults the handles of both tiers before each operation, and the orchestrator waits on
them during startup instead of polling the file system for a mount point.

    UNMOUNTED -> MOUNTING -> READY -> UNMOUNTED
                    |          |
                    +-> FAILED <-+

A failed handle can be mounted again, or brought back in one step with recover() once
the tier answers again.
"""

from enum import auto, Enum
import threading
from typing import Callable, List, Optional

from neomount.logger import log


class MountState(Enum):
    """Lifecycle state of a mounted tier."""

    UNMOUNTED = auto()
    MOUNTING = auto()
    READY = auto()
    FAILED = auto()


_TRANSITIONS = {
    MountState.UNMOUNTED: {MountState.MOUNTING},
    MountState.MOUNTING: {MountState.READY, MountState.FAILED, MountState.UNMOUNTED},
    MountState.READY: {MountState.FAILED, MountState.UNMOUNTED},
    MountState.FAILED: {MountState.MOUNTING, MountState.UNMOUNTED},
}


class InvalidTransition(RuntimeError):
    """Exception raised when a mount handle is moved to a state it can't reach."""


class MountHandle:
    """Process-lifetime state of a single mounted tier."""

    def __init__(self, name: str, mount_point: str):
        """Instantiate an unmounted handle for the tier at the given location."""
        self.name = name
        self.mount_point = mount_point

        self._state = MountState.UNMOUNTED
        self._health = "not mounted"
        self._condition = threading.Condition()
        self._listeners: List[Callable[["MountHandle", MountState], None]] = []

    def state(self) -> MountState:
        """Return the current state."""
        with self._condition:
            return self._state

    def health(self) -> str:
        """Return a human readable description of the last state change."""
        with self._condition:
            return self._health

    def is_ready(self) -> bool:
        return self.state() == MountState.READY

    def subscribe(self, listener: Callable[["MountHandle", MountState], None]) -> None:
        """Register a callback that is invoked after every state transition."""
        with self._condition:
            self._listeners.append(listener)

    def mounting(self) -> None:
        self._transition(MountState.MOUNTING, "mounting")

    def ready(self) -> None:
        self._transition(MountState.READY, "ready")

    def failed(self, reason: str) -> None:
        self._transition(MountState.FAILED, reason)

    def unmounted(self) -> None:
        self._transition(MountState.UNMOUNTED, "not mounted")

    def recover(self) -> bool:
        """
        Move a failed handle back to ready through mounting.

        The state check and both transitions happen atomically, so concurrent callers
        recover the handle once. Does nothing in any other state. Returns whether this
        call recovered the handle.
        """
        with self._condition:
            if self._state != MountState.FAILED:
                return False

            self._transition(MountState.MOUNTING, "recovering")
            self._transition(MountState.READY, "ready")

            return True

    def fail_if_ready(self, reason: str) -> bool:
        """Mark a ready handle as failed, leaving any other state alone."""
        with self._condition:
            if self._state != MountState.READY:
                return False

            self._transition(MountState.FAILED, reason)

            return True

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the handle is ready, has failed or the timeout expired.

        Returns whether the handle is ready.
        """
        with self._condition:
            self._condition.wait_for(
                lambda: self._state in (MountState.READY, MountState.FAILED), timeout
            )

            return self._state == MountState.READY

    def _transition(self, state: MountState, health: str) -> None:
        with self._condition:
            if state == self._state:
                self._health = health
                return

            if state not in _TRANSITIONS[self._state]:
                raise InvalidTransition(
                    f"{self.name}: cannot go from {self._state.name} to {state.name}"
                )

            previous = self._state
            self._state = state
            self._health = health
            self._condition.notify_all()

            listeners = list(self._listeners)

        if state == MountState.FAILED:
            log.error(f"{self.name} tier failed: {health}")
        else:
            log.info(
                f"{self.name} tier {previous.name.lower()} -> {state.name.lower()}"
            )

        for listener in listeners:
            listener(self, state)

    def __repr__(self) -> str:
        return f"MountHandle({self.name!r}, {self.mount_point!r}, {self.state().name})"
