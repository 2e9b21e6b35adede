"""
Module with a queue that the threads of the orchestrator report to.

The serve command runs the union service, the remote poller and the migration
scheduler on their own threads while the main thread only waits to be told to shut
down:

    signum = events.expect(Event.SHUTDOWN)

Signal handlers post that event. A thread that dies posts a failure instead, which
expect() raises in the main thread, so that the program aborts and the tiers are torn
down in order.
"""

from enum import auto, Enum
import queue
from typing import Any, Optional, Tuple, Union


class Event(Enum):
    """Types of events."""

    # Value is the signal number
    SHUTDOWN = auto()

    MIGRATION_STOPPED = auto()

    # Value is the exception
    FAILURE = auto()


class UnexpectedEvent(Exception):
    """Exception raised when an event occurs that is not being waited upon."""

    def __init__(self, expected_event: Event, actual_event: Event, actual_value: Any):
        super().__init__(
            f"expected {expected_event}, but got {actual_event}", actual_value
        )

        self.expected_event = expected_event
        self.actual_event = actual_event
        self.actual_value = actual_value


class EventQueue:
    """Thread-safe queue of events that can be posted and waited upon."""

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Tuple[Event, Any]]" = queue.SimpleQueue()

    def notify(self, event: Event, value: Any = None) -> None:
        self._queue.put((event, value))

    def exception(self, exception: Union[BaseException, str]) -> None:
        """Post a failure, given as an exception or a message."""
        if isinstance(exception, str):
            exception = RuntimeError(exception)

        self.notify(Event.FAILURE, exception)

    def expect(self, expected_event: Event, timeout: Optional[float] = None) -> Any:
        """
        Wait for the next event and return its value if it is the expected one.

        A failure is raised as its exception, any other event as UnexpectedEvent.
        Raises TimeoutError if no event arrives within the timeout.
        """
        try:
            event, value = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"timed out waiting for {expected_event}")

        if event == expected_event:
            return value
        elif event == Event.FAILURE:
            raise value
        else:
            raise UnexpectedEvent(expected_event, event, value)
