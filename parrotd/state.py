"""Recording state machine for the parrotd daemon."""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class RecordingState(str, Enum):
    """Possible states of the recording cycle."""

    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


class RecordingEvent(str, Enum):
    """Events that drive the recording cycle."""

    START = "start"
    STOP = "stop"
    CANCEL = "cancel"
    COMPLETE = "complete"
    FAIL = "fail"


# event -> (allowed source states, target state)
TRANSITIONS: Dict[RecordingEvent, Tuple[frozenset, RecordingState]] = {
    RecordingEvent.START: (
        frozenset(
            {RecordingState.IDLE, RecordingState.COMPLETE, RecordingState.ERROR}
        ),
        RecordingState.RECORDING,
    ),
    RecordingEvent.STOP: (
        frozenset({RecordingState.RECORDING}),
        RecordingState.PROCESSING,
    ),
    RecordingEvent.CANCEL: (
        frozenset({RecordingState.RECORDING}),
        RecordingState.IDLE,
    ),
    RecordingEvent.COMPLETE: (
        frozenset({RecordingState.PROCESSING}),
        RecordingState.COMPLETE,
    ),
    RecordingEvent.FAIL: (
        frozenset({RecordingState.RECORDING, RecordingState.PROCESSING}),
        RecordingState.ERROR,
    ),
}

StateObserver = Callable[[RecordingState, Optional[str]], Any]


class RecordingStateManager:
    """Tracks the recording state and enforces legal transitions."""

    def __init__(self):
        """Initialize state manager with IDLE state."""
        self._state: RecordingState = RecordingState.IDLE
        self._last_error: Optional[str] = None
        self._observers: List[StateObserver] = []

    @property
    def current_state(self) -> RecordingState:
        """Get the current recording state."""
        return self._state

    @property
    def last_error(self) -> Optional[str]:
        """Get the last error message, if any."""
        return self._last_error

    def add_observer(self, observer: StateObserver) -> None:
        """Add an observer callback for state changes.

        The callback receives the new state and optional error message.
        """
        self._observers.append(observer)

    def _notify_observers(self) -> None:
        for observer in self._observers:
            try:
                observer(self._state, self._last_error)
            except Exception:
                logger.exception("State observer failed")

    def can(self, event: RecordingEvent) -> bool:
        """Check whether an event is legal in the current state."""
        sources, _ = TRANSITIONS[event]
        return self._state in sources

    def transition(
        self, event: RecordingEvent, error: Optional[str] = None
    ) -> RecordingState:
        """Apply an event to the state machine.

        Args:
            event: The event to apply.
            error: Error message; only meaningful for FAIL.

        Returns:
            The new state.

        Raises:
            InvalidTransition: If the event is not legal in the current state.
        """
        sources, target = TRANSITIONS[event]
        if self._state not in sources:
            raise InvalidTransition(self._state.value, event.value)

        logger.debug(f"State {self._state.value} -[{event.value}]-> {target.value}")
        self._state = target
        self._last_error = error if target == RecordingState.ERROR else None
        self._notify_observers()
        return target

    def set_error(self, message: str) -> None:
        """Move to ERROR from any active state with the given message."""
        if self.can(RecordingEvent.FAIL):
            self.transition(RecordingEvent.FAIL, message)
            return

        logger.warning(f"Error reported while {self._state.value}: {message}")

    def get_status(self) -> Tuple[str, Optional[str]]:
        """Get the current status and last error message.

        Returns:
            A tuple containing the current state value and the last error
            message (if any).
        """
        return self._state.value, self._last_error
