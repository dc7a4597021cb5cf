"""Runtime lifecycle state machine.

States advance in declaration order; FAILED can be entered from any other
state and is never left.
"""

import logging
from enum import Enum
from typing import Callable, List, Optional

from playground.constants import Status
from playground.errors import StateTransitionError

logger = logging.getLogger(__name__)


class RuntimeState(Enum):
    UNINITIALIZED = "uninitialized"
    FETCHING = "fetching"
    INITIALIZING = "initializing"
    LOADING_EXTENSIONS = "loading_extensions"
    READY = "ready"
    FAILED = "failed"


_ORDER = [
    RuntimeState.UNINITIALIZED,
    RuntimeState.FETCHING,
    RuntimeState.INITIALIZING,
    RuntimeState.LOADING_EXTENSIONS,
    RuntimeState.READY,
]

StatusListener = Callable[[RuntimeState, str], None]


class RuntimeStatus:
    """Current RuntimeState plus the progress message shown for it.

    Listener exceptions are logged and do not stop the transition.
    """

    def __init__(self):
        self.state = RuntimeState.UNINITIALIZED
        self.message = Status.LOADING
        self.error: Optional[str] = None
        self._listeners: List[StatusListener] = []

    @property
    def is_ready(self) -> bool:
        return self.state is RuntimeState.READY

    @property
    def is_failed(self) -> bool:
        return self.state is RuntimeState.FAILED

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a progress listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def advance(self, target: RuntimeState, message: str) -> None:
        """Move forward to target.

        Raises:
            StateTransitionError: target is not strictly after the current state.
        """
        if target is RuntimeState.FAILED:
            self.fail(message)
            return
        if self.is_failed or _ORDER.index(target) <= _ORDER.index(self.state):
            raise StateTransitionError(self.state.value, target.value)

        logger.debug(f"Runtime state {self.state.value} -> {target.value}")
        self.state = target
        self.message = message
        self._notify()

    def fail(self, error: str) -> None:
        """Enter FAILED; the error replaces the progress message."""
        if self.is_failed:
            raise StateTransitionError(self.state.value, RuntimeState.FAILED.value)

        logger.error(f"Runtime failed in state {self.state.value}: {error}")
        self.state = RuntimeState.FAILED
        self.message = error
        self.error = error
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state, self.message)
            except Exception:
                logger.exception(f"Status listener raised on {self.state.value}")
