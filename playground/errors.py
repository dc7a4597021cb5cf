"""Error types for the playground runtime.

Bootstrap and guest failures are recovered at their component boundary and
turned into state (RuntimeState, RunResult). These exceptions carry the
message that ends up in front of the user:
- Bootstrapper: BootstrapError, fatal to the session
- Orchestrator: GuestExecutionError, fatal to one run only
- Channel: GuestRuntimeError / ProtocolError when the worker misbehaves
"""

from typing import Optional


class PlaygroundError(Exception):
    """Base exception for playground failures.

    Attributes:
        message: Error description.
        cause: Optional underlying exception being wrapped.
    """

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class ConfigurationError(PlaygroundError):
    """Configuration error (invalid value, wrong type).

    Attributes:
        message: Description of the error.
        field: Optional field name that failed.
    """

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class BootstrapError(PlaygroundError):
    """Runtime bootstrap failure.

    Raised when fetching the bootstrap code, starting the guest or loading
    extension packages fails.

    Attributes:
        message: Human-readable diagnostic.
        stage: Bootstrap step that failed ("fetch", "initialize", "extensions").
    """

    def __init__(
        self, message: str, stage: str, cause: Optional[Exception] = None
    ):
        super().__init__(message, cause)
        self.stage = stage


class GuestExecutionError(PlaygroundError):
    """Error raised by user code inside the guest.

    Attributes:
        message: Guest diagnostic, normally the formatted traceback.
        error_type: Name of the guest exception class, if known.
    """

    def __init__(self, message: str, error_type: Optional[str] = None):
        super().__init__(message)
        self.error_type = error_type


class GuestRuntimeError(PlaygroundError):
    """The guest process or its channel failed (exited, closed pipe)."""


class ProtocolError(GuestRuntimeError):
    """A line on the guest channel is not a valid JSON-RPC 2.0 message."""


class StateTransitionError(PlaygroundError):
    """Illegal RuntimeState transition."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal runtime state transition: {current} -> {target}")
        self.current = current
        self.target = target
