"""Playground: run Python scripts in a guest runtime and collect text and figures."""

from playground.bridge import FigureBridge, FigureBuffer
from playground.config import PlaygroundConfig, load_config
from playground.constants import DEFAULT_SOURCE, RUNTIME_VERSION
from playground.errors import (
    BootstrapError,
    ConfigurationError,
    GuestExecutionError,
    GuestRuntimeError,
    PlaygroundError,
    ProtocolError,
    StateTransitionError,
)
from playground.orchestrator import RunOrchestrator
from playground.results import (
    ImageArtifact,
    RunFailure,
    RunRequest,
    RunResult,
    RunSuccess,
)
from playground.runtime import GuestRuntime, RuntimeBootstrapper, RuntimeState

__version__ = "0.1.0"

__all__ = [
    # Runtime
    "RuntimeBootstrapper",
    "RuntimeState",
    "GuestRuntime",
    # Runs
    "RunOrchestrator",
    "RunRequest",
    "RunResult",
    "RunSuccess",
    "RunFailure",
    "ImageArtifact",
    "FigureBridge",
    "FigureBuffer",
    # Config
    "PlaygroundConfig",
    "load_config",
    "DEFAULT_SOURCE",
    "RUNTIME_VERSION",
    # Errors
    "PlaygroundError",
    "BootstrapError",
    "ConfigurationError",
    "GuestExecutionError",
    "GuestRuntimeError",
    "ProtocolError",
    "StateTransitionError",
]
