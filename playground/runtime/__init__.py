"""Playground runtime services."""

from playground.runtime.bootstrap import RuntimeBootstrapper, clear_bootstrap_cache
from playground.runtime.guest import GuestRuntime
from playground.runtime.state import RuntimeState, RuntimeStatus

__all__ = [
    "RuntimeBootstrapper",
    "clear_bootstrap_cache",
    "GuestRuntime",
    "RuntimeState",
    "RuntimeStatus",
]
