"""Playground Constants

Centralized constants for the guest runtime version, resource locations,
extension packages and the status strings shown while bootstrapping.
"""

from pathlib import Path

# Pinned guest runtime version. The bootstrap code is looked up under
# {base_url}/v{RUNTIME_VERSION}/ and cached per version.
RUNTIME_VERSION = "0.24.1"

# Version of the host <-> guest wire protocol the worker must report.
PROTOCOL_VERSION = "1"

# The name of the working directory used in the user and project spaces.
PLAYGROUND_DIR = ".playground"

# Bootstrap code shipped with the package. Used when no index URL is configured.
# An http(s) index URL is treated as a base: {index_url}/v{RUNTIME_VERSION}/.
BUNDLED_INDEX = Path(__file__).parent / "guest"

# File name of the guest program inside an index.
BOOTSTRAP_FILE = "worker.py"

# Packages the execution pipeline needs inside the guest.
EXTENSION_PACKAGES = ["numpy", "matplotlib"]

# Name under which the figure callback is registered in the guest namespace.
FIGURE_CALLBACK = "send_figure"

# Upper bound for a single protocol line (base64 figures can be large).
DEFAULT_MESSAGE_LIMIT = 64 * 1024 * 1024


class Status:
    """Human-readable progress messages, one per bootstrap step."""

    LOADING = "Loading the Python environment..."
    FETCHING = "Downloading the Python runtime..."
    INITIALIZING = "Initializing the Python environment..."
    LOADING_EXTENSIONS = "Loading scientific packages..."
    READY = "The Python environment is ready!"
    RUNTIME_EXITED = "The Python runtime exited unexpectedly"


UNKNOWN_ERROR = "Unknown error"
NO_OUTPUT = "(no output)"

DEFAULT_SOURCE = """import numpy as np
import matplotlib.pyplot as plt

x = np.linspace(0, 2 * np.pi, 200)
y = np.sin(x)

plt.figure(figsize=(6, 3))
plt.plot(x, y)
plt.title("Sine wave")
plt.xlabel("x")
plt.ylabel("sin(x)")
plt.grid(True)
plt.show()
"""
