"""Run request and result types.

A run yields exactly one RunResult: RunSuccess with the captured text and the
figures in emission order, or RunFailure with a diagnostic message.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

from playground.constants import NO_OUTPUT

DATA_URI_PREFIX = "data:"


@dataclass(frozen=True)
class RunRequest:
    """Immutable snapshot of the source text taken when a run starts."""

    run_id: int
    source: str


@dataclass(frozen=True)
class ImageArtifact:
    """One rendered figure.

    Attributes:
        index: 0-based position in guest emission order.
        data_uri: Self-describing payload, e.g. "data:image/png;base64,...".
    """

    index: int
    data_uri: str

    @property
    def mime_type(self) -> str:
        """MIME type from the data URI header (PNG when no header is present)."""
        if not self.data_uri.startswith(DATA_URI_PREFIX):
            return "image/png"
        header = self.data_uri[len(DATA_URI_PREFIX):].split(",", 1)[0]
        return header.split(";", 1)[0] or "image/png"

    @property
    def base64_payload(self) -> str:
        if not self.data_uri.startswith(DATA_URI_PREFIX):
            return self.data_uri
        return self.data_uri.split(",", 1)[-1]

    def to_dict(self) -> Dict[str, str]:
        return {"mimeType": self.mime_type, "base64Payload": self.base64_payload}


@dataclass(frozen=True)
class RunSuccess:
    """Run completed: captured text and figures."""

    run_id: int
    text: str
    images: List[ImageArtifact] = field(default_factory=list)

    ok = True

    @property
    def display_text(self) -> str:
        return self.text or NO_OUTPUT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "capturedText": self.text,
            "images": [image.to_dict() for image in self.images],
        }


@dataclass(frozen=True)
class RunFailure:
    """Run failed: guest diagnostic or host-side error message."""

    run_id: int
    message: str

    ok = False

    def to_dict(self) -> Dict[str, Any]:
        return {"errorMessage": self.message}


RunResult = Union[RunSuccess, RunFailure]
