"""Host–guest bridge for figure artifacts.

The guest cannot return figures as part of its execute() result, so it calls
back into the host once per figure. FigureBridge is the host end of that
callback: it forwards each payload into the buffer of the run currently in
flight and nowhere else.
"""

import logging
from typing import List, Optional

from playground.results import ImageArtifact

logger = logging.getLogger(__name__)


class FigureBuffer:
    """Ordered figure payloads collected for one run."""

    def __init__(self, run_id: int):
        self.run_id = run_id
        self.sealed = False
        self._payloads: List[str] = []

    def append(self, payload: str) -> None:
        self._payloads.append(payload)

    def artifacts(self) -> List[ImageArtifact]:
        return [
            ImageArtifact(index=i, data_uri=payload)
            for i, payload in enumerate(self._payloads)
        ]

    def __len__(self) -> int:
        return len(self._payloads)


class FigureBridge:
    """Routes emit_figure calls to the active run's buffer.

    A call that arrives while no run is open, after the run's buffer was
    closed, or tagged with the id of another run is a late callback from a
    settled run and is dropped.
    """

    def __init__(self):
        self._active: Optional[FigureBuffer] = None

    @property
    def active(self) -> Optional[FigureBuffer]:
        return self._active

    def open(self, run_id: int) -> FigureBuffer:
        """Start collecting for a new run, sealing any previous buffer."""
        if self._active is not None:
            self._active.sealed = True
        self._active = FigureBuffer(run_id)
        return self._active

    def close(self, buffer: FigureBuffer) -> None:
        """Seal a run's buffer; later emissions for it are dropped."""
        buffer.sealed = True
        if self._active is buffer:
            self._active = None

    def emit_figure(self, payload, run_id: Optional[int] = None) -> None:
        """Append a figure payload to the in-flight run, preserving call order.

        run_id is the run the guest emitted the figure from, when known.
        """
        if not isinstance(payload, str):
            logger.debug(f"Ignoring non-string figure payload: {type(payload).__name__}")
            return

        buffer = self._active
        if buffer is None or buffer.sealed:
            logger.debug("Dropping figure emitted outside of an active run")
            return
        if run_id is not None and run_id != buffer.run_id:
            logger.debug(
                f"Dropping figure from run {run_id} during run {buffer.run_id}",
                extra={"run_id": run_id},
            )
            return

        buffer.append(payload)
