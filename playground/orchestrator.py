"""Run orchestrator.

Sequences one run against the ready guest runtime:
    reject unless READY and idle → clear previous results → open a figure
    buffer → register the bridge callback → execute → publish the result

Runs are single-flight: a request made while another run is in flight (or
before the runtime is ready) is rejected without touching any state. Nothing
is queued and runs cannot be interrupted.
"""

import logging
from typing import Any, List, Optional

from playground.bridge import FigureBridge
from playground.constants import DEFAULT_SOURCE, FIGURE_CALLBACK, UNKNOWN_ERROR
from playground.results import (
    ImageArtifact,
    RunFailure,
    RunRequest,
    RunResult,
    RunSuccess,
)
from playground.runtime.bootstrap import RuntimeBootstrapper

logger = logging.getLogger(__name__)


def normalize_output(value: Any) -> str:
    """Captured text from the guest's return value; non-strings count as empty."""
    if isinstance(value, str):
        return value
    return ""


def error_message(error: BaseException) -> str:
    message = getattr(error, "message", None) or str(error)
    return message or UNKNOWN_ERROR


class RunOrchestrator:
    """Executes the current source once per run request.

    Published state (read by the presentation layer):
        output: Captured text of the last successful run.
        images: Figures of the last successful run, in emission order.
        error: Message of the last failed run.
        result: The last RunResult.
    """

    def __init__(self, bootstrapper: RuntimeBootstrapper, source: str = DEFAULT_SOURCE):
        self.bootstrapper = bootstrapper
        self.source = source
        self.bridge = FigureBridge()
        self.is_running = False
        self.output = ""
        self.images: List[ImageArtifact] = []
        self.error: Optional[str] = None
        self.result: Optional[RunResult] = None
        self._run_count = 0
        self._alive = True

    @property
    def can_run(self) -> bool:
        return self._alive and self.bootstrapper.is_ready and not self.is_running

    async def run_once(self) -> Optional[RunResult]:
        """Run the current source. Returns None if the request was rejected."""
        if not self._alive:
            logger.debug("Run rejected: orchestrator closed")
            return None
        if not self.bootstrapper.is_ready:
            logger.debug(f"Run rejected: runtime is {self.bootstrapper.state.value}")
            return None
        if self.is_running:
            logger.debug("Run rejected: a run is already in flight")
            return None

        runtime = self.bootstrapper.runtime
        self.is_running = True
        self._run_count += 1
        request = RunRequest(run_id=self._run_count, source=self.source)
        self._clear()

        buffer = self.bridge.open(request.run_id)
        logger.info(
            f"Run {request.run_id} started ({len(request.source)} chars)",
            extra={"run_id": request.run_id},
        )
        try:
            try:
                await runtime.set_global(FIGURE_CALLBACK, self.bridge.emit_figure)
                value = await runtime.execute(
                    request.source,
                    dpi=self.bootstrapper.config.figure_dpi,
                    run_id=request.run_id,
                )
            except Exception as e:
                result: RunResult = RunFailure(request.run_id, error_message(e))
                logger.info(
                    f"Run {request.run_id} failed: {type(e).__name__}",
                    extra={"run_id": request.run_id},
                )
            else:
                result = RunSuccess(
                    request.run_id, normalize_output(value), buffer.artifacts()
                )
                logger.info(
                    f"Run {request.run_id} finished: {len(result.text)} chars, "
                    f"{len(result.images)} figures",
                    extra={"run_id": request.run_id},
                )
        finally:
            self.bridge.close(buffer)
            self.is_running = False

        self._publish(result)
        return result

    def close(self) -> None:
        """Tear down the consumer; a run settling afterwards is not published."""
        self._alive = False

    def _clear(self) -> None:
        self.output = ""
        self.images = []
        self.error = None
        self.result = None

    def _publish(self, result: RunResult) -> None:
        if not self._alive:
            logger.debug(f"Discarding result of run {result.run_id}: orchestrator closed")
            return

        self.result = result
        if isinstance(result, RunSuccess):
            self.output = result.text
            self.images = list(result.images)
        else:
            self.error = result.message
