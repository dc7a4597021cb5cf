"""Runtime bootstrapper.

Brings the guest runtime up exactly once:
    1. FETCHING            obtain the bootstrap code (bundled, local index or download)
    2. INITIALIZING        start the guest interpreter and complete the handshake
    3. LOADING_EXTENSIONS  import the extension packages inside the guest
    4. READY               the runtime is handed to the run orchestrator

Any failing step moves the runtime to FAILED with the step's message. There
is no automatic retry. After cancel() no continuation mutates state.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Optional

import httpx

from playground.config import PlaygroundConfig, load_config
from playground.constants import BOOTSTRAP_FILE, BUNDLED_INDEX, UNKNOWN_ERROR, Status
from playground.errors import BootstrapError
from playground.logger import get_logger
from playground.runtime.guest import GuestRuntime
from playground.runtime.state import RuntimeState, RuntimeStatus, StatusListener

logger = logging.getLogger(__name__)

# Bootstrap code already present in this process, keyed by version and index.
_bootstrap_code_cache: Dict[str, Path] = {}


def clear_bootstrap_cache() -> None:
    _bootstrap_code_cache.clear()


class RuntimeBootstrapper:
    """Owns the single guest runtime and its lifecycle state.

    Args:
        config: Runtime settings (defaults to load_config()).
        transport: Optional httpx transport used for downloads.
    """

    def __init__(
        self,
        config: Optional[PlaygroundConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        get_logger()
        self.config = config or load_config()
        self.status = RuntimeStatus()
        self.error: Optional[BootstrapError] = None
        self._transport = transport
        self._runtime: Optional[GuestRuntime] = None
        self._task: Optional[asyncio.Task] = None
        self._alive = True

    @property
    def state(self) -> RuntimeState:
        return self.status.state

    @property
    def status_message(self) -> str:
        return self.status.message

    @property
    def is_ready(self) -> bool:
        return self.status.is_ready

    @property
    def runtime(self) -> Optional[GuestRuntime]:
        """The guest runtime, available once READY."""
        if not self.status.is_ready:
            return None
        return self._runtime

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        return self.status.subscribe(listener)

    async def initialize(self) -> RuntimeState:
        """Bootstrap the runtime, or wait for the bootstrap already started."""
        if self._task is None:
            self._task = asyncio.ensure_future(self._bootstrap())
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        """Signal that the consumer is gone; outstanding steps become no-ops."""
        if self._alive:
            logger.debug("Bootstrap consumer torn down")
        self._alive = False

    async def aclose(self) -> None:
        """Stop the guest process at host shutdown."""
        self.cancel()
        if self._task is not None and not self._task.done():
            await self._task
        if self._runtime is not None:
            await self._runtime.aclose()

    async def _bootstrap(self) -> RuntimeState:
        stage = "fetch"
        runtime: Optional[GuestRuntime] = None
        if not self._alive:
            return self.state
        try:
            self.status.advance(RuntimeState.FETCHING, Status.FETCHING)
            worker_path = await self._fetch_bootstrap_code()
            if not self._alive:
                return self.state

            stage = "initialize"
            self.status.advance(RuntimeState.INITIALIZING, Status.INITIALIZING)
            runtime = await GuestRuntime.start(
                self.config.python,
                worker_path,
                startup_timeout=self.config.startup_timeout,
                message_limit=self.config.message_limit,
                on_exit=self._on_runtime_exit,
            )
            if not self._alive:
                await runtime.aclose()
                return self.state

            stage = "extensions"
            self.status.advance(RuntimeState.LOADING_EXTENSIONS, Status.LOADING_EXTENSIONS)
            loaded = await runtime.load_packages(self.config.extension_packages)
            if not self._alive:
                await runtime.aclose()
                return self.state

            self._runtime = runtime
            self.status.advance(RuntimeState.READY, Status.READY)
            logger.info(f"Runtime ready with extensions: {', '.join(loaded) or 'none'}")

        except Exception as e:
            if runtime is not None:
                await runtime.aclose()
            if not self._alive:
                return self.state

            message = getattr(e, "message", None) or str(e) or UNKNOWN_ERROR
            self.error = e if isinstance(e, BootstrapError) else BootstrapError(message, stage, e)
            logger.error(f"Bootstrap failed: {self.error.message}", extra={"stage": self.error.stage})
            self.status.fail(self.error.message)

        return self.state

    async def _fetch_bootstrap_code(self) -> Path:
        """Locate the guest program, downloading it when the index is remote."""
        config = self.config
        cache_key = f"{config.runtime_version}|{config.index_url or BUNDLED_INDEX}"
        cached = _bootstrap_code_cache.get(cache_key)
        if cached is not None and cached.is_file():
            logger.debug(f"Bootstrap code already loaded: {cached}")
            return cached

        if config.is_remote:
            path = config.cache_dir / f"v{config.runtime_version}" / BOOTSTRAP_FILE
            if not path.is_file():
                url = f"{config.index_url.rstrip('/')}/v{config.runtime_version}/{BOOTSTRAP_FILE}"
                code = await self._download(url)
                path.parent.mkdir(parents=True, exist_ok=True)
                partial = path.with_suffix(".part")
                partial.write_text(code, encoding="utf-8")
                partial.replace(path)
                logger.info(f"Downloaded bootstrap code from {url}")
        else:
            index = Path(config.index_url).expanduser() if config.index_url else BUNDLED_INDEX
            path = index / BOOTSTRAP_FILE
            if not path.is_file():
                raise BootstrapError(f"Bootstrap code not found: {path}", "fetch")

        _bootstrap_code_cache[cache_key] = path
        return path

    async def _download(self, url: str) -> str:
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=self.config.fetch_timeout,
                follow_redirects=True,
            ) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise BootstrapError(f"Failed to download the Python runtime: {e}", "fetch", e)

        if response.status_code >= 400:
            raise BootstrapError(
                f"Failed to download the Python runtime: HTTP {response.status_code} "
                f"{response.reason_phrase}",
                "fetch",
            )
        return response.text

    def _on_runtime_exit(self, reason: str) -> None:
        if not self._alive or not self.status.is_ready:
            return
        logger.error(f"Guest runtime lost: {reason}")
        self.status.fail(Status.RUNTIME_EXITED)
