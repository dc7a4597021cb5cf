"""Host handle for the guest interpreter process.

GuestRuntime owns the worker subprocess and its JSON-RPC channel:
    - request(): send one request and await its response
    - set_global(): expose a host callable to guest code by name
    - execute(): run source through the guest's execution wrapper

One reader task consumes the guest's stdout in arrival order. Notifications
(host global calls) are dispatched synchronously as they are read, so every
call a script makes reaches the host before the response to its execute
request does.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from playground.constants import DEFAULT_MESSAGE_LIMIT, PROTOCOL_VERSION
from playground.errors import (
    GuestExecutionError,
    GuestRuntimeError,
    PlaygroundError,
    ProtocolError,
)
from playground.protocol import (
    JsonRpcErrorCodes,
    JsonRpcRequest,
    JsonRpcResponse,
    Message,
    Methods,
    encode_message,
    parse_message,
)

logger = logging.getLogger(__name__)

GUEST_ENV = {
    "PYTHONUNBUFFERED": "1",
    "PYTHONIOENCODING": "utf-8",
    "MPLBACKEND": "Agg",
}

ExitListener = Callable[[str], None]


class GuestRuntime:
    """A running guest interpreter. Created by GuestRuntime.start()."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        on_exit: Optional[ExitListener] = None,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
    ):
        self._process = process
        self._message_limit = message_limit
        self._on_exit = on_exit
        self._globals: Dict[str, Callable[..., Any]] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._next_id = 0
        self._closed = False
        self._exited = False
        self._ready: asyncio.Future = asyncio.get_running_loop().create_future()
        self._reader_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self.info: Dict[str, Any] = {}

    @classmethod
    async def start(
        cls,
        python: str,
        worker_path: Path,
        startup_timeout: float = 30.0,
        message_limit: int = DEFAULT_MESSAGE_LIMIT,
        on_exit: Optional[ExitListener] = None,
    ) -> "GuestRuntime":
        """Start the worker and wait for its ready handshake.

        Raises:
            GuestRuntimeError: The interpreter could not be started, exited
                before the handshake, timed out, or speaks another protocol.
        """
        env = os.environ.copy()
        env.update(GUEST_ENV)

        try:
            process = await asyncio.create_subprocess_exec(
                python,
                "-u",
                str(worker_path),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=message_limit,
            )
        except OSError as e:
            raise GuestRuntimeError(f"Failed to start Python interpreter '{python}': {e}", e)

        runtime = cls(process, on_exit, message_limit)
        runtime._reader_task = asyncio.create_task(runtime._read_loop())
        runtime._stderr_task = asyncio.create_task(runtime._pump_stderr())

        try:
            info = await asyncio.wait_for(
                asyncio.shield(runtime._ready), timeout=startup_timeout
            )
        except asyncio.TimeoutError:
            await runtime.aclose()
            raise GuestRuntimeError(
                f"Guest runtime did not become ready within {startup_timeout} seconds"
            )
        except BaseException:
            await runtime.aclose()
            raise

        if str(info.get("protocol")) != PROTOCOL_VERSION:
            await runtime.aclose()
            raise GuestRuntimeError(
                f"Guest speaks protocol {info.get('protocol')!r}, "
                f"expected {PROTOCOL_VERSION!r}"
            )

        runtime.info = info
        logger.info(
            f"Guest runtime started (pid={process.pid}, python={info.get('python')})"
        )
        return runtime

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def is_alive(self) -> bool:
        return not (self._closed or self._exited) and self._process.returncode is None

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None) -> JsonRpcResponse:
        """Send a request and wait for its response (no timeout)."""
        if not self.is_alive:
            raise GuestRuntimeError("Guest runtime is not running")

        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        try:
            self._process.stdin.write(
                encode_message(JsonRpcRequest(method, params or {}, request_id))
            )
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._pending.pop(request_id, None)
            raise GuestRuntimeError(f"Guest runtime channel closed: {e}", e)

        return await future

    async def ping(self) -> Dict[str, Any]:
        response = await self.request(Methods.PING)
        if response.is_error:
            raise GuestRuntimeError(response.error_message)
        return response.result

    async def load_packages(self, packages: List[str]) -> List[str]:
        """Import extension packages inside the guest."""
        response = await self.request(Methods.LOAD_PACKAGES, {"packages": list(packages)})
        if response.is_error:
            raise PlaygroundError(response.error_message or "Failed to load packages")
        return response.result.get("loaded", [])

    async def set_global(self, name: str, function: Callable[..., Any]) -> None:
        """Bind a host callable to a global name in the guest namespace.

        Re-registering a name replaces the previous binding. Calls made by a
        run arrive with that run's id as the run_id keyword argument.
        """
        self._globals[name] = function
        response = await self.request(Methods.SET_GLOBAL, {"name": name})
        if response.is_error:
            raise GuestRuntimeError(response.error_message)

    async def execute(
        self, source: str, dpi: Optional[int] = None, run_id: Optional[int] = None
    ) -> Any:
        """Run source in the guest. Returns the raw result value.

        The guest fails the run, rather than sending it, when its result or
        a figure would exceed the message limit.

        Raises:
            GuestExecutionError: The script raised.
            GuestRuntimeError: The guest died or the channel broke.
        """
        params: Dict[str, Any] = {"source": source, "max_message_bytes": self._message_limit}
        if dpi is not None:
            params["dpi"] = dpi
        if run_id is not None:
            params["run_id"] = run_id

        response = await self.request(Methods.EXECUTE, params)
        if response.is_error:
            data = response.error.get("data")
            error_type = data.get("type") if isinstance(data, dict) else None
            if response.error_code == JsonRpcErrorCodes.GUEST_EXECUTION_ERROR:
                raise GuestExecutionError(response.error_message, error_type)
            raise GuestRuntimeError(response.error_message)
        return response.result

    async def aclose(self, grace: float = 3.0) -> None:
        """Terminate the guest process."""
        if self._closed:
            return
        self._closed = True

        if not self._process.stdin.is_closing():
            self._process.stdin.close()
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Guest runtime pid={self.pid} did not exit, killing")
            self._process.kill()
            await self._process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                await task

        logger.info(f"Guest runtime pid={self.pid} stopped (exit code {self._process.returncode})")

    async def _read_loop(self) -> None:
        reason = "Guest runtime closed its channel"
        try:
            while True:
                try:
                    line = await self._process.stdout.readline()
                except ValueError as e:
                    reason = f"Guest message exceeded the size limit: {e}"
                    self._process.kill()
                    break

                if not line:
                    break
                line = line.strip()
                if not line:
                    continue

                try:
                    message = parse_message(line)
                except ProtocolError as e:
                    logger.warning(f"Discarding malformed guest message: {e.message}")
                    continue

                self._dispatch(message)
        finally:
            error = GuestRuntimeError(reason)
            if not self._ready.done():
                self._ready.set_exception(error)
                self._ready.exception()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(error)
            self._pending.clear()

            self._exited = True
            if not self._closed:
                logger.error(f"{reason} (pid={self.pid})")
                if self._on_exit is not None:
                    self._on_exit(reason)

    def _dispatch(self, message: Message) -> None:
        if isinstance(message, JsonRpcResponse):
            future = self._pending.pop(message.id, None)
            if future is None or future.done():
                logger.debug(f"Ignoring response for unknown request id {message.id}")
                return
            future.set_result(message)
            return

        if message.method == Methods.READY:
            if not self._ready.done():
                self._ready.set_result(message.params)
        elif message.method == Methods.CALL:
            self._call_global(message.params)
        else:
            logger.debug(f"Ignoring guest notification: {message.method}")

    def _call_global(self, params: Dict[str, Any]) -> None:
        name = params.get("name")
        function = self._globals.get(name)
        if function is None:
            logger.debug(f"Guest called unregistered host global: {name}")
            return

        args = params.get("args") or []
        run_id = params.get("run_id")
        try:
            if run_id is None:
                function(*args)
            else:
                function(*args, run_id=run_id)
        except Exception:
            logger.exception(f"Host global {name} raised")

    async def _pump_stderr(self) -> None:
        while True:
            try:
                line = await self._process.stderr.readline()
            except ValueError:
                continue
            if not line:
                break
            logger.debug(
                f"[guest] {line.decode('utf-8', errors='replace').rstrip()}",
                extra={"guest_pid": self.pid},
            )
