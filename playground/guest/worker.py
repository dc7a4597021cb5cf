"""Guest worker - the program the playground runtime runs in its own interpreter.

Speaks line-delimited JSON-RPC 2.0 with the host:
    stdin   requests from the host (ping, load_packages, set_global, execute)
    stdout  responses and notifications (ready, call)
    stderr  anything else the guest prints outside of a run

This file is fetched and started by the host bootstrapper, so it only uses
the standard library at import time.
"""

import base64
import builtins
import importlib
import io
import json
import linecache
import os
import sys
import threading
import traceback

PROTOCOL_VERSION = "1"

# Filename user code is compiled under; tracebacks are cut to these frames.
SOURCE_FILENAME = "<playground>"

PNG_DATA_URI = "data:image/png;base64,"

METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
GUEST_EXECUTION_ERROR = -32000
PACKAGE_LOAD_ERROR = -32001


def _import_pyplot():
    """Select the non-interactive backend and return pyplot (None without matplotlib)."""
    try:
        import matplotlib
    except ModuleNotFoundError:
        return None
    matplotlib.use("Agg")
    from matplotlib import pyplot as plt

    return plt


def render_figure(plt, num, dpi=None):
    """Render an open figure to a PNG data URI."""
    figure = plt.figure(num)
    buf = io.BytesIO()
    try:
        figure.savefig(buf, format="png", bbox_inches="tight", dpi=dpi or "figure")
        return PNG_DATA_URI + base64.b64encode(buf.getvalue()).decode("ascii")
    finally:
        buf.close()


def flush_figures(plt, emit_figure, dpi=None):
    """Emit every open figure in figure-number order, closing each one."""
    for num in plt.get_fignums():
        emit_figure(render_figure(plt, num, dpi))
        plt.close(num)


class RunOutput(io.StringIO):
    """Capture buffer for one run.

    Threads that were already running when the run started belong to an
    earlier run; what they write goes to the fallback stream instead.
    """

    def __init__(self, fallback):
        super().__init__()
        self._fallback = fallback
        current = threading.current_thread()
        self._foreign = {t for t in threading.enumerate() if t is not current}

    def is_foreign(self):
        return threading.current_thread() in self._foreign

    def write(self, s):
        if self.is_foreign():
            return self._fallback.write(s)
        return super().write(s)


def run_wrapped(source, namespace, emit_figure, dpi=None):
    """Run user source with captured streams and figure interception.

    stdout and stderr share one buffer, so the returned text keeps the order
    in which the script wrote to them. pyplot.show is rebound for the
    duration of the run; figures still open when the script finishes are
    flushed as well. Exceptions from the user code propagate after the
    streams and pyplot.show are restored.
    """
    saved_stdout, saved_stderr = sys.stdout, sys.stderr
    buffer = RunOutput(saved_stderr)
    sys.stdout = buffer
    sys.stderr = buffer
    try:
        plt = _import_pyplot()
        saved_show = None
        if plt is not None:
            # Leftovers from an earlier failed run belong to that run.
            plt.close("all")
            saved_show = plt.show

            def show(*args, **kwargs):
                if buffer.is_foreign():
                    return
                flush_figures(plt, emit_figure, dpi)

            plt.show = show

        try:
            linecache.cache[SOURCE_FILENAME] = (
                len(source),
                None,
                source.splitlines(True),
                SOURCE_FILENAME,
            )
            code = compile(source, SOURCE_FILENAME, "exec")
            exec(code, namespace)
            if plt is not None:
                flush_figures(plt, emit_figure, dpi)
        finally:
            if plt is not None:
                plt.show = saved_show
    finally:
        sys.stdout = saved_stdout
        sys.stderr = saved_stderr

    return buffer.getvalue()


def format_guest_error(exc):
    """Format an exception raised by user code, hiding worker frames."""
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != SOURCE_FILENAME:
        tb = tb.tb_next
    lines = traceback.format_exception(type(exc), exc, tb)
    return "".join(lines).rstrip("\n")


class MessageTooLarge(Exception):
    """A message would not fit in one line of the host's reader."""

    def __init__(self, size, limit):
        self.message = f"Message of {size} bytes exceeds the {limit} byte limit"
        super().__init__(self.message)
        self.size = size
        self.limit = limit


class Channel:
    """Writes JSON-RPC messages to the host, one per line.

    limit is the host's line limit in bytes; None disables the check.
    """

    def __init__(self, stream, limit=None):
        self._stream = stream
        self._lock = threading.Lock()
        self.limit = limit

    def send(self, message):
        # Arguments that are not JSON values reach the host as null.
        line = json.dumps(message, default=lambda o: None) + "\n"
        if self.limit is not None:
            size = len(line.encode("utf-8"))
            if size >= self.limit:
                raise MessageTooLarge(size, self.limit)
        # Threads started by user code may call host globals concurrently.
        with self._lock:
            self._stream.write(line)
            self._stream.flush()

    def notify(self, method, params):
        self.send({"jsonrpc": "2.0", "method": method, "params": params})

    def respond(self, request_id, result):
        self.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    def error(self, request_id, code, message, data=None):
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        response = {"jsonrpc": "2.0", "id": request_id, "error": error}
        try:
            self.send(response)
        except MessageTooLarge:
            # Worst case JSON escaping is 12 bytes per character.
            error["message"] = message[: self.limit // 16] + "\n... (truncated)"
            self.send(response)


class GuestWorker:
    """Dispatches host requests inside the guest interpreter."""

    def __init__(self, channel):
        self.channel = channel
        self.host_globals = []

    def handle(self, request):
        request_id = request.get("id")
        method = request.get("method")
        params = request.get("params") or {}

        handler = getattr(self, "_handle_" + str(method), None)
        if handler is None:
            self.channel.error(request_id, METHOD_NOT_FOUND, f"Unknown method: {method}")
            return

        try:
            result = handler(params)
        except _GuestFailure as failure:
            self.channel.error(request_id, failure.code, failure.message, failure.data)
        except Exception as e:
            self.channel.error(request_id, INTERNAL_ERROR, f"{type(e).__name__}: {e}")
        else:
            try:
                self.channel.respond(request_id, result)
            except MessageTooLarge as e:
                self.channel.error(
                    request_id,
                    GUEST_EXECUTION_ERROR,
                    f"Output too large: {e.message}",
                    {"type": type(e).__name__},
                )

    def _handle_ping(self, params):
        return {"protocol": PROTOCOL_VERSION}

    def _handle_load_packages(self, params):
        packages = params.get("packages")
        if not isinstance(packages, list):
            raise _GuestFailure(INVALID_PARAMS, "packages must be a list")

        loaded = []
        for name in packages:
            try:
                importlib.import_module(name)
            except Exception as e:
                raise _GuestFailure(
                    PACKAGE_LOAD_ERROR,
                    f"Failed to load package '{name}': {e}",
                    {"package": name},
                ) from e
            loaded.append(name)
        return {"loaded": loaded}

    def _handle_set_global(self, params):
        name = params.get("name")
        if not isinstance(name, str) or not name.isidentifier():
            raise _GuestFailure(INVALID_PARAMS, f"Invalid global name: {name!r}")
        if name not in self.host_globals:
            self.host_globals.append(name)
        return {"name": name}

    def _handle_execute(self, params):
        source = params.get("source")
        if not isinstance(source, str):
            raise _GuestFailure(INVALID_PARAMS, "source must be a string")
        self.channel.limit = params.get("max_message_bytes")

        # Stubs are bound to this run, so calls from threads that outlive
        # it reach the host tagged with the old run id.
        run_id = params.get("run_id")
        stubs = {name: self._host_function(name, run_id) for name in self.host_globals}
        namespace = {"__name__": "__main__", "__builtins__": builtins}
        namespace.update(stubs)

        emit_figure = stubs.get("send_figure", _discard)
        try:
            return run_wrapped(source, namespace, emit_figure, params.get("dpi"))
        except BaseException as e:
            # SystemExit and KeyboardInterrupt from user code end the run, not the worker.
            raise _GuestFailure(
                GUEST_EXECUTION_ERROR,
                format_guest_error(e),
                {"type": type(e).__name__},
            ) from e

    def _host_function(self, name, run_id=None):
        channel = self.channel

        def call(*args):
            params = {"name": name, "args": list(args)}
            if run_id is not None:
                params["run_id"] = run_id
            channel.notify("call", params)

        call.__name__ = name
        return call

    def serve(self, requests):
        self.channel.notify(
            "ready",
            {"protocol": PROTOCOL_VERSION, "python": sys.version.split()[0]},
        )
        for line in requests:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                print(f"Discarding malformed request: {e}", file=sys.stderr)
                continue
            if not isinstance(request, dict):
                print("Discarding non-object request", file=sys.stderr)
                continue
            self.handle(request)


class _GuestFailure(Exception):
    def __init__(self, code, message, data=None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def _discard(*args):
    pass


def main():
    # Keep the real stdout for the protocol and send fd 1 to stderr, so
    # nothing the guest prints can corrupt the channel.
    channel_stream = os.fdopen(os.dup(1), "w", encoding="utf-8")
    os.dup2(2, 1)
    sys.stdout = sys.stderr

    requests = sys.stdin
    sys.stdin = io.StringIO()

    GuestWorker(Channel(channel_stream)).serve(requests)


if __name__ == "__main__":
    main()
