"""Tests for the guest-side execution wrapper, run in-process."""

import base64
import io
import json
import struct
import sys
import threading

import pytest

matplotlib = pytest.importorskip("matplotlib")
matplotlib.use("Agg")
from matplotlib import pyplot as plt  # noqa: E402

from playground.guest.worker import (  # noqa: E402
    GUEST_EXECUTION_ERROR,
    METHOD_NOT_FOUND,
    PACKAGE_LOAD_ERROR,
    Channel,
    GuestWorker,
    MessageTooLarge,
    format_guest_error,
    run_wrapped,
)


def png_width(data_uri: str) -> int:
    """Width from the IHDR chunk of a base64 PNG data URI."""
    raw = base64.b64decode(data_uri.split(",", 1)[1])
    assert raw[:8] == b"\x89PNG\r\n\x1a\n"
    return struct.unpack(">I", raw[16:20])[0]


def run(source: str, **namespace):
    figures = []
    text = run_wrapped(source, {"__name__": "__main__", **namespace}, figures.append)
    return text, figures


def channel_messages(stream: io.StringIO):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def execute(worker, request_id, source, **params):
    worker.handle(
        {"id": request_id, "method": "execute", "params": {"source": source, **params}}
    )


@pytest.fixture(autouse=True)
def _close_figures():
    plt.close("all")
    yield
    plt.close("all")


class TestRunWrapped:
    """Test stream capture and figure interception."""

    def test_captures_stdout(self):
        """print() output is returned as the run's text."""
        text, figures = run('print("hello")')
        assert text == "hello\n"
        assert figures == []

    def test_empty_script(self):
        """An empty script yields no text and no figures."""
        assert run("") == ("", [])

    def test_interleaves_stdout_and_stderr(self):
        """stdout and stderr share one buffer in write order."""
        text, _ = run(
            "import sys\n"
            "print('a')\n"
            "print('b', file=sys.stderr)\n"
            "sys.stdout.write('c\\n')\n"
        )
        assert text == "a\nb\nc\n"

    def test_show_emits_png_data_uri(self):
        """plt.show() emits the figure as a PNG data URI."""
        text, figures = run(
            "import matplotlib.pyplot as plt\n"
            "plt.plot([1, 2, 3])\n"
            "plt.show()\n"
        )
        assert text == ""
        assert len(figures) == 1
        assert figures[0].startswith("data:image/png;base64,")
        assert png_width(figures[0]) > 0

    def test_figures_keep_emission_order(self):
        """Figures arrive in the order they were shown."""
        _, figures = run(
            "import matplotlib.pyplot as plt\n"
            "for width in (2, 4, 6):\n"
            "    plt.figure(figsize=(width, 2), dpi=50)\n"
            "    plt.plot([0, 1], [0, 1])\n"
            "    plt.show()\n"
        )
        widths = [png_width(f) for f in figures]
        assert len(widths) == 3
        assert widths[0] < widths[1] < widths[2]

    def test_shown_figure_is_not_emitted_twice(self):
        """A shown figure is closed and not emitted again."""
        _, figures = run(
            "import matplotlib.pyplot as plt\n"
            "plt.plot([1, 2])\n"
            "plt.show()\n"
            "plt.show()\n"
        )
        assert len(figures) == 1

    def test_unshown_figure_is_flushed(self):
        """Figures still open at the end of the run are emitted."""
        _, figures = run(
            "import matplotlib.pyplot as plt\n"
            "plt.figure()\n"
            "plt.plot([1, 2])\n"
        )
        assert len(figures) == 1
        assert plt.get_fignums() == []

    def test_figure_closed_by_user_is_not_captured(self):
        """A figure the script closes itself is never emitted."""
        _, figures = run(
            "import matplotlib.pyplot as plt\n"
            "fig = plt.figure()\n"
            "plt.close(fig)\n"
        )
        assert figures == []

    def test_leftover_figures_are_discarded(self):
        """Figures open before the run started are not part of it."""
        plt.figure()
        _, figures = run("print('no plots')")
        assert figures == []

    def test_restores_streams_and_show(self):
        """sys.stdout, sys.stderr and plt.show are restored after a run."""
        stdout, stderr, show = sys.stdout, sys.stderr, plt.show
        run('print("x")')
        assert sys.stdout is stdout
        assert sys.stderr is stderr
        assert plt.show is show

    def test_restores_on_error(self):
        """Restoration also happens when the script raises."""
        stdout, stderr, show = sys.stdout, sys.stderr, plt.show

        with pytest.raises(ZeroDivisionError):
            run('print("before")\n1 / 0\n')

        assert sys.stdout is stdout
        assert sys.stderr is stderr
        assert plt.show is show

    def test_syntax_error_propagates(self):
        """A script that does not compile raises SyntaxError."""
        with pytest.raises(SyntaxError):
            run("def broken(:\n")

    def test_older_thread_output_is_not_captured(self, capsys):
        """Threads started before the run write to the previous stderr."""
        go, done = threading.Event(), threading.Event()

        def older_run():
            go.wait(5)
            print("from an older run")
            done.set()

        thread = threading.Thread(target=older_run)
        thread.start()
        try:
            text, _ = run("go.set()\ndone.wait(5)\nprint('mine')\n", go=go, done=done)
        finally:
            go.set()
            thread.join(5)

        assert text == "mine\n"
        assert "from an older run" in capsys.readouterr().err

    def test_threads_started_by_the_run_are_captured(self):
        """Output from threads the script starts belongs to the run."""
        text, _ = run(
            "import threading\n"
            "t = threading.Thread(target=print, args=('worker',))\n"
            "t.start()\n"
            "t.join()\n"
        )
        assert text == "worker\n"


class TestFormatGuestError:
    """Test guest tracebacks."""

    def test_only_user_frames(self):
        """Worker frames are cut from the traceback."""
        with pytest.raises(ZeroDivisionError) as exc_info:
            run("x = 1\ny = x / 0\n")

        message = format_guest_error(exc_info.value)

        assert message.startswith("Traceback (most recent call last):")
        assert 'File "<playground>", line 2' in message
        assert "y = x / 0" in message
        assert "worker.py" not in message
        assert message.endswith("ZeroDivisionError: division by zero")

    def test_syntax_error(self):
        """Syntax errors point at the playground source."""
        with pytest.raises(SyntaxError) as exc_info:
            run("print('unclosed'\n")

        message = format_guest_error(exc_info.value)
        assert "SyntaxError" in message
        assert "<playground>" in message


class TestChannel:
    """Test message framing and the size limit."""

    def test_one_message_per_line(self):
        """Each message is a single JSON line."""
        stream = io.StringIO()
        channel = Channel(stream)

        channel.notify("ready", {"protocol": "1"})
        channel.respond(1, "a\nb")

        assert channel_messages(stream)[1] == {"jsonrpc": "2.0", "id": 1, "result": "a\nb"}

    def test_oversized_message_is_not_written(self):
        """A message at or over the limit raises and leaves the stream untouched."""
        stream = io.StringIO()
        channel = Channel(stream, limit=100)

        with pytest.raises(MessageTooLarge) as exc_info:
            channel.respond(1, "x" * 200)

        assert stream.getvalue() == ""
        assert exc_info.value.limit == 100


class TestGuestWorker:
    """Test request dispatch against an in-memory channel."""

    def make_worker(self):
        stream = io.StringIO()
        return GuestWorker(Channel(stream)), stream

    def test_serve_announces_ready(self):
        """serve() sends the ready handshake before answering requests."""
        worker, stream = self.make_worker()
        worker.serve(iter(['{"jsonrpc": "2.0", "id": 1, "method": "ping", "params": {}}\n']))

        ready, pong = channel_messages(stream)
        assert ready["method"] == "ready"
        assert ready["params"]["protocol"] == "1"
        assert pong == {"jsonrpc": "2.0", "id": 1, "result": {"protocol": "1"}}

    def test_serve_skips_malformed_lines(self):
        """Lines that are not JSON objects are skipped."""
        worker, stream = self.make_worker()
        worker.serve(iter(["garbage\n", "\n", "[]\n"]))
        assert len(channel_messages(stream)) == 1

    def test_unknown_method(self):
        """Unknown methods get METHOD_NOT_FOUND."""
        worker, stream = self.make_worker()
        worker.handle({"id": 2, "method": "reboot"})

        (response,) = channel_messages(stream)
        assert response["error"]["code"] == METHOD_NOT_FOUND

    def test_load_packages(self):
        """Importable packages load; a missing one is a PACKAGE_LOAD_ERROR."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "load_packages", "params": {"packages": ["json"]}})
        worker.handle(
            {
                "id": 2,
                "method": "load_packages",
                "params": {"packages": ["no_such_package_for_playground"]},
            }
        )

        ok, failed = channel_messages(stream)
        assert ok["result"] == {"loaded": ["json"]}
        assert failed["error"]["code"] == PACKAGE_LOAD_ERROR
        assert "no_such_package_for_playground" in failed["error"]["message"]

    def test_execute_calls_host_global(self):
        """A registered global sends a call notification before the response."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "send_figure"}})
        execute(worker, 2, "send_figure('data:image/png;base64,AA')\nprint('done')")

        registered, call, response = channel_messages(stream)
        assert registered["result"] == {"name": "send_figure"}
        assert call == {
            "jsonrpc": "2.0",
            "method": "call",
            "params": {"name": "send_figure", "args": ["data:image/png;base64,AA"]},
        }
        assert response["result"] == "done\n"

    def test_host_calls_carry_run_id(self):
        """Calls made during a run are tagged with that run's id."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "send_figure"}})
        execute(worker, 2, "send_figure('data:image/png;base64,AA')", run_id=7)

        _, call, _ = channel_messages(stream)
        assert call["params"]["run_id"] == 7

    def test_kept_callback_keeps_its_run_id(self):
        """A callback kept past its run still reports the run it came from."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "send_figure"}})
        try:
            execute(worker, 2, "import sys\nsys._kept_send_figure = send_figure", run_id=1)
            execute(worker, 3, "print('second')", run_id=2)

            sys._kept_send_figure("data:image/png;base64,LATE")
        finally:
            sys.__dict__.pop("_kept_send_figure", None)

        late = channel_messages(stream)[-1]
        assert late["method"] == "call"
        assert late["params"]["run_id"] == 1

    def test_figures_are_sent_before_response(self):
        """Flushed figures reach the channel before the execute response."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "send_figure"}})
        execute(worker, 2, "import matplotlib.pyplot as plt\nplt.plot([1])\n")

        messages = channel_messages(stream)[1:]
        assert [m.get("method") for m in messages] == ["call", None]
        assert messages[1]["id"] == 2

    def test_execute_error(self):
        """An exception in user code is a GUEST_EXECUTION_ERROR with its type."""
        worker, stream = self.make_worker()
        execute(worker, 1, "raise ValueError('bad')")

        (response,) = channel_messages(stream)
        assert response["error"]["code"] == GUEST_EXECUTION_ERROR
        assert response["error"]["data"] == {"type": "ValueError"}
        assert "ValueError: bad" in response["error"]["message"]

    def test_system_exit_is_a_guest_error(self):
        """sys.exit() in user code fails the run, not the worker."""
        worker, stream = self.make_worker()
        execute(worker, 1, "import sys\nsys.exit(3)")

        (response,) = channel_messages(stream)
        assert response["error"]["data"] == {"type": "SystemExit"}

    def test_oversized_output_fails_only_the_run(self):
        """Output over the message limit becomes an execution error."""
        worker, stream = self.make_worker()
        execute(worker, 1, "print('x' * 5000)", max_message_bytes=1000)
        execute(worker, 2, "print('ok')", max_message_bytes=1000)

        too_large, ok = channel_messages(stream)
        assert too_large["error"]["code"] == GUEST_EXECUTION_ERROR
        assert too_large["error"]["data"] == {"type": "MessageTooLarge"}
        assert "Output too large" in too_large["error"]["message"]
        assert ok["result"] == "ok\n"

    def test_oversized_figure_fails_the_run(self):
        """A figure over the message limit raises inside the script."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "send_figure"}})
        execute(
            worker,
            2,
            "import matplotlib.pyplot as plt\nplt.plot([1, 2])\nplt.show()\n",
            max_message_bytes=4096,
        )

        response = channel_messages(stream)[-1]
        assert response["id"] == 2
        assert response["error"]["data"] == {"type": "MessageTooLarge"}

    def test_runs_use_fresh_namespace(self):
        """Variables from one run are not visible in the next."""
        worker, stream = self.make_worker()
        execute(worker, 1, "x = 1")
        execute(worker, 2, "print(x)")

        first, second = channel_messages(stream)
        assert first["result"] == ""
        assert "NameError" in second["error"]["message"]

    def test_invalid_global_name(self):
        """set_global rejects names that are not identifiers."""
        worker, stream = self.make_worker()
        worker.handle({"id": 1, "method": "set_global", "params": {"name": "not a name"}})

        (response,) = channel_messages(stream)
        assert "Invalid global name" in response["error"]["message"]

    def test_oversized_error_is_truncated(self):
        """An error message over the limit is shortened, not dropped."""
        worker, stream = self.make_worker()
        execute(worker, 1, "raise ValueError('y' * 5000)", max_message_bytes=1000)

        (response,) = channel_messages(stream)
        assert response["error"]["code"] == GUEST_EXECUTION_ERROR
        assert response["error"]["message"].endswith("(truncated)")
