"""
Integration tests for the server lifecycle: start, signals, shutdown, exit.
"""

import signal
import socket
import threading
import time

import pytest

from conftest import recv_response, slow_handler, split_response

from helloserver import (
    BindError, Lifecycle, ListenerError, LogConfig, ServerConfig, State, greet,
)
from helloserver.__main__ import main


@pytest.fixture
def busy_port():
    """A port with a listening socket already on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        s.listen(1)
        yield s.getsockname()[1]


def wait_for_state(lifecycle: Lifecycle, state: State, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if lifecycle.state is state:
            return True
        time.sleep(0.01)
    return False


class TestLifecycleSteps:
    """Tests for start(), wait() and shutdown() called one by one."""

    def test_state_transitions(self, config: ServerConfig):
        """Test STARTING → SERVING → SHUTTING_DOWN → STOPPED."""
        lifecycle = Lifecycle(config)
        assert lifecycle.state is State.STARTING

        lifecycle.start()
        assert lifecycle.state is State.SERVING

        port = lifecycle.server.server_address[1]
        with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
            sock.sendall(b"GET /?name=holos HTTP/1.1\r\nConnection: close\r\n\r\n")
            assert split_response(recv_response(sock))[2] == b"Hello, holos\n"

        threading.Timer(0.1, lifecycle.request_stop).start()
        assert lifecycle.wait() == signal.SIGTERM

        assert lifecycle.shutdown() is True
        assert lifecycle.state is State.STOPPED

    def test_cannot_start_twice(self, config: ServerConfig):
        lifecycle = Lifecycle(config)
        lifecycle.start()
        try:
            with pytest.raises(RuntimeError):
                lifecycle.start()
        finally:
            lifecycle.shutdown()

    def test_shutdown_requires_serving(self, config: ServerConfig):
        """Test shutdown() before start() is a programming error."""
        with pytest.raises(RuntimeError):
            Lifecycle(config).shutdown()

    def test_bind_failure(self, busy_port: int):
        """Test a busy port raises BindError and ends STOPPED, never SERVING."""
        lifecycle = Lifecycle(ServerConfig(addr=f"127.0.0.1:{busy_port}"))

        with pytest.raises(BindError) as exc_info:
            lifecycle.start()

        assert lifecycle.state is State.STOPPED
        assert exc_info.value.addr == f"127.0.0.1:{busy_port}"
        assert isinstance(exc_info.value.cause, OSError)

    def test_invalid_config_rejected(self):
        """Test configuration is validated before anything binds."""
        with pytest.raises(ValueError):
            Lifecycle(ServerConfig(addr="no-port"))

    def test_listener_failure(self, config: ServerConfig, monkeypatch):
        """Test an accept loop crash surfaces from wait() as ListenerError."""
        lifecycle = Lifecycle(config)

        def broken_loop():
            raise OSError("accept failed")

        monkeypatch.setattr(lifecycle.server, "serve_forever", broken_loop)
        lifecycle.start()

        with pytest.raises(ListenerError) as exc_info:
            lifecycle.wait()
        assert isinstance(exc_info.value.cause, OSError)

        lifecycle.shutdown()
        assert lifecycle.state is State.STOPPED

    def test_shutdown_before_listener_runs(self, config: ServerConfig, monkeypatch):
        """Test a stop that beats the accept loop isn't reported as a listener failure."""
        lifecycle = Lifecycle(config)
        release = threading.Event()
        serve = lifecycle.server.serve_forever

        def late_loop():
            release.wait(5.0)
            serve()

        monkeypatch.setattr(lifecycle.server, "serve_forever", late_loop)
        lifecycle.start()

        assert lifecycle.shutdown(timeout=1.0) is True
        release.set()
        lifecycle._listener.join(5.0)
        assert not lifecycle._listener.is_alive()

        # Nothing but the stop request is waiting in the event channel
        lifecycle.request_stop()
        assert lifecycle.wait() == signal.SIGTERM

    @pytest.mark.skipif(
        not hasattr(signal, "pthread_sigmask"), reason="no per-thread signal masks"
    )
    def test_helper_threads_block_shutdown_signals(self, config: ServerConfig):
        """Test only the main thread can take SIGINT/SIGTERM once serving."""
        masks = {}

        def recording(request):
            masks["worker"] = signal.pthread_sigmask(signal.SIG_BLOCK, [])
            return greet(request)

        lifecycle = Lifecycle(config, handler=recording)
        lifecycle.start()
        try:
            port = lifecycle.server.server_address[1]
            with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
                sock.sendall(b"GET / HTTP/1.1\r\nConnection: close\r\n\r\n")
                assert split_response(recv_response(sock))[0] == 200
            main_mask = signal.pthread_sigmask(signal.SIG_BLOCK, [])
        finally:
            lifecycle.shutdown()

        assert {signal.SIGINT, signal.SIGTERM} <= masks["worker"]
        assert signal.SIGINT not in main_mask
        assert signal.SIGTERM not in main_mask


class TestRun:
    """Tests for Lifecycle.run(), the full start-wait-shutdown sequence."""

    def test_run_until_stop_requested(self, config: ServerConfig, tmp_path):
        """Test run() returns 0 and logs the whole sequence."""
        log_file = tmp_path / "app.log"
        config.log = LogConfig(file_location=str(log_file))
        lifecycle = Lifecycle(config)

        lifecycle.request_stop()
        assert lifecycle.run(handle_signals=False) == 0
        assert lifecycle.state is State.STOPPED

        content = log_file.read_text(encoding="utf-8")
        assert "Server started on 127.0.0.1:" in content
        assert "Received SIGTERM, shutting down..." in content
        assert "Server exiting" in content

    @pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGINT])
    def test_run_until_signal(self, config: ServerConfig, signum, tmp_path):
        """Test a real SIGTERM/SIGINT ends run() with status 0."""
        log_file = tmp_path / "app.log"
        config.log = LogConfig(file_location=str(log_file))
        lifecycle = Lifecycle(config)
        original = signal.getsignal(signum)
        main_thread = threading.main_thread().ident

        def send_signal():
            if wait_for_state(lifecycle, State.SERVING):
                signal.pthread_kill(main_thread, signum)

        threading.Thread(target=send_signal, daemon=True).start()

        assert lifecycle.run() == 0
        assert signal.getsignal(signum) == original
        assert f"Received {signal.Signals(signum).name}" in log_file.read_text(encoding="utf-8")

    def test_run_drains_in_flight(self, config: ServerConfig):
        """Test a stop during a request still delivers the response."""
        started = threading.Event()

        def slow(request):
            started.set()
            time.sleep(0.5)
            return greet(request)

        lifecycle = Lifecycle(config, handler=slow)
        result = {}

        def client():
            wait_for_state(lifecycle, State.SERVING)
            port = lifecycle.server.server_address[1]
            with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
                sock.sendall(b"GET /?name=holos HTTP/1.1\r\n\r\n")
                result["response"] = recv_response(sock)

        def stopper():
            started.wait(5.0)
            lifecycle.request_stop()

        threads = [threading.Thread(target=f, daemon=True) for f in (client, stopper)]
        for t in threads:
            t.start()

        assert lifecycle.run(handle_signals=False) == 0
        for t in threads:
            t.join(5.0)

        assert split_response(result["response"])[0] == 200

    def test_run_deadline_forces_exit(self, config: ServerConfig, tmp_path):
        """Test a request outliving shutdown_timeout is dropped and run() still returns 0."""
        log_file = tmp_path / "app.log"
        config.log = LogConfig(file_location=str(log_file))
        config.shutdown_timeout = 0.5
        started = threading.Event()
        lifecycle = Lifecycle(config, handler=slow_handler(3.0, started))
        result = {}

        def client():
            wait_for_state(lifecycle, State.SERVING)
            port = lifecycle.server.server_address[1]
            try:
                with socket.create_connection(("127.0.0.1", port), timeout=5.0) as sock:
                    sock.sendall(b"GET / HTTP/1.1\r\n\r\n")
                    result["response"] = recv_response(sock)
            except OSError as e:
                result["error"] = e

        def stopper():
            started.wait(5.0)
            result["stopped_at"] = time.monotonic()
            lifecycle.request_stop()

        threads = [threading.Thread(target=f, daemon=True) for f in (client, stopper)]
        for t in threads:
            t.start()

        assert lifecycle.run(handle_signals=False) == 0
        elapsed = time.monotonic() - result["stopped_at"]
        for t in threads:
            t.join(5.0)

        assert 0.4 <= elapsed < 2.0
        assert result.get("response", b"") == b"" or "error" in result

        content = log_file.read_text(encoding="utf-8")
        assert "Server forced to shutdown before all requests finished" in content
        assert "Server exiting" in content

    def test_run_bind_failure(self, busy_port: int, tmp_path):
        """Test run() logs CRITICAL and re-raises when it can't bind."""
        log_file = tmp_path / "app.log"
        config = ServerConfig(
            addr=f"127.0.0.1:{busy_port}",
            log=LogConfig(file_location=str(log_file)),
        )
        original = signal.getsignal(signal.SIGTERM)

        with pytest.raises(BindError):
            Lifecycle(config).run()

        assert signal.getsignal(signal.SIGTERM) == original
        assert "[CRITICAL]" in log_file.read_text(encoding="utf-8")

    def test_run_listener_failure(self, config: ServerConfig, monkeypatch):
        lifecycle = Lifecycle(config)

        def broken_loop():
            raise OSError("accept failed")

        monkeypatch.setattr(lifecycle.server, "serve_forever", broken_loop)

        with pytest.raises(ListenerError):
            lifecycle.run(handle_signals=False)
        assert lifecycle.state is State.STOPPED


class TestMain:
    """Tests for the CLI entry point, in process."""

    def test_bind_failure_exit_status(self, busy_port: int):
        assert main(["--addr", f"127.0.0.1:{busy_port}"]) == 1

    def test_bad_address_exit_status(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--addr", "no-port"])
        assert exc_info.value.code == 2

    def test_bad_log_level(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--log-level", "loud"])
        assert exc_info.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--version"])

        assert exc_info.value.code == 0
        assert "helloserver 1.0.0" in capsys.readouterr().out
