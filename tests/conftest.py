"""
pytest configuration and fixtures.
"""

import logging
import socket
import threading
import time
from typing import Callable, Generator, Optional

import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from helloserver import HTTPServer, ServerConfig, greet
from helloserver.http import HTTPRequest, HTTPResponse


SRC_DIR = Path(__file__).parent.parent / "src"


@pytest.fixture
def sample_get_request() -> bytes:
    """Sample HTTP GET request."""
    return (
        b"GET /?name=holos&lang=en HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"User-Agent: pytest\r\n"
        b"Accept: */*\r\n"
        b"Connection: keep-alive\r\n"
        b"\r\n"
    )


@pytest.fixture
def sample_post_request() -> bytes:
    """Sample HTTP POST request with a body."""
    body = b"name=holos"
    return (
        b"POST /submit HTTP/1.1\r\n"
        b"Host: localhost:8080\r\n"
        b"Content-Type: application/x-www-form-urlencoded\r\n"
        b"Content-Length: %d\r\n"
        b"Connection: close\r\n"
        b"\r\n" % len(body)
    ) + body


@pytest.fixture
def config() -> ServerConfig:
    """Test server configuration: localhost, OS-picked port, short timeouts."""
    return ServerConfig(
        addr="127.0.0.1:0",
        read_timeout=5.0,
        write_timeout=5.0,
        shutdown_timeout=5.0,
    )


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def package_log_level():
    """Let caplog see INFO records from the package loggers."""
    package_logger = logging.getLogger("helloserver")
    previous = package_logger.level
    package_logger.setLevel(logging.DEBUG)
    yield
    package_logger.setLevel(previous)


class TestServer:
    """Test server helper that runs the accept loop in a background thread."""

    __test__ = False  # Not a test class, despite the name

    def __init__(self, server: HTTPServer):
        self.server = server
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    def start(self):
        """Bind, then serve in a background thread."""
        self.server.bind()
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> bool:
        """Shut the server down; returns whether it drained cleanly."""
        drained = self.server.shutdown(timeout)
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        return drained

    def connect(self) -> socket.socket:
        sock = socket.create_connection(("127.0.0.1", self.port), timeout=10.0)
        return sock

    def request(self, raw: bytes) -> bytes:
        """Send one raw request on a fresh connection, return the raw response."""
        with self.connect() as sock:
            sock.sendall(raw)
            return recv_response(sock)


def recv_response(sock: socket.socket) -> bytes:
    """Read one complete response (headers plus Content-Length body)."""
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(4096)
        if not chunk:
            return data
        data += chunk

    header_end = data.find(b"\r\n\r\n")
    length = 0
    for line in data[:header_end].decode("latin-1").split("\r\n")[1:]:
        name, _, value = line.partition(":")
        if name.strip().lower() == "content-length":
            length = int(value.strip())

    while len(data) < header_end + 4 + length:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


def split_response(raw: bytes) -> tuple[int, dict, bytes]:
    """Split a raw response into (status code, lowercase headers, body)."""
    head, _, body = raw.partition(b"\r\n\r\n")
    lines = head.decode("latin-1").split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return status, headers, body


def slow_handler(seconds: float, started: Optional[threading.Event] = None) -> Callable:
    """A handler that sleeps before greeting, to keep a request in flight."""
    def handler(request: HTTPRequest) -> HTTPResponse:
        if started is not None:
            started.set()
        time.sleep(seconds)
        return greet(request)
    return handler


@pytest.fixture
def test_server(config: ServerConfig) -> Generator[TestServer, None, None]:
    """A running server with the greeting handler."""
    test_srv = TestServer(HTTPServer(config, greet))
    test_srv.start()

    yield test_srv

    if not test_srv.server.is_shutting_down:
        test_srv.stop()
