"""
=============================================================================
CONNECTION MANAGEMENT
=============================================================================

This module handles individual client connections, wrapping the raw socket
with a higher-level API suitable for HTTP request/response handling.

=============================================================================
TCP IS A BYTE STREAM, NOT A MESSAGE PROTOCOL!
=============================================================================

TCP does NOT preserve message boundaries. A request sent as one write
may arrive as several recv() chunks:

    recv() → "GET /?name=ho"
    recv() → "los HTTP/1.1\r\nHost: x\r\n\r\n"

So we buffer received data and look for the protocol delimiter
(\r\n\r\n for HTTP headers) to know when we have a complete message,
then use Content-Length to know how much body follows.

=============================================================================
DEADLINES, NOT TIMEOUTS
=============================================================================

socket.settimeout() bounds ONE blocking call. A client that trickles one
byte every few seconds would never trip it. Instead each read and write
is given an absolute deadline, and every recv()/sendall() gets whatever
time is left:

    deadline = now + read_timeout
    while request incomplete:
        sock.settimeout(deadline - now)     ← shrinks every iteration
        recv()

This is how Go's SetReadDeadline/SetWriteDeadline behave.

=============================================================================
CONNECTION STATE MACHINE
=============================================================================

    NEW ──────► READING ──────► PROCESSING ──────► WRITING ────────┐
     │             │                                    │           │
     │             │                                    │           ▼
     │             │                                    │      KEEP_ALIVE
     │             │                                    │           │
     │             ▼                                    ▼           │
     └──────────► CLOSED ◄──────────────────────────────────────────┘

NEW and KEEP_ALIVE are "idle": no request is in flight, so shutdown may
close them right away. READING, PROCESSING and WRITING are "active":
shutdown waits for them until its deadline.

=============================================================================
"""

import socket
import time
import logging
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..http.request import HTTPParseError


logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states."""

    NEW = "new"                # Accepted, no bytes read yet
    READING = "reading"        # First bytes of a request arrived
    PROCESSING = "processing"  # Request parsed, handler is executing
    WRITING = "writing"        # Sending response data
    KEEP_ALIVE = "keep_alive"  # Response sent, waiting for next request
    CLOSED = "closed"          # Socket released

    @property
    def is_idle(self) -> bool:
        return self in (ConnectionState.NEW, ConnectionState.KEEP_ALIVE)

    @property
    def is_active(self) -> bool:
        return self in (
            ConnectionState.READING,
            ConnectionState.PROCESSING,
            ConnectionState.WRITING,
        )


@dataclass(eq=False)
class Connection:
    """
    Represents a client connection.

    Responsibilities:
        1. Buffered reading of complete HTTP requests
        2. Read and write deadlines
        3. State tracking (idle vs. active) for graceful shutdown
        4. Forced termination from another thread (abort)

    Attributes:
        socket: The client socket.
        address: Client's (ip, port) tuple.
        id: Short connection identifier (for logging).
        state: Current connection state.
        requests_handled: Number of requests read on this connection.
    """

    socket: socket.socket
    address: tuple

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    state: ConnectionState = ConnectionState.NEW
    created_at: float = field(default_factory=time.monotonic)
    requests_handled: int = 0
    aborted: bool = False

    buffer_size: int = 8192
    max_request_size: int = 1024 * 1024

    _buffer: bytes = field(default=b"", repr=False)

    def __post_init__(self):
        # Deadlines are applied per call with settimeout()
        self.socket.setblocking(True)

    @property
    def client_ip(self) -> str:
        return self.address[0]

    @property
    def age(self) -> float:
        """Connection age in seconds."""
        return time.monotonic() - self.created_at

    # =========================================================================
    # READING
    # =========================================================================

    def read_request(
        self,
        deadline: float,
        on_start: Optional[Callable[[], None]] = None,
    ) -> Optional[bytes]:
        """
        Read a complete HTTP request from the socket.

        ┌─────────────────────────────────────────────────────────────────┐
        │                    read_request() Flow                           │
        ├─────────────────────────────────────────────────────────────────┤
        │                                                                  │
        │   while no \\r\\n\\r\\n in buffer:                                  │
        │       recv() → buffer          (first bytes: call on_start)     │
        │                                                                  │
        │   parse Content-Length                                           │
        │                                                                  │
        │   while body incomplete:                                         │
        │       recv() → buffer                                            │
        │                                                                  │
        │   split off one request, keep the rest (pipelining)              │
        │                                                                  │
        └─────────────────────────────────────────────────────────────────┘

        Args:
            deadline: time.monotonic() value by which the whole request
                      must have arrived.
            on_start: Called once, as soon as the first byte of the request
                      is available. The server uses it to mark the
                      connection active.

        Returns:
            Complete HTTP request bytes, or None if the client closed the
            connection (or went quiet) before sending anything.

        Raises:
            TimeoutError: If the deadline passes with a partial request.
            HTTPParseError: If the request exceeds max_request_size.
        """
        started = False

        def start():
            nonlocal started
            if not started:
                started = True
                self.state = ConnectionState.READING
                if on_start is not None:
                    on_start()

        # Pipelined bytes left over from the previous request
        if self._buffer:
            start()

        try:
            # ─────────────────────────────────────────────────────────────
            # STEP 1: Read until we have complete headers
            # ─────────────────────────────────────────────────────────────
            while b"\r\n\r\n" not in self._buffer:
                chunk = self._recv(deadline)
                if not chunk:
                    return None

                start()
                self._buffer += chunk

                if len(self._buffer) > self.max_request_size:
                    raise HTTPParseError(
                        f"Request too large: {len(self._buffer)} bytes",
                        status_code=413,
                    )

            header_end = self._buffer.find(b"\r\n\r\n")
            body_start = header_end + 4

            # ─────────────────────────────────────────────────────────────
            # STEP 2: Read the body, if Content-Length says there is one
            # ─────────────────────────────────────────────────────────────
            content_length = self._parse_content_length(self._buffer[:header_end])
            request_end = body_start + content_length

            if request_end > self.max_request_size:
                raise HTTPParseError(
                    f"Request too large: {request_end} bytes",
                    status_code=413,
                )

            while len(self._buffer) < request_end:
                chunk = self._recv(deadline)
                if not chunk:
                    break  # Closed mid-body; the parser reports it
                self._buffer += chunk

            # ─────────────────────────────────────────────────────────────
            # STEP 3: Extract one request, keep leftovers
            # ─────────────────────────────────────────────────────────────
            request_data = self._buffer[:request_end]
            self._buffer = self._buffer[request_end:]

            self.requests_handled += 1
            return request_data

        except socket.timeout:
            if not started:
                # Nothing was sent: an idle client, not an error
                logger.debug(f"[{self.id}] Read deadline passed while idle")
                return None
            raise TimeoutError("Request read timeout")

    def _recv(self, deadline: float) -> bytes:
        """
        Receive one chunk, giving recv() whatever time is left.

        Returns:
            Received bytes, or b"" if the connection is gone.
        """
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise socket.timeout("deadline exceeded")

        self.socket.settimeout(remaining)
        try:
            return self.socket.recv(self.buffer_size)
        except socket.timeout:
            raise
        except OSError:
            # Reset by peer, or aborted by the server during shutdown
            return b""

    def _parse_content_length(self, headers: bytes) -> int:
        """
        Find Content-Length in raw headers, 0 if missing or unreadable.

        The full parser validates the value later; this scan only decides
        how many bytes to wait for.
        """
        header_str = headers.decode("latin-1").lower()
        for line in header_str.split("\r\n"):
            if line.startswith("content-length:"):
                try:
                    return max(int(line.split(":", 1)[1].strip()), 0)
                except ValueError:
                    return 0
        return 0

    # =========================================================================
    # WRITING
    # =========================================================================

    def send_response(self, data: bytes, deadline: float) -> bool:
        """
        Send response bytes before the write deadline.

        Returns:
            True if everything was sent, False if the deadline passed or
            the connection was lost.
        """
        self.state = ConnectionState.WRITING

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(f"[{self.id}] Write deadline passed before sending response")
            return False

        self.socket.settimeout(remaining)
        try:
            self.socket.sendall(data)
            return True
        except socket.timeout:
            logger.warning(f"[{self.id}] Write deadline passed while sending response")
            return False
        except OSError as e:
            if self.aborted:
                logger.debug(f"[{self.id}] Send after abort: {e}")
            else:
                logger.warning(f"[{self.id}] Send failed: {e}")
            return False

    # =========================================================================
    # CLOSING
    # =========================================================================

    def abort(self):
        """
        Forcibly terminate the connection from another thread.

        shutdown(SHUT_RDWR) wakes a worker blocked in recv() or sendall()
        immediately, and the client sees the connection drop. The worker
        still owns the socket and closes it on its way out; calling close()
        here instead would leave the worker blocked on a dead descriptor.
        """
        self.aborted = True
        try:
            self.socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # Already disconnected

    def close(self):
        """
        Close the connection.

        1. shutdown(SHUT_WR): send FIN so the client sees end-of-response
        2. close(): release the file descriptor
        """
        if self.state == ConnectionState.CLOSED:
            return

        try:
            self.socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass

        try:
            self.socket.close()
        except OSError:
            pass

        self.state = ConnectionState.CLOSED
        logger.debug(f"[{self.id}] Connection closed after {self.requests_handled} requests")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
