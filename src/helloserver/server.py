"""
=============================================================================
HTTP SERVER
=============================================================================

The listener, the accept loop, and the per-connection request loop, with
a shutdown that drains in-flight requests before a deadline.

=============================================================================
ARCHITECTURE OVERVIEW
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                                                                      │
    │   bind()            socket() → bind() → listen()                     │
    │                     (synchronous: a busy port fails right here)      │
    │                                                                      │
    │   serve_forever()   accept loop, run on the listener thread          │
    │        │                                                             │
    │        └──► one worker thread per connection                         │
    │                 │                                                    │
    │                 └──► read → parse → handler → write → keep-alive?    │
    │                                                                      │
    │   shutdown()        called from the main thread                      │
    │        ├──► stop accepting                                           │
    │        ├──► close idle connections                                   │
    │        ├──► wait for active ones (bounded by the deadline)           │
    │        └──► abort whatever is still running                          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
WHY A THREAD PER CONNECTION?
=============================================================================

A bounded pool would let a handful of idle keep-alive clients occupy
every worker. A thread per connection mirrors Go's goroutine per
connection: idle connections cost a parked thread, and shutdown can tell
idle from active per connection. Worker threads are daemons, so a
handler that ignores its abort can never keep the process alive past
the shutdown deadline.

=============================================================================
"CLOSED BY SHUTDOWN" VS. "BROKEN"
=============================================================================

serve_forever() returns normally once shutdown() has begun. It only
raises when accept() fails while nobody asked it to stop. Bind failures
never reach it at all: they surface from bind() as BindError.

=============================================================================
"""

import logging
import socket
import threading
import time
from typing import Callable, Optional, Tuple

from .config import ServerConfig, parse_address
from .core import Connection, ConnectionState
from .http import (
    HTTPRequest, RequestParser, HTTPParseError,
    HTTPResponse, HTTPStatus, error_response,
)


logger = logging.getLogger(__name__)

Handler = Callable[[HTTPRequest], HTTPResponse]


class BindError(Exception):
    """The listening socket could not be bound (port in use, no permission...)."""

    def __init__(self, addr: str, cause: OSError):
        super().__init__(f"failed to bind {addr}: {cause}")
        self.addr = addr
        self.cause = cause


class HTTPServer:
    """
    HTTP/1.1 server for a single handler.

    Usage:
        server = HTTPServer(ServerConfig(addr="127.0.0.1:0"), greet)
        server.bind()
        threading.Thread(target=server.serve_forever, daemon=True).start()
        ...
        drained = server.shutdown(timeout=10.0)
    """

    poll_interval = 0.5
    """Seconds accept() waits before re-checking the closing flag."""

    new_connection_grace = 1.0
    """Seconds a connection that has sent nothing yet counts as in flight at shutdown."""

    def __init__(self, config: ServerConfig, handler: Handler):
        self.config = config
        self.handler = handler

        self._parser = RequestParser(max_request_size=config.max_request_size)
        self._socket: Optional[socket.socket] = None

        # ─────────────────────────────────────────────────────────────────
        # CONNECTION REGISTRY
        # ─────────────────────────────────────────────────────────────────
        # Every live connection, guarded by one Condition. Workers notify
        # on each state change so shutdown() wakes as soon as the last
        # active connection finishes.
        self._connections: set[Connection] = set()
        self._cond = threading.Condition()

        self._closing = threading.Event()
        self._serving = threading.Event()
        self._loop_done = threading.Event()

    @property
    def server_address(self) -> Tuple[str, int]:
        """The bound (host, port). Useful when the config asked for port 0."""
        if self._socket is None:
            raise RuntimeError("server is not bound")
        return self._socket.getsockname()[:2]

    @property
    def is_shutting_down(self) -> bool:
        return self._closing.is_set()

    @property
    def active_connections(self) -> int:
        with self._cond:
            return sum(1 for conn in self._connections if conn.state.is_active)

    # =========================================================================
    # LISTENER
    # =========================================================================

    def bind(self) -> None:
        """
        Create, bind and listen on the server socket.

        Raises:
            BindError: If the address can't be bound.
        """
        host, port = parse_address(self.config.addr)
        family = socket.AF_INET6 if ":" in host else socket.AF_INET

        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            # SO_REUSEADDR lets a restarted server bind through TIME_WAIT.
            # SO_REUSEPORT is left off so a port that is really in use
            # still fails to bind.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(self.config.backlog)
        except OSError as e:
            sock.close()
            raise BindError(self.config.addr, e) from e

        # accept() wakes up periodically to notice shutdown
        sock.settimeout(self.poll_interval)
        self._socket = sock

        bound_host, bound_port = self.server_address
        logger.info(f"Listening on {bound_host or '*'}:{bound_port}")

    def serve_forever(self) -> None:
        """
        Accept connections until shutdown() is called.

        Returns normally after shutdown, including a shutdown that happened
        before this was called. Any other accept() failure is raised to the
        caller.
        """
        with self._cond:
            if self._closing.is_set():
                self._loop_done.set()
                return
            if self._socket is None:
                raise RuntimeError("bind() must be called before serve_forever()")
            # A local reference: shutdown() may clear self._socket at any time
            sock = self._socket
            self._serving.set()

        try:
            while not self._closing.is_set():
                try:
                    client_socket, client_address = sock.accept()
                except socket.timeout:
                    continue
                except ConnectionAbortedError:
                    # Client gave up while queued; nothing to serve
                    continue
                except OSError:
                    if self._closing.is_set():
                        break
                    raise

                self._spawn(client_socket, client_address)
        finally:
            self._close_listener()
            self._loop_done.set()

    def _close_listener(self):
        with self._cond:
            sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def _spawn(self, client_socket: socket.socket, client_address):
        """Register a new connection and start its worker thread."""
        if client_socket.family in (socket.AF_INET, socket.AF_INET6):
            client_socket.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

        conn = Connection(
            socket=client_socket,
            address=client_address,
            buffer_size=self.config.buffer_size,
            max_request_size=self.config.max_request_size,
        )
        logger.debug(f"[{conn.id}] Accepted connection from {client_address[0]}:{client_address[1]}")

        with self._cond:
            self._connections.add(conn)

        worker = threading.Thread(
            target=self._serve_connection,
            args=(conn,),
            name=f"conn-{conn.id}",
            daemon=True,
        )
        worker.start()

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop the server, letting in-flight requests finish until the deadline.

        =====================================================================
        GRACEFUL SHUTDOWN PROCESS
        =====================================================================

        1. Stop accepting new connections
        2. Close idle connections (nothing in flight on them); a brand new
           connection becomes idle once it is new_connection_grace old
        3. Wait for active connections to finish their current request
        4. At the deadline, abort every connection still active

        Safe to call from any thread while serve_forever() is running.

        =====================================================================

        Args:
            timeout: Grace period in seconds. Defaults to
                     config.shutdown_timeout.

        Returns:
            True if every in-flight request completed, False if some were
            aborted at the deadline.
        """
        if timeout is None:
            timeout = self.config.shutdown_timeout
        deadline = time.monotonic() + timeout

        logger.info("Shutting down server...")
        self._closing.set()

        # ─────────────────────────────────────────────────────────────────
        # STEP 1: Stop accepting
        # ─────────────────────────────────────────────────────────────────
        if self._serving.is_set():
            self._loop_done.wait(max(deadline - time.monotonic(), 0))
        else:
            self._close_listener()

        with self._cond:
            while True:
                # ─────────────────────────────────────────────────────────
                # STEP 2: Close idle connections
                # ─────────────────────────────────────────────────────────
                for conn in self._connections:
                    if self._is_idle(conn) and not conn.aborted:
                        conn.abort()

                # ─────────────────────────────────────────────────────────
                # STEP 3: Wait for in-flight requests
                # ─────────────────────────────────────────────────────────
                if not any(self._is_in_flight(c) for c in self._connections):
                    drained = True
                    break

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    drained = False
                    break

                # Woken by every state change; the timeout catches new
                # connections aging past their grace period
                self._cond.wait(min(remaining, self.poll_interval))

            # ─────────────────────────────────────────────────────────────
            # STEP 4: Abort whatever is left
            # ─────────────────────────────────────────────────────────────
            if not drained:
                stuck = [c for c in self._connections if self._is_in_flight(c)]
                logger.warning(
                    f"Shutdown deadline of {timeout:g}s passed, "
                    f"aborting {len(stuck)} in-flight connection(s)"
                )
                for conn in stuck:
                    conn.abort()

        logger.info("Server stopped")
        return drained

    def _is_idle(self, conn: Connection) -> bool:
        """
        Safe to close at shutdown: between requests, or connected for longer
        than new_connection_grace without sending anything.

        A fresh connection may have its request bytes already queued in the
        kernel while its worker hasn't read them yet, so it gets a moment
        to show up as READING before it is treated as idle.
        """
        if conn.state is ConnectionState.NEW:
            return conn.age >= self.new_connection_grace
        return conn.state.is_idle

    def _is_in_flight(self, conn: Connection) -> bool:
        return conn.state.is_active or (
            conn.state is ConnectionState.NEW and not self._is_idle(conn)
        )

    # =========================================================================
    # REQUEST HANDLING
    # =========================================================================

    def _set_state(self, conn: Connection, state: ConnectionState):
        with self._cond:
            conn.state = state
            self._cond.notify_all()

    def _forget(self, conn: Connection):
        with self._cond:
            self._connections.discard(conn)
            self._cond.notify_all()

    def _serve_connection(self, conn: Connection):
        """
        Process a connection (runs in its own worker thread).

        =====================================================================
        CONNECTION PROCESSING LOOP
        =====================================================================

        1. Read request under the read deadline
        2. Parse HTTP request
        3. Call the handler
        4. Write response under the write deadline
        5. If keep-alive and not shutting down: repeat from step 1

        =====================================================================
        """
        try:
            with conn:
                while True:
                    # ─────────────────────────────────────────────────────
                    # READ REQUEST
                    # ─────────────────────────────────────────────────────
                    read_deadline = time.monotonic() + self.config.read_timeout
                    try:
                        raw_request = conn.read_request(
                            read_deadline,
                            on_start=lambda: self._set_state(conn, ConnectionState.READING),
                        )
                    except TimeoutError:
                        self._send_error(conn, HTTPStatus.REQUEST_TIMEOUT, "Request timeout")
                        break
                    except HTTPParseError as e:
                        self._send_error(conn, HTTPStatus(e.status_code), str(e))
                        break

                    if raw_request is None:
                        break

                    write_deadline = time.monotonic() + self.config.write_timeout

                    # ─────────────────────────────────────────────────────
                    # PARSE REQUEST
                    # ─────────────────────────────────────────────────────
                    try:
                        request = self._parser.parse(raw_request, conn.address)
                    except HTTPParseError as e:
                        self._send_error(conn, HTTPStatus(e.status_code), str(e))
                        break

                    # ─────────────────────────────────────────────────────
                    # HANDLE
                    # ─────────────────────────────────────────────────────
                    self._set_state(conn, ConnectionState.PROCESSING)
                    response = self._dispatch(conn, request)

                    keep_alive = (
                        self.config.keep_alive
                        and request.is_keep_alive
                        and response.headers.get("Connection", "").lower() != "close"
                        and not self._closing.is_set()
                    )
                    response.headers["Connection"] = "keep-alive" if keep_alive else "close"

                    # ─────────────────────────────────────────────────────
                    # SEND RESPONSE
                    # ─────────────────────────────────────────────────────
                    response_bytes = response.to_bytes(
                        self.config.server_name,
                        include_body=request.method != "HEAD",
                    )
                    if not conn.send_response(response_bytes, write_deadline):
                        break

                    logger.debug(
                        f'[{conn.id}] {conn.client_ip} "{request.method} {request.path}" '
                        f"{int(response.status)} {len(response.body)}"
                    )

                    if not keep_alive:
                        break

                    self._set_state(conn, ConnectionState.KEEP_ALIVE)

                    # Shutdown may have scanned for idle connections while
                    # this one was still writing
                    if self._closing.is_set():
                        break
        except Exception as e:
            logger.exception(f"[{conn.id}] Connection error: {e}")
        finally:
            self._forget(conn)

    def _dispatch(self, conn: Connection, request: HTTPRequest) -> HTTPResponse:
        try:
            return self.handler(request)
        except Exception as e:
            logger.exception(f"[{conn.id}] Handler error: {e}")
            return error_response(HTTPStatus.INTERNAL_SERVER_ERROR)

    def _send_error(self, conn: Connection, status: HTTPStatus, message: str):
        """
        Send an error response for failures before the handler runs
        (malformed requests, read timeouts).
        """
        logger.debug(f"[{conn.id}] Rejecting request: {int(status)} {message}")
        response = error_response(status, message)
        conn.send_response(
            response.to_bytes(self.config.server_name),
            time.monotonic() + self.config.write_timeout,
        )
