"""
=============================================================================
LIFECYCLE CONTROLLER
=============================================================================

Brings the server up without blocking the main thread's ability to see
termination signals, then shuts it down within a bounded deadline.

=============================================================================
STATE MACHINE
=============================================================================

    STARTING ──────► SERVING ──────► SHUTTING_DOWN ──────► STOPPED
        │    bound        signal or       all requests done     ▲
        │                 request_stop    or deadline passed    │
        │                                                       │
        └─────────────── bind failed ───────────────────────────┘

There is no way back to SERVING. A Lifecycle runs once.

=============================================================================
TWO THREADS, ONE CHANNEL
=============================================================================

    Main thread                          Listener thread
    ───────────                          ───────────────
    start()
      bind()      ← BindError here
      spawn ───────────────────────────► serve_forever()
    wait()                                    │
      events.get()  (blocks)                  │
         ▲                                    │
         ├── signal handler: put(SIGTERM)     │
         └── listener crashed: put(ListenerError)
    shutdown()
      server.shutdown(deadline) ────────► accept loop returns

The channel is a queue.SimpleQueue. Its put() is reentrant, which is
what makes it safe to call from a signal handler that may interrupt the
main thread anywhere, including inside get() itself.

=============================================================================
SIGNALS
=============================================================================

SIGINT (2):   Ctrl+C in a terminal
SIGTERM (15): docker stop, kubectl delete pod, systemd stop, kill <pid>

`docker stop` sends SIGTERM and waits 10 seconds before SIGKILL, which is
why the default shutdown grace period is also 10 seconds.

Python runs signal handlers on the main thread only, but the kernel hands
a process-directed signal to any thread that doesn't block it. If the
listener thread took SIGTERM, the main thread would sleep in get()
forever. So every helper thread (listener, connection workers, log
writer) is started with SIGINT and SIGTERM blocked; threads inherit the
mask of the thread that creates them, which leaves the main thread as
the only possible receiver.

=============================================================================
"""

import logging
import queue
import signal
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Optional

from .config import ServerConfig
from .greeter import greet
from .logs import configure_logging, detach_logging
from .server import BindError, Handler, HTTPServer


logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@contextmanager
def signals_blocked():
    """
    Block SIGINT/SIGTERM on the calling thread for the duration of the block.

    Threads started inside inherit the blocked mask and keep it after the
    block exits; the calling thread gets its previous mask back.
    """
    if not hasattr(signal, "pthread_sigmask"):
        # No per-thread masks (Windows): handlers only ever run on main
        yield
        return

    previous = signal.pthread_sigmask(signal.SIG_BLOCK, SHUTDOWN_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


class State(Enum):
    STARTING = "starting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ListenerError(Exception):
    """The accept loop died while the server was supposed to be serving."""

    def __init__(self, cause: BaseException):
        super().__init__(f"listener failed: {cause}")
        self.cause = cause


class Lifecycle:
    """
    Owns one HTTPServer from bind to exit.

    Usage:
        lifecycle = Lifecycle(ServerConfig.from_env())
        sys.exit(lifecycle.run())

    Or step by step (tests, embedding):
        lifecycle.start()
        ...
        lifecycle.request_stop()
        lifecycle.wait()
        lifecycle.shutdown()
    """

    def __init__(self, config: ServerConfig, handler: Handler = greet):
        """
        Args:
            config: Validated eagerly; logging settings live in config.log.
            handler: The application. Defaults to the greeting handler.
        """
        config.validate()

        self.config = config
        self.server = HTTPServer(config, handler)

        self._events: "queue.SimpleQueue[object]" = queue.SimpleQueue()
        self._state = State.STARTING
        self._state_lock = threading.Lock()
        self._listener: Optional[threading.Thread] = None
        self._original_handlers: dict = {}

    @property
    def state(self) -> State:
        return self._state

    def _transition(self, expected: State, new: State):
        with self._state_lock:
            if self._state is not expected:
                raise RuntimeError(
                    f"cannot move to {new.value}: lifecycle is {self._state.value}"
                )
            self._state = new
        logger.debug(f"Lifecycle {expected.value} -> {new.value}")

    # =========================================================================
    # STEPS
    # =========================================================================

    def start(self) -> None:
        """
        Bind the listener and start serving on a background thread.

        Raises:
            BindError: The address couldn't be bound. The lifecycle is
                       STOPPED afterwards.
        """
        if self._state is not State.STARTING:
            raise RuntimeError(f"cannot start: lifecycle is {self._state.value}")

        try:
            self.server.bind()
        except BindError:
            with self._state_lock:
                self._state = State.STOPPED
            raise

        self._listener = threading.Thread(
            target=self._listen,
            name="listener",
            daemon=True,
        )
        with signals_blocked():
            self._listener.start()
        self._transition(State.STARTING, State.SERVING)

    def _listen(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            self._events.put(ListenerError(e))

    def request_stop(self, signum: int = signal.SIGTERM) -> None:
        """Ask wait() to return. Safe from signal handlers and other threads."""
        self._events.put(signum)

    def wait(self) -> int:
        """
        Block until a stop is requested.

        Returns:
            The signal number that ended the wait.

        Raises:
            ListenerError: If the accept loop died first.
        """
        event = self._events.get()
        if isinstance(event, ListenerError):
            raise event
        return event

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Drain in-flight requests and stop.

        Args:
            timeout: Grace period; defaults to config.shutdown_timeout.

        Returns:
            True if all in-flight requests completed, False if some were
            cut off at the deadline.
        """
        self._transition(State.SERVING, State.SHUTTING_DOWN)

        drained = self.server.shutdown(timeout)

        # The accept loop exits within one poll interval of shutdown
        if self._listener is not None:
            self._listener.join(self.server.poll_interval * 2)

        self._transition(State.SHUTTING_DOWN, State.STOPPED)
        return drained

    # =========================================================================
    # SIGNALS
    # =========================================================================

    def _on_signal(self, signum, frame):
        self.request_stop(signum)

    def _install_signal_handlers(self):
        """Route SIGINT/SIGTERM to the event channel, saving the old handlers."""
        for sig in SHUTDOWN_SIGNALS:
            self._original_handlers[sig] = signal.signal(sig, self._on_signal)

    def _restore_signal_handlers(self):
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers.clear()

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def run(self, handle_signals: bool = True) -> int:
        """
        Start, wait for a termination signal, shut down.

        Args:
            handle_signals: Install SIGINT/SIGTERM handlers. Only possible
                            from the main thread; pass False when embedding
                            and call request_stop() instead.

        Returns:
            Process exit status: 0 after shutdown, whether or not the
            deadline cut requests off.

        Raises:
            BindError: The listener could not be bound.
            ListenerError: The accept loop died unexpectedly.
        """
        with signals_blocked():
            log_handler = configure_logging(self.config.log)
        if handle_signals:
            self._install_signal_handlers()

        try:
            try:
                self.start()
            except BindError as e:
                logger.critical(f"Server failed to start: {e}")
                raise

            host, port = self.server.server_address
            logger.info(f"Server started on {host or '*'}:{port}")

            try:
                signum = self.wait()
            except ListenerError as e:
                logger.critical(f"Server stopped unexpectedly: {e}")
                self.shutdown()
                raise

            logger.info(f"Received {signal.Signals(signum).name}, shutting down...")

            if not self.shutdown():
                logger.warning("Server forced to shutdown before all requests finished")

            logger.info("Server exiting")
            return 0
        finally:
            if handle_signals:
                self._restore_signal_handlers()
            detach_logging(log_handler)
