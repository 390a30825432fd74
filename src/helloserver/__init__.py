"""
=============================================================================
HELLOSERVER
=============================================================================

A minimal HTTP greeting server, small enough to read in one sitting and
packaged the way a containerized service should behave:

    GET /?name=holos  →  "Hello, holos\n"

=============================================================================
WHAT THIS PROJECT DEMONSTRATES
=============================================================================

1. GRACEFUL SHUTDOWN
   - The listener runs on a background thread
   - The main thread blocks on SIGINT/SIGTERM, nothing else
   - In-flight requests get a bounded grace period, then are cut off

2. CONTAINER-FRIENDLY BEHAVIOR
   - Listens on all interfaces (":8080") by default
   - Exits 0 on `docker stop`, non-zero when it can't bind
   - Logs to stderr, or to a rotated file on a mounted volume
     (LOG_FILE_LOCATION)

3. HTTP FROM THE SOCKET UP
   - Request parsing, response serialization, keep-alive
   - Read and write deadlines per request

=============================================================================
PACKAGE LAYOUT
=============================================================================

    helloserver/
    ├── __main__.py      CLI: python -m helloserver
    ├── config.py        ServerConfig, LogConfig
    ├── logs.py          Logging setup and RotatingLogHandler
    ├── greeter.py       The request handler
    ├── lifecycle.py     Start / wait for signal / shutdown
    ├── server.py        Listener, accept loop, connection loop
    ├── core/
    │   └── connection.py   Client socket with deadlines
    └── http/
        ├── request.py      Request parsing
        ├── response.py     Response building
        └── status_codes.py

=============================================================================
"""

__version__ = "1.0.0"

from .config import LogConfig, ServerConfig
from .greeter import greet
from .lifecycle import Lifecycle, ListenerError, State
from .server import BindError, HTTPServer

__all__ = [
    "BindError",
    "HTTPServer",
    "Lifecycle",
    "ListenerError",
    "LogConfig",
    "ServerConfig",
    "State",
    "greet",
    "__version__",
]
