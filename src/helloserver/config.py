"""
=============================================================================
SERVER CONFIGURATION
=============================================================================

Centralized configuration for the greeting server.

=============================================================================
WHY A CONFIG CLASS?
=============================================================================

Configuration should be:
1. Centralized - One place to see all options
2. Typed - IDE autocomplete and error detection
3. Validated - Catch errors early
4. Explicit - Passed into the components that need it, never read
   from globals halfway through a request

=============================================================================
CONFIGURATION SOURCES
=============================================================================

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONFIGURATION HIERARCHY                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   Priority (highest to lowest):                                     │
    │                                                                      │
    │   1. Command-line arguments                                         │
    │      └── python -m helloserver --addr 127.0.0.1:3000               │
    │                                                                      │
    │   2. Environment variables                                          │
    │      └── LOG_FILE_LOCATION=/var/log/app/app.log                    │
    │                                                                      │
    │   3. Default values (in these dataclasses)                          │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

=============================================================================
ADDRESS FORMAT
=============================================================================

Addresses are written "host:port", the same way Go and most container
tooling write them:

    ":8080"            All interfaces, port 8080 (the default)
    "127.0.0.1:8080"   Localhost only
    "[::1]:8080"       IPv6 localhost
    "127.0.0.1:0"      Let the OS pick a free port (tests)

=============================================================================
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


MEGABYTE = 1024 * 1024

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class LogConfig:
    """
    Where log output goes and how the log file is rotated.

    When ``file_location`` is unset, log lines go to stderr and no file is
    ever created. When it is set, the file is rotated once it would grow
    past ``max_size_mb``; at most ``max_backups`` rotated copies are kept,
    copies older than ``max_age_days`` are deleted, and rotated copies are
    gzip-compressed when ``compress`` is on.
    """

    level: str = "INFO"
    file_location: Optional[str] = None
    max_size_mb: int = 500
    max_backups: int = 3
    max_age_days: int = 28
    compress: bool = True

    @property
    def max_bytes(self) -> int:
        """Rotation threshold in bytes."""
        return self.max_size_mb * MEGABYTE

    @property
    def level_number(self) -> int:
        return getattr(logging, self.level.upper(), logging.INFO)

    def validate(self) -> None:
        if self.level.upper() not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.level}")

        if self.max_size_mb < 1:
            raise ValueError("max_size_mb must be >= 1")

        if self.max_backups < 0:
            raise ValueError("max_backups must be >= 0")

        if self.max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")


@dataclass
class ServerConfig:
    """
    Configuration for the greeting server.

    =========================================================================
    CONFIGURATION GROUPS
    =========================================================================

    NETWORK SETTINGS
    - addr, backlog, buffer_size

    TIMEOUTS
    - read_timeout, write_timeout, shutdown_timeout

    HTTP SETTINGS
    - keep_alive, max_request_size, server_name

    LOGGING
    - log (a LogConfig)

    =========================================================================
    TIMEOUTS EXPLAINED
    =========================================================================

        accept ──► read request ──► handler ──► write response
                   └─ read_timeout ┘
                                   └──────── write_timeout ────────┘

        SIGTERM ──► drain in-flight requests ──► force close
                    └──────── shutdown_timeout ─────────┘

    The read deadline starts when the server begins waiting for a request,
    so it also bounds how long an idle keep-alive connection stays open.
    The write deadline starts once the request has been read, so a slow
    handler eats into it.

    =========================================================================
    """

    # ─────────────────────────────────────────────────────────────────────
    # NETWORK SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    addr: str = ":8080"
    """
    The "host:port" to listen on.
    An empty host binds every interface, which is what a container needs.
    """

    backlog: int = 128
    """Maximum number of queued connections waiting for accept()."""

    buffer_size: int = 8192
    """Size of each recv() call in bytes."""

    # ─────────────────────────────────────────────────────────────────────
    # TIMEOUTS
    # ─────────────────────────────────────────────────────────────────────

    read_timeout: float = 10.0
    """Seconds allowed to read one full request (headers and body)."""

    write_timeout: float = 10.0
    """Seconds allowed from end of request read to end of response write."""

    shutdown_timeout: float = 10.0
    """Grace period for in-flight requests once shutdown begins."""

    # ─────────────────────────────────────────────────────────────────────
    # HTTP SETTINGS
    # ─────────────────────────────────────────────────────────────────────

    keep_alive: bool = True
    """Serve more than one request per TCP connection (HTTP/1.1 default)."""

    max_request_size: int = 1 * MEGABYTE
    """Upper bound on request line + headers + body, in bytes."""

    server_name: str = "helloserver/1.0"
    """Value of the Server response header."""

    # ─────────────────────────────────────────────────────────────────────
    # LOGGING
    # ─────────────────────────────────────────────────────────────────────

    log: LogConfig = field(default_factory=LogConfig)

    @property
    def host(self) -> str:
        return parse_address(self.addr)[0]

    @property
    def port(self) -> int:
        return parse_address(self.addr)[1]

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """
        Create configuration from environment variables.

        =====================================================================
        ENVIRONMENT VARIABLES
        =====================================================================

        LOG_FILE_LOCATION   Write logs to this file (rotated) instead of
                            stderr. Empty counts as unset.
        LOG_LEVEL           Logging level (default: INFO)

        =====================================================================
        """
        return cls(
            log=LogConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                file_location=os.getenv("LOG_FILE_LOCATION") or None,
            ),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Called once at startup so a typo in a flag fails immediately
        instead of surfacing on the first request.
        """
        # parse_address raises ValueError for malformed addresses
        parse_address(self.addr)

        if self.backlog < 1:
            raise ValueError("backlog must be >= 1")

        if self.buffer_size < 1024:
            raise ValueError("buffer_size must be >= 1024")

        for name in ("read_timeout", "write_timeout", "shutdown_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")

        if self.max_request_size < 1024:
            raise ValueError("max_request_size must be >= 1024")

        self.log.validate()


def parse_address(addr: str) -> Tuple[str, int]:
    """
    Split a "host:port" address into its parts.

    Args:
        addr: Address such as ":8080", "127.0.0.1:0" or "[::1]:8080".

    Returns:
        Tuple of (host, port). The host is "" for "all interfaces".

    Raises:
        ValueError: If the address has no port or the port is out of range.
    """
    host, sep, port_text = addr.rpartition(":")
    if not sep:
        raise ValueError(f"Invalid address {addr!r}: missing port")

    # IPv6 literals are bracketed so their colons don't clash with the port
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid address {addr!r}: port must be a number")

    if not 0 <= port < 65536:
        raise ValueError(f"Invalid port: {port}. Must be 0-65535.")

    return host, port


# =============================================================================
# MODULE SUMMARY
# =============================================================================
#
# 1. LogConfig: where logs go and how the log file rotates
# 2. ServerConfig: address, timeouts, HTTP limits, logging
# 3. from_env(): 12-factor environment configuration
# 4. validate(): fail fast at startup
# 5. parse_address(): "host:port" strings as used by container tooling
# =============================================================================
