"""
=============================================================================
HTTP REQUEST PARSER
=============================================================================

Parses raw HTTP/1.1 request bytes into structured HTTPRequest objects.
Implements the parts of RFC 7230 a single-route server needs.

=============================================================================
HTTP REQUEST ANATOMY
=============================================================================

    GET /?name=holos HTTP/1.1\r\n         ← Request line
    Host: localhost:8080\r\n              ← Headers
    User-Agent: curl/8.4.0\r\n
    \r\n                                  ← Empty line ends headers
    (optional body, Content-Length bytes)

=============================================================================
QUERY STRINGS
=============================================================================

The query string is everything after "?" in the request target:

    /?name=holos&name=other&empty=
      └──────────────┬──────────┘
                     ▼
    {"name": ["holos", "other"], "empty": [""]}

Values are lists because a key can repeat. get_query() returns the
first value, which is what almost every caller wants.

Parsing is lenient on purpose: "?name=%ZZ" or "?&&=x" never raise. A
query string that can't be made sense of just yields fewer parameters.

=============================================================================
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import parse_qs, urlsplit, unquote


class HTTPParseError(Exception):
    """
    Raised when an HTTP request cannot be parsed.

    Carries the status code the server should answer with, so the
    connection loop can turn it into a response without a lookup table.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class HTTPRequest:
    """
    Represents a parsed HTTP request.

    Attributes:
        method:         GET, POST, HEAD, ...
        path:           Request path without query string, URL-decoded
        version:        "HTTP/1.0" or "HTTP/1.1"
        headers:        Header names are lowercase
        query_params:   Parsed query string as dict of lists
        body:           Raw request body (Content-Length bytes)
        client_address: (ip, port) of the client, for logging
    """

    method: str
    path: str
    version: str = "HTTP/1.1"

    headers: Dict[str, str] = field(default_factory=dict)
    query_params: Dict[str, list[str]] = field(default_factory=dict)
    body: bytes = b""

    client_address: tuple[str, int] = ("", 0)

    @property
    def host(self) -> str:
        return self.headers.get("host", "")

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def is_keep_alive(self) -> bool:
        """
        Check if the client wants the connection kept open.

        HTTP/1.1 keeps alive unless "Connection: close" is sent.
        HTTP/1.0 closes unless "Connection: keep-alive" is sent.
        """
        connection = self.headers.get("connection", "").lower()

        if self.version == "HTTP/1.1":
            return connection != "close"
        return connection == "keep-alive"

    def get_header(self, name: str, default: str = "") -> str:
        """Get a header value (case-insensitive lookup)."""
        return self.headers.get(name.lower(), default)

    def get_query(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get the first value of a query parameter.

        Example:
            # URL: /?name=a&name=b
            request.get_query("name")  # Returns "a"
        """
        values = self.query_params.get(name, [])
        return values[0] if values else default

    def get_query_list(self, name: str) -> list[str]:
        """Get all values of a query parameter (empty list if not found)."""
        return self.query_params.get(name, [])


class RequestParser:
    """
    Parses raw HTTP request bytes into HTTPRequest objects.

    ==========================================================================
    PARSING ALGORITHM
    ==========================================================================

        Raw bytes
            │
            ├──► size check                (413 if too big)
            ├──► split at \\r\\n\\r\\n         (400 if missing)
            ├──► request line              (400 / 405 / 505)
            ├──► headers                   (lenient, lowercase names)
            └──► body by Content-Length    (400 if short or invalid)

    ==========================================================================
    """

    VALID_METHODS = {
        "GET", "POST", "PUT", "DELETE", "PATCH",
        "HEAD", "OPTIONS", "TRACE", "CONNECT",
    }

    REQUEST_LINE_PATTERN = re.compile(r"^([A-Z]+) ([^ ]+) (HTTP/\d\.\d)$")
    HEADER_PATTERN = re.compile(r"^([^:]+):\s*(.*)$")

    def __init__(self, max_request_size: int = 1024 * 1024):
        self.max_request_size = max_request_size

    def parse(
        self,
        data: bytes,
        client_address: tuple[str, int] = ("", 0)
    ) -> HTTPRequest:
        """
        Parse raw HTTP request data into an HTTPRequest object.

        Args:
            data: Raw HTTP request bytes from the socket.
            client_address: Client's (ip, port) tuple.

        Returns:
            Parsed HTTPRequest object.

        Raises:
            HTTPParseError: If the request is malformed.
        """
        if len(data) > self.max_request_size:
            raise HTTPParseError(
                f"Request too large: {len(data)} bytes",
                status_code=413,
            )

        header_end = data.find(b"\r\n\r\n")
        if header_end == -1:
            raise HTTPParseError("Incomplete request: no header terminator")

        header_section = data[:header_end].decode("utf-8", errors="replace")
        body = data[header_end + 4:]

        lines = header_section.split("\r\n")
        method, path, query_params, version = self._parse_request_line(lines[0])
        headers = self._parse_headers(lines[1:])

        # ─────────────────────────────────────────────────────────────────
        # BODY
        # ─────────────────────────────────────────────────────────────────
        # Only Content-Length framing is supported. A negative or
        # non-numeric length is a framing error, not "no body".
        try:
            content_length = int(headers.get("content-length", 0))
        except ValueError:
            raise HTTPParseError("Invalid Content-Length header")

        if content_length < 0:
            raise HTTPParseError("Invalid Content-Length header")

        if len(body) < content_length:
            raise HTTPParseError(
                f"Incomplete body: expected {content_length} bytes, got {len(body)}"
            )

        return HTTPRequest(
            method=method,
            path=path,
            version=version,
            headers=headers,
            query_params=query_params,
            body=body[:content_length],
            client_address=client_address,
        )

    def _parse_request_line(
        self,
        line: str
    ) -> tuple[str, str, Dict[str, list[str]], str]:
        """
        Parse "METHOD SP REQUEST-TARGET SP HTTP-VERSION".

        Returns:
            Tuple of (method, path, query_params, version)
        """
        match = self.REQUEST_LINE_PATTERN.match(line)
        if not match:
            raise HTTPParseError(f"Invalid request line: {line!r}")

        method, target, version = match.groups()

        if method not in self.VALID_METHODS:
            raise HTTPParseError(f"Invalid method: {method}", status_code=405)

        if version not in ("HTTP/1.0", "HTTP/1.1"):
            raise HTTPParseError(
                f"Unsupported HTTP version: {version}",
                status_code=505,
            )

        parsed = urlsplit(target)
        path = unquote(parsed.path) or "/"

        # parse_qs never raises without strict_parsing: bad escapes are
        # kept literally and empty fragments are skipped
        query_params = parse_qs(parsed.query, keep_blank_values=True)

        return method, path, query_params, version

    def _parse_headers(self, lines: list[str]) -> Dict[str, str]:
        """
        Parse header lines into a dictionary with lowercase names.

        Repeated headers are joined with ", " (RFC 7230 section 3.2.2).
        Malformed lines are skipped.
        """
        headers: Dict[str, str] = {}

        for line in lines:
            if not line:
                continue

            match = self.HEADER_PATTERN.match(line)
            if not match:
                continue

            name, value = match.groups()
            name = name.strip().lower()
            value = value.strip()

            if name in headers:
                headers[name] += ", " + value
            else:
                headers[name] = value

        return headers


def parse_request(
    data: bytes,
    client_address: tuple[str, int] = ("", 0),
    max_size: int = 1024 * 1024
) -> HTTPRequest:
    """Parse an HTTP request in one call."""
    parser = RequestParser(max_request_size=max_size)
    return parser.parse(data, client_address)
