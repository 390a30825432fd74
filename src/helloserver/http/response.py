"""
=============================================================================
HTTP RESPONSE BUILDER
=============================================================================

Builds HTTP/1.1 responses with proper formatting per RFC 7230.

=============================================================================
HTTP RESPONSE ANATOMY
=============================================================================

    HTTP/1.1 200 OK\r\n                             ← Status line
    Content-Type: text/plain; charset=utf-8\r\n     ← Headers
    Content-Length: 14\r\n
    Date: Sun, 18 Oct 2026 12:00:00 GMT\r\n
    Server: helloserver/1.0\r\n
    \r\n                                            ← Empty line
    Hello, holos\n                                  ← Body

=============================================================================
HEAD REQUESTS
=============================================================================

A HEAD response carries exactly the headers the GET response would,
including Content-Length, but no body. to_bytes(include_body=False)
produces that shape from the same HTTPResponse.

=============================================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Union

from .status_codes import HTTPStatus


DEFAULT_SERVER_NAME = "helloserver/1.0"


@dataclass
class HTTPResponse:
    """
    Represents an HTTP response.

    Handlers return one of these; the connection loop serializes it with
    to_bytes() and writes it to the socket.
    """

    status: HTTPStatus = HTTPStatus.OK
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    version: str = "HTTP/1.1"

    @property
    def status_line(self) -> str:
        """Status line, e.g. "HTTP/1.1 200 OK"."""
        return f"{self.version} {int(self.status)} {self.status.phrase}"

    def set_header(self, name: str, value: str) -> "HTTPResponse":
        """Set a response header. Returns self for chaining."""
        self.headers[name] = value
        return self

    def to_bytes(
        self,
        server_name: str = DEFAULT_SERVER_NAME,
        include_body: bool = True,
    ) -> bytes:
        """
        Serialize the response to bytes for socket.sendall().

        Content-Length, Date and Server are filled in when the handler
        didn't set them.

        Args:
            server_name: Value for the Server header.
            include_body: False for HEAD responses.
        """
        response_headers = dict(self.headers)

        response_headers.setdefault("Content-Length", str(len(self.body)))
        response_headers.setdefault("Date", format_http_date(datetime.now(timezone.utc)))
        response_headers.setdefault("Server", server_name)

        lines = [self.status_line]
        for name, value in response_headers.items():
            lines.append(f"{name}: {value}")
        lines.append("")

        header_bytes = "\r\n".join(lines).encode("latin-1") + b"\r\n"

        if not include_body:
            return header_bytes
        return header_bytes + self.body


class ResponseBuilder:
    """
    Fluent builder for constructing HTTP responses.

    Each method returns `self`, so calls chain:

        response = (ResponseBuilder()
            .status(HTTPStatus.OK)
            .text("Hello, Guest\\n")
            .build())
    """

    def __init__(self):
        self._status = HTTPStatus.OK
        self._headers: Dict[str, str] = {}
        self._body: bytes = b""

    def status(self, status: HTTPStatus) -> "ResponseBuilder":
        self._status = status
        return self

    def header(self, name: str, value: str) -> "ResponseBuilder":
        self._headers[name] = value
        return self

    def body(self, body: Union[str, bytes]) -> "ResponseBuilder":
        """Set a raw body. Strings are encoded as UTF-8."""
        if isinstance(body, str):
            self._body = body.encode("utf-8")
        else:
            self._body = body
        return self

    def text(self, text: str, content_type: str = "text/plain; charset=utf-8") -> "ResponseBuilder":
        """
        Set a plain text response body.

        text/plain with UTF-8 is what Go's net/http sniffs for a body like
        "Hello, Guest\\n", so this is also the server's default type.
        """
        self._body = text.encode("utf-8")
        self._headers["Content-Type"] = content_type
        return self

    def close_connection(self) -> "ResponseBuilder":
        """Tell the client the connection closes after this response."""
        self._headers["Connection"] = "close"
        return self

    def build(self) -> HTTPResponse:
        return HTTPResponse(
            status=self._status,
            headers=self._headers,
            body=self._body,
        )


def format_http_date(dt: datetime) -> str:
    """
    Format a datetime as an HTTP-date (RFC 7231).

    Format: Day, DD Mon YYYY HH:MM:SS GMT
    Example: Sun, 18 Oct 2026 12:00:00 GMT

    HTTP dates are always GMT and always English, so this avoids
    strftime(), whose day and month names follow the process locale.
    """
    days = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
    months = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

    return (
        f"{days[dt.weekday()]}, "
        f"{dt.day:02d} {months[dt.month - 1]} {dt.year} "
        f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} GMT"
    )


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def ok(text: str) -> HTTPResponse:
    """Create a 200 OK plain text response."""
    return ResponseBuilder().status(HTTPStatus.OK).text(text).build()


def error_response(status: HTTPStatus, message: str = "") -> HTTPResponse:
    """
    Create a plain text error response that closes the connection.

    The body is "<code> <phrase>" followed by the message, if any:

        400 Bad Request: Invalid request line
    """
    text = f"{int(status)} {status.phrase}"
    if message:
        text += f": {message}"

    return (ResponseBuilder()
        .status(status)
        .text(text + "\n")
        .close_connection()
        .build())
