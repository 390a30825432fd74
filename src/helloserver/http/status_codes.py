"""
=============================================================================
HTTP STATUS CODES
=============================================================================

The subset of RFC 7231 status codes this server can produce.

=============================================================================
STATUS CODE CATEGORIES
=============================================================================

    ┌───────────┬──────────────────────────────────────────────────────────┐
    │   Range   │  Meaning                                                 │
    ├───────────┼──────────────────────────────────────────────────────────┤
    │  2xx      │  Success - Request accepted and processed               │
    │  4xx      │  Client Error - Request is wrong                        │
    │  5xx      │  Server Error - Server failed on a valid request        │
    └───────────┴──────────────────────────────────────────────────────────┘

The greeting handler itself only ever answers 200. Everything else here
comes from the connection loop: requests that can't be parsed, requests
that stall, and handler crashes.

=============================================================================
"""

from enum import IntEnum


class HTTPStatus(IntEnum):
    """
    HTTP status codes and reason phrases.

    This enum extends IntEnum, so status codes can be used as integers:

        >>> HTTPStatus.OK == 200
        True
        >>> HTTPStatus.OK.phrase
        'OK'
    """

    # 2xx Success
    OK = 200

    # 4xx Client errors
    BAD_REQUEST = 400                   # Malformed request syntax
    METHOD_NOT_ALLOWED = 405            # Unknown request method
    REQUEST_TIMEOUT = 408               # Client took too long to send request
    PAYLOAD_TOO_LARGE = 413             # Request bigger than max_request_size

    # 5xx Server errors
    INTERNAL_SERVER_ERROR = 500         # Handler raised
    HTTP_VERSION_NOT_SUPPORTED = 505    # Not HTTP/1.0 or HTTP/1.1

    @property
    def phrase(self) -> str:
        """
        Get the reason phrase for this status code.

            HTTP/1.1 200 OK
                     ─── ──
                      │   └── Reason phrase
                      └────── Status code
        """
        return _STATUS_PHRASES.get(self, "Unknown")

    @property
    def is_success(self) -> bool:
        return 200 <= self < 300

    @property
    def is_error(self) -> bool:
        """Check if this is an error status code (4xx or 5xx)."""
        return self >= 400


_STATUS_PHRASES = {
    HTTPStatus.OK: "OK",
    HTTPStatus.BAD_REQUEST: "Bad Request",
    HTTPStatus.METHOD_NOT_ALLOWED: "Method Not Allowed",
    HTTPStatus.REQUEST_TIMEOUT: "Request Timeout",
    HTTPStatus.PAYLOAD_TOO_LARGE: "Payload Too Large",
    HTTPStatus.INTERNAL_SERVER_ERROR: "Internal Server Error",
    HTTPStatus.HTTP_VERSION_NOT_SUPPORTED: "HTTP Version Not Supported",
}
