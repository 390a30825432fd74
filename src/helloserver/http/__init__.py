"""
HTTP protocol components: request parsing, response building, status codes.
"""

from .request import HTTPRequest, RequestParser, HTTPParseError, parse_request
from .response import (
    HTTPResponse,
    ResponseBuilder,
    ok,
    error_response,
    format_http_date,
)
from .status_codes import HTTPStatus

__all__ = [
    # Request parsing
    "HTTPRequest",
    "RequestParser",
    "HTTPParseError",
    "parse_request",

    # Response building
    "HTTPResponse",
    "ResponseBuilder",
    "ok",
    "error_response",
    "format_http_date",

    # Status codes
    "HTTPStatus",
]
