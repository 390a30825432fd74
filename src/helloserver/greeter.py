"""
=============================================================================
GREETING HANDLER
=============================================================================

The whole application:

    GET /?name=holos   →   200 "Hello, holos\n"
    GET /              →   200 "Hello, Guest\n"

The handler never fails. A missing, empty or unparseable `name` falls
back to "Guest"; if `name` is repeated, the first value wins.

It is registered for every path and method, like a Go handler mounted
on "/", so "/anything?name=x" greets x too.

=============================================================================
"""

import logging

from .http import HTTPRequest, HTTPResponse, ok


logger = logging.getLogger(__name__)

DEFAULT_NAME = "Guest"


def resolve_name(request: HTTPRequest) -> str:
    """The `name` query parameter, or DEFAULT_NAME when absent or empty."""
    return request.get_query("name") or DEFAULT_NAME


def greet(request: HTTPRequest) -> HTTPResponse:
    name = resolve_name(request)
    logger.info(f"Received request for {name}")
    return ok(f"Hello, {name}\n")
