"""
Core networking components.

    Connection  - Wraps a client socket with deadlines and state tracking
"""

from .connection import Connection, ConnectionState

__all__ = [
    "Connection",
    "ConnectionState",
]
