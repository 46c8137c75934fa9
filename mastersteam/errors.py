"""
Exception hierarchy for the master server and A2S query clients.

Per-server failures derive from QueryError and carry the address that
produced them, so the batch processor can turn them into outcome data.
DirectoryError is kept outside that family: it aborts a whole search.
"""

from typing import Optional


class MastersteamError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str = "mastersteam error"):
        self.message = message
        super().__init__(self.message)


class QueryError(MastersteamError):
    """A query against a single game server failed."""

    def __init__(self, message: str, address=None):
        self.address = address
        super().__init__(message)

    def __str__(self):
        if self.address is not None:
            return f"{self.address}: {self.message}"
        return self.message


class NetworkError(QueryError):
    """The UDP endpoint could not be created or a datagram could not be sent."""


class QueryTimeoutError(QueryError):
    """No complete response arrived within the query timeout."""

    def __init__(self, address=None, timeout: Optional[float] = None):
        self.timeout = timeout
        if timeout is not None:
            message = f"no response within {timeout:g}s"
        else:
            message = "no response"
        super().__init__(message, address)


class ProtocolError(QueryError):
    """The server broke the handshake or answered with the wrong packet."""


class MalformedFrameError(ProtocolError):
    """A datagram or reassembled payload is structurally invalid."""


class DirectoryError(MastersteamError):
    """The master server enumeration failed; the whole search is aborted."""

    def __init__(self, message: str, master=None):
        self.master = master
        super().__init__(message)
