"""Error taxonomy shared by the gateways, the session layer and the CLI."""

from typing import Optional


class LibraryError(Exception):
    """Base class for all library client errors"""
    pass


class NotAuthenticated(LibraryError):
    """Raised when a profile change is attempted without an active session"""

    def __init__(self, message: str = "No authenticated user"):
        super().__init__(message)


class InvalidCredentials(LibraryError):
    """Raised when login fails after the remote and local checks"""

    def __init__(self, message: str = "Invalid credentials"):
        super().__init__(message)


class RequestFailed(LibraryError):
    """Non-2xx response from the API; carries the remote message"""

    def __init__(self, message: str = "Request failed", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class TransportError(LibraryError):
    """The API could not be reached at all"""
    pass
