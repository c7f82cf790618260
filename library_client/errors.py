"""Errors raised by the library client."""
from typing import Dict, List, Optional


class LibraryClientError(Exception):
    """Base exception for library client errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(LibraryClientError):
    """Input rejected, either locally before any request or by the backend."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        fields: Optional[Dict[str, List[str]]] = None
    ):
        super().__init__(message, status_code)
        self.fields = fields or {}


class AuthError(LibraryClientError):
    """Credential missing, invalid or expired."""


class ConflictError(LibraryClientError):
    """Business-rule race, e.g. no copies left or email already taken."""


class NotFoundError(LibraryClientError):
    """Requested resource (book, transaction) does not exist."""


class NetworkError(LibraryClientError):
    """Transport failure or timeout; no response was received."""
