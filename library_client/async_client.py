"""Async HTTP client for the library backend."""
import asyncio
import logging
from datetime import date
from typing import Any, Dict, Optional

import httpx

from library_client.errors import (
    AuthError,
    ConflictError,
    LibraryClientError,
    NetworkError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def error_message(payload: Any, default: str) -> str:
    """Pick the human-readable message out of an error payload."""
    if isinstance(payload, dict):
        return payload.get("message") or payload.get("error") or default
    return default


def field_errors(payload: Any) -> Dict[str, list]:
    """Field-level validation errors (``{"errors": {field: [messages]}}``)."""
    if not isinstance(payload, dict) or not isinstance(payload.get("errors"), dict):
        return {}
    return {
        name: messages if isinstance(messages, list) else [str(messages)]
        for name, messages in payload["errors"].items()
    }


def raise_for_status(status_code: int, payload: Any, default: str):
    """
    Map an error response to the client's error taxonomy.

    Args:
        status_code: HTTP status of the response
        payload: Decoded JSON body (or None)
        default: Message used when the backend sends none
    """
    message = error_message(payload, default)

    if status_code in (401, 403):
        raise AuthError(message, status_code)
    if status_code == 404:
        raise NotFoundError(message, status_code)
    if status_code == 409:
        raise ConflictError(message, status_code)
    if status_code in (400, 422):
        raise ValidationError(message, status_code, fields=field_errors(payload))
    raise LibraryClientError(message, status_code)


class AsyncLibraryClient:
    """Async client for the user-facing library endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 10,
        max_concurrent: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize async client.

        Args:
            base_url: Backend API root, e.g. ``http://localhost:8000/api``
            timeout: Request timeout in seconds
            max_concurrent: Maximum concurrent requests
            transport: Optional httpx transport (tests pass a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.semaphore = asyncio.Semaphore(max_concurrent)

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport
        )

    async def _request(
        self,
        method: str,
        path: str,
        token: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
        default_error: str = "Request failed"
    ) -> Any:
        """
        Send a request and return the decoded JSON body.

        Raises:
            NetworkError: on timeouts and transport failures
            LibraryClientError: (or a subclass) on error statuses
        """
        headers = {}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        # Use semaphore to limit concurrency
        async with self.semaphore:
            try:
                logger.info(f"{method} {path}")
                response = await self.client.request(method, path, headers=headers, json=json)
            except httpx.TimeoutException as e:
                raise NetworkError(f"Request timed out: {method} {path}") from e
            except httpx.TransportError as e:
                raise NetworkError(f"Could not reach backend: {e}") from e

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = None
            if response.is_success:
                raise LibraryClientError(
                    f"Malformed response from {path}", response.status_code
                )

        if response.status_code >= 400:
            logger.warning(f"Status {response.status_code} for {method} {path}")
            raise_for_status(response.status_code, payload, default_error)

        return payload

    async def me(self, token: str) -> Any:
        """Identity behind ``token``."""
        return await self._request("GET", "/auth/me", token=token)

    async def login(self, email: str, password: str) -> Any:
        """Exchange credentials for an access token."""
        return await self._request(
            "POST", "/auth/login",
            json={"email": email, "password": password},
            default_error="Login failed"
        )

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        password_confirmation: str
    ) -> Any:
        """Create an account."""
        return await self._request(
            "POST", "/auth/register",
            json={
                "name": name,
                "email": email,
                "password": password,
                "password_confirmation": password_confirmation
            },
            default_error="Registration failed"
        )

    async def logout(self, token: str) -> Any:
        """Ask the backend to invalidate ``token``."""
        return await self._request("POST", "/auth/logout", token=token, json={})

    async def list_books(self, token: str) -> Any:
        """Full catalog."""
        return await self._request(
            "GET", "/books", token=token, default_error="Failed to load books"
        )

    async def borrow(self, token: str, book_id: int, due_date: date) -> Any:
        """Borrow one copy of ``book_id`` until ``due_date``."""
        return await self._request(
            "POST", f"/books/{book_id}/borrow",
            token=token,
            json={"due_date": due_date.isoformat()},
            default_error="Failed to borrow book"
        )

    async def borrowed_books(self, token: str) -> Any:
        """Loans of the current user, joined with book info."""
        return await self._request(
            "GET", "/user/borrowed-books",
            token=token,
            default_error="Failed to load borrowed books"
        )

    async def return_transaction(self, token: str, transaction_id: int) -> Any:
        """Return the loan ``transaction_id``."""
        return await self._request(
            "POST", f"/transactions/{transaction_id}/return",
            token=token,
            json={},
            default_error="Failed to return book"
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()
