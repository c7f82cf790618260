"""HTTP client for the library admin endpoints with resilience patterns."""
import time
import random
import requests
from typing import Any, Callable, Dict, Iterator, Optional
import logging

from library_client.async_client import raise_for_status
from library_client.errors import AuthError, LibraryClientError, NetworkError
from library_client.models import BookListing, Identity, LoanRecord, Page
from library_client.parse import parse_book, parse_loan, parse_page, parse_user

logger = logging.getLogger(__name__)


class LibraryAdminClient:
    """Client for the admin listings and book maintenance, with timeouts, retries, and backoff."""

    def __init__(
        self,
        base_url: str,
        token_provider: Callable[[], str],
        timeout: int = 10,
        max_retries: int = 3,
        base_backoff: float = 1.0,
        on_auth_error: Optional[Callable[[str], None]] = None
    ):
        """
        Initialize the admin client.

        Args:
            base_url: Backend API root
            token_provider: Returns the current bearer credential
                (``SessionStore.require_credential``)
            timeout: Request timeout in seconds
            max_retries: Maximum number of attempts for reads
            base_backoff: Base delay for exponential backoff
            on_auth_error: Called with the message when the credential is
                rejected (``SessionStore.invalidate``)
        """
        self.base_url = base_url.rstrip("/")
        self.token_provider = token_provider
        self.timeout = timeout
        self.max_retries = max_retries
        self.base_backoff = base_backoff
        self.on_auth_error = on_auth_error

        # Create session for connection pooling
        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    def _listing_params(
        self,
        page: int,
        search: Optional[str],
        per_page: int
    ) -> Dict[str, Any]:
        params = {"page": page, "per_page": per_page}
        if search:
            params["search"] = search
        return params

    def list_books(
        self,
        page: int = 1,
        search: Optional[str] = None,
        per_page: int = 10
    ) -> Page[BookListing]:
        """
        List books.

        Args:
            page: Page number (1-based)
            search: Optional search text
            per_page: Page size

        Returns:
            Page of BookListings
        """
        payload = self._make_request_with_retry(
            "GET", "/admin/books", params=self._listing_params(page, search, per_page)
        )
        return parse_page(payload or {}, parse_book)

    def list_users(
        self,
        page: int = 1,
        search: Optional[str] = None,
        per_page: int = 10
    ) -> Page[Identity]:
        """List user accounts."""
        payload = self._make_request_with_retry(
            "GET", "/admin/users", params=self._listing_params(page, search, per_page)
        )
        return parse_page(payload or {}, parse_user)

    def list_transactions(
        self,
        page: int = 1,
        search: Optional[str] = None,
        per_page: int = 10
    ) -> Page[LoanRecord]:
        """List loan transactions of all users."""
        payload = self._make_request_with_retry(
            "GET", "/admin/transactions", params=self._listing_params(page, search, per_page)
        )
        return parse_page(payload or {}, parse_loan)

    def dashboard_stats(self) -> Dict[str, Any]:
        """Counters shown on the admin dashboard."""
        payload = self._make_request_with_retry("GET", "/admin/dashboard-stats")
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            return payload["data"]
        return payload or {}

    def iter_pages(self, fetch: Callable[..., Page], **params) -> Iterator[Any]:
        """
        Walk every page of a listing.

        Args:
            fetch: One of the ``list_*`` methods
            **params: Passed through (``search``, ``per_page``)

        Yields:
            Items of every page in order
        """
        page_number = 1
        while True:
            page = fetch(page=page_number, **params)
            yield from page.data
            if not page.has_next:
                break
            page_number = page.meta.current_page + 1

    def create_book(
        self,
        title: str,
        author: str,
        publisher: str,
        description: str = "",
        total_copies: Optional[int] = None
    ) -> Optional[BookListing]:
        """Add a book to the catalog."""
        body = {
            "title": title,
            "author": author,
            "publisher": publisher,
            "description": description
        }
        if total_copies is not None:
            body["total_copies"] = total_copies

        payload = self._make_request_with_retry("POST", "/books", json=body, retry=False)
        return self._book_from(payload)

    def update_book(self, book_id: int, **fields) -> Optional[BookListing]:
        """Edit a book's fields (title, author, publisher, description, total_copies)."""
        payload = self._make_request_with_retry(
            "PUT", f"/books/{book_id}", json=fields, retry=False
        )
        return self._book_from(payload)

    def delete_book(self, book_id: int):
        """Remove a book from the catalog."""
        self._make_request_with_retry("DELETE", f"/books/{book_id}", retry=False)
        logger.info(f"Deleted book {book_id}")

    def _book_from(self, payload: Any) -> Optional[BookListing]:
        if not isinstance(payload, dict):
            return None
        item = payload.get("book") or payload.get("data") or payload
        return parse_book(item) if isinstance(item, dict) else None

    def _make_request_with_retry(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        retry: bool = True
    ) -> Any:
        """
        Make HTTP request with retry logic.

        Args:
            method: HTTP method
            path: Path below the API root
            params: Query parameters
            json: JSON body
            retry: Retry 429/5xx and transport errors (reads only)

        Returns:
            Decoded response JSON (None for empty bodies)

        Raises:
            NetworkError: if the last attempt got no response (timeout, connection)
            LibraryClientError: (or a subclass) on non-retryable errors, or
                when the last attempt was answered with 429/5xx
        """
        url = f"{self.base_url}{path}"
        attempts = self.max_retries if retry else 1
        headers = {"Authorization": f"Bearer {self.token_provider()}"}
        last_status = None

        for attempt in range(attempts):
            try:
                logger.info(f"Request attempt {attempt + 1}/{attempts}: {method} {url}")

                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=self.timeout
                )
                last_status = response.status_code

                # Handle different status codes
                if response.status_code < 400:
                    logger.info(f"Success: {response.status_code}")
                    if not response.content:
                        return None
                    try:
                        return response.json()
                    except ValueError as e:
                        raise LibraryClientError(
                            f"Malformed response from {path}", response.status_code
                        ) from e

                elif response.status_code == 429:
                    # Rate limited - must retry with backoff
                    logger.warning(f"Rate limited (429) on attempt {attempt + 1}")
                    if attempt < attempts - 1:
                        self._backoff(attempt)
                        continue

                elif response.status_code >= 500:
                    # Server error - retryable
                    logger.warning(f"Server error ({response.status_code}) on attempt {attempt + 1}")
                    if attempt < attempts - 1:
                        self._backoff(attempt)
                        continue

                else:
                    # Client error - don't retry
                    logger.error(f"Client error ({response.status_code}): {response.text}")
                    self._raise_client_error(response)

            except requests.exceptions.Timeout:
                last_status = None
                logger.warning(f"Timeout on attempt {attempt + 1}")
                if attempt < attempts - 1:
                    self._backoff(attempt)
                    continue

            except requests.exceptions.ConnectionError as e:
                last_status = None
                logger.warning(f"Connection error on attempt {attempt + 1}: {e}")
                if attempt < attempts - 1:
                    self._backoff(attempt)
                    continue

        logger.error(f"All {attempts} attempts failed")
        if last_status is not None:
            # The server answered, so a write may have been applied
            raise LibraryClientError(
                f"{method} {path} failed with status {last_status}", last_status
            )
        raise NetworkError(f"{method} {path} failed after {attempts} attempt(s)")

    def _raise_client_error(self, response: requests.Response):
        try:
            payload = response.json()
        except ValueError:
            payload = None

        try:
            raise_for_status(response.status_code, payload, f"Request failed ({response.status_code})")
        except AuthError as e:
            if self.on_auth_error:
                self.on_auth_error(e.message)
            raise

    def _backoff(self, attempt: int):
        """
        Sleep with exponential backoff and jitter.

        Args:
            attempt: Current attempt number (0-indexed)
        """
        # Exponential backoff: base * 2^attempt
        delay = self.base_backoff * (2 ** attempt)

        # Add jitter: random value between 0 and delay
        jitter = random.uniform(0, delay)
        total_delay = delay + jitter

        logger.info(f"Backing off for {total_delay:.2f} seconds")
        time.sleep(total_delay)

    def close(self):
        """Close the session."""
        self.session.close()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
