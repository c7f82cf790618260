"""Borrow/return workflow and the catalog cache it reads from."""
import asyncio
import inspect
import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Union

from library_client.async_client import AsyncLibraryClient
from library_client.errors import AuthError, LibraryClientError, ValidationError
from library_client.models import BookListing, LoanRecord, LoanStatus
from library_client.parse import (
    parse_books_response,
    parse_loan,
    parse_loans_response,
    to_naive_utc,
)
from library_client.session import SessionStore

logger = logging.getLogger(__name__)

MAX_LOAN_DAYS = 7

Confirm = Callable[[int], Union[bool, Awaitable[bool]]]


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_date(value: Union[date, datetime]) -> date:
    return value.date() if isinstance(value, datetime) else value


class Catalog:
    """Read-through cache of the latest ``/books`` result."""

    def __init__(self, books: Optional[List[BookListing]] = None):
        self._books: List[BookListing] = list(books or [])
        self.fetched_at: Optional[datetime] = None

    @property
    def books(self) -> List[BookListing]:
        return list(self._books)

    def replace(self, books: List[BookListing]):
        """Swap in a fresh snapshot."""
        self._books = list(books)
        self.fetched_at = utcnow()

    def find(self, book_id: int) -> Optional[BookListing]:
        for book in self._books:
            if book.id == book_id:
                return book
        return None

    def __len__(self) -> int:
        return len(self._books)


class AvailableBooks:
    """Books with at least one copy left, recomputed on every iteration."""

    def __init__(self, catalog: Catalog):
        self._catalog = catalog

    def __iter__(self) -> Iterator[BookListing]:
        return (book for book in self._catalog.books if book.available_copies > 0)

    def __len__(self) -> int:
        return sum(1 for _ in self)


def list_available(catalog: Catalog) -> AvailableBooks:
    """Lazy view of the available books in ``catalog``."""
    return AvailableBooks(catalog)


class LendingWorkflow:
    """
    Borrow and return books for the logged-in account.

    Local checks only give early feedback; the backend decides. After every
    successful borrow or return both the catalog and the loan list are
    fetched again instead of being adjusted locally.
    """

    def __init__(
        self,
        session: SessionStore,
        api: AsyncLibraryClient,
        catalog: Optional[Catalog] = None,
        max_loan_days: int = MAX_LOAN_DAYS
    ):
        """
        Args:
            session: Session store providing the credential
            api: Backend client
            catalog: Catalog cache to keep up to date (a new one by default)
            max_loan_days: Longest allowed loan period
        """
        self.session = session
        self.api = api
        self.catalog = catalog if catalog is not None else Catalog()
        self.max_loan_days = max_loan_days
        self._loans: List[LoanRecord] = []

    async def _call(self, operation: Callable[[str], Awaitable[Any]]) -> Any:
        """Run an authenticated request; a rejected credential ends the session."""
        token = self.session.require_credential()
        try:
            return await operation(token)
        except AuthError as e:
            self.session.invalidate(e.message)
            raise

    @property
    def borrowed(self) -> List[LoanRecord]:
        """Loans from the last fetch."""
        return list(self._loans)

    def active(self) -> List[LoanRecord]:
        return [loan for loan in self._loans if loan.status is LoanStatus.BORROWED]

    def overdue(self, now: Optional[datetime] = None) -> List[LoanRecord]:
        now = to_naive_utc(now) if now else utcnow()
        return [loan for loan in self._loans if loan.is_overdue(now)]

    def available(self) -> AvailableBooks:
        return list_available(self.catalog)

    async def fetch_books(self) -> List[BookListing]:
        """Refetch the catalog."""
        payload = await self._call(self.api.list_books)
        books = parse_books_response(payload)
        self.catalog.replace(books)
        logger.info(f"Catalog refreshed: {len(books)} books")
        return books

    async def fetch_borrowed(self) -> List[LoanRecord]:
        """Refetch the current account's loans."""
        payload = await self._call(self.api.borrowed_books)
        self._loans = parse_loans_response(payload)
        logger.info(f"Borrowed list refreshed: {len(self._loans)} loans")
        return self.borrowed

    async def refresh(self):
        """Refetch catalog and loans together; the first failure is raised."""
        results = await asyncio.gather(
            self.fetch_books(),
            self.fetch_borrowed(),
            return_exceptions=True
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def _refresh_after_write(self, action: str):
        """
        Reconcile with the backend after a committed borrow or return.

        The write already happened, so a failed refetch is only logged. A
        rejected credential has ended the session by then.
        """
        try:
            await self.refresh()
        except LibraryClientError as e:
            logger.warning(f"{action} succeeded but refreshing failed: {e}")

    def validate_due_date(
        self,
        requested_due_date: Optional[Union[date, datetime]],
        now: datetime
    ) -> date:
        """
        Check a requested due date against the loan policy.

        Returns:
            The due date as a calendar date

        Raises:
            ValidationError: missing, in the past, or beyond the loan period
        """
        if requested_due_date is None:
            raise ValidationError("due date required")

        due = _as_date(requested_due_date)
        today = now.date()

        if due < today:
            raise ValidationError("due date in past")
        if due > today + timedelta(days=self.max_loan_days):
            raise ValidationError("exceeds maximum loan period")
        return due

    async def borrow(
        self,
        book_id: int,
        requested_due_date: Optional[Union[date, datetime]],
        now: Optional[datetime] = None
    ) -> LoanRecord:
        """
        Borrow a copy of ``book_id``.

        Args:
            book_id: Book to borrow
            requested_due_date: Return date, at most ``max_loan_days`` ahead
            now: Reference time (defaults to the current UTC time)

        Returns:
            The loan as recorded by the backend

        Raises:
            ValidationError: due date rejected locally, nothing was sent
            ConflictError: no copies left on the backend
        """
        now = to_naive_utc(now) if now else utcnow()
        due = self.validate_due_date(requested_due_date, now)

        payload = await self._call(lambda token: self.api.borrow(token, book_id, due))
        loan = self._loan_from_borrow(payload, book_id, due, now)
        logger.info(f"Borrowed book {book_id} until {due.isoformat()}")

        await self._refresh_after_write(f"Borrow of book {book_id}")
        return loan

    def _loan_from_borrow(
        self,
        payload: Any,
        book_id: int,
        due: date,
        now: datetime
    ) -> LoanRecord:
        record = None
        if isinstance(payload, dict):
            for key in ("transaction", "data", "loan"):
                if isinstance(payload.get(key), dict):
                    record = parse_loan(payload[key])
                    break
            else:
                if "due_date" in payload:
                    record = parse_loan(payload)

        if record is not None:
            return record

        # Backend acknowledged with a message only
        transaction_id = payload.get("transaction_id", 0) if isinstance(payload, dict) else 0
        identity = self.session.identity
        return LoanRecord(
            transaction_id=int(transaction_id),
            book_id=book_id,
            borrower_id=identity.id if identity else None,
            borrowed_at=now,
            due_date=datetime(due.year, due.month, due.day)
        )

    async def return_book(self, transaction_id: int, confirm: Confirm) -> bool:
        """
        Return the loan ``transaction_id`` after the user confirms.

        Args:
            transaction_id: Loan to return
            confirm: Asked before anything is sent; may be sync or async

        Returns:
            True once the backend confirmed the return, False if the user
            declined

        Raises:
            NotFoundError: unknown or already returned transaction
            LibraryClientError: backend did not confirm the return
        """
        confirmed = confirm(transaction_id)
        if inspect.isawaitable(confirmed):
            confirmed = await confirmed
        if not confirmed:
            logger.info(f"Return of transaction {transaction_id} cancelled")
            return False

        payload = await self._call(
            lambda token: self.api.return_transaction(token, transaction_id)
        )
        if not (isinstance(payload, dict) and payload.get("success")):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise LibraryClientError(message or "Failed to process return")

        logger.info(f"Returned transaction {transaction_id}")
        await self._refresh_after_write(f"Return of transaction {transaction_id}")
        return True
