"""Parse and normalize library backend responses."""
import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from library_client.models import (
    BookListing,
    Identity,
    LoanRecord,
    LoanStatus,
    Page,
    PageMeta,
    Role,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Union[str, date, None]) -> Optional[datetime]:
    """
    Parse a backend timestamp.

    Accepts ISO-8601 datetimes (with or without offset, ``Z`` included) and
    plain dates, which become midnight. Returns naive UTC or None when empty.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_naive_utc(datetime.fromisoformat(text))


def extract_items(payload: Any, key: str) -> List[Dict[str, Any]]:
    """
    Pull the list of records out of a listing response.

    The backend answers with a bare list, ``{key: [...]}`` or ``{"data": [...]}``.
    """
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for candidate in (key, "data"):
            items = payload.get(candidate)
            if isinstance(items, list):
                return items
    return []


def parse_identity(payload: Dict[str, Any]) -> Identity:
    """
    Parse the ``/auth/me`` response.

    Raises:
        ValueError: if the payload has no usable identity
    """
    if not isinstance(payload, dict):
        raise ValueError("identity payload is not an object")

    user = payload.get("user", payload)
    if not isinstance(user, dict) or user.get("id") is None:
        raise ValueError("identity payload has no user id")

    try:
        user_id = int(user["id"])
        role = Role(str(user.get("role", Role.USER.value)).lower())
    except (TypeError, ValueError) as e:
        raise ValueError(f"identity payload is malformed: {e}") from e

    return Identity(
        id=user_id,
        name=user.get("name") or "",
        email=user.get("email") or "",
        role=role
    )


def _count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError):
        return 0


def parse_book(item: Dict[str, Any]) -> Optional[BookListing]:
    """
    Parse a single book from a listing.

    Args:
        item: Single book object from the backend

    Returns:
        BookListing or None if the item has no id
    """
    try:
        book_id = item.get("id")
        if book_id is None:
            return None

        total = _count(item.get("total_copies"))
        available = _count(item.get("available_copies"))
        # Keep 0 <= available <= total even if the backend lags behind
        if total < available:
            total = available

        added_by = (item.get("user") or {}).get("name") or "Admin"

        return BookListing(
            id=int(book_id),
            title=item.get("title") or "No Title",
            author=item.get("author") or "Unknown Author",
            description=item.get("description") or "No description available",
            publisher=item.get("publisher") or "Unknown Publisher",
            total_copies=total,
            available_copies=available,
            added_by=added_by
        )
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Failed to parse book: {e}")
        return None


def parse_books_response(payload: Any) -> List[BookListing]:
    """Parse a ``/books`` response into BookListings."""
    books = []

    for item in extract_items(payload, "books"):
        book = parse_book(item)
        if book:
            books.append(book)

    return books


def parse_loan(item: Dict[str, Any]) -> Optional[LoanRecord]:
    """
    Parse a single loan record.

    Borrowed-book listings join the book into the record: ``id`` is then the
    book id and ``transaction_id`` the loan. Plain transaction records use
    ``id`` for the loan and ``book_id`` for the book.

    Returns:
        LoanRecord or None if the record is unusable
    """
    try:
        if "transaction_id" in item:
            transaction_id = item["transaction_id"]
            if transaction_id is None:
                transaction_id = item.get("id")
            book_id = item.get("book_id", item.get("id"))
        else:
            transaction_id = item.get("id")
            book_id = item.get("book_id")

        if transaction_id is None:
            return None

        due_date = parse_timestamp(item.get("due_date"))
        if due_date is None:
            logger.warning(f"Loan {transaction_id} has no due date, skipping")
            return None

        borrowed_at = parse_timestamp(item.get("borrowed_at") or item.get("borrowed_date"))
        if borrowed_at is not None and due_date.date() < borrowed_at.date():
            # A date-only due day can trail a borrow time shifted into UTC
            logger.warning(
                f"Loan {transaction_id} is due before its borrow time "
                f"{borrowed_at.isoformat()}, ignoring the borrow time"
            )
            borrowed_at = None

        book = item.get("book") or {}
        user = item.get("user") or {}
        borrower_id = item.get("user_id", item.get("borrower_id", user.get("id")))

        return LoanRecord(
            transaction_id=int(transaction_id),
            book_id=int(book_id) if book_id is not None else None,
            borrower_id=int(borrower_id) if borrower_id is not None else None,
            borrowed_at=borrowed_at,
            due_date=due_date,
            returned_at=parse_timestamp(item.get("returned_at") or item.get("return_date")),
            status=LoanStatus(str(item.get("status") or "borrowed").lower()),
            title=book.get("title") or item.get("title") or "No Title",
            author=book.get("author") or item.get("author") or "Unknown Author",
            publisher=book.get("publisher") or item.get("publisher") or "Unknown Publisher"
        )
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Failed to parse loan: {e}")
        return None


def parse_loans_response(payload: Any) -> List[LoanRecord]:
    """Parse a loan listing (``/user/borrowed-books``, transactions)."""
    loans = []

    for item in extract_items(payload, "books"):
        loan = parse_loan(item)
        if loan:
            loans.append(loan)

    return loans


def parse_page(
    payload: Dict[str, Any],
    parse_item: Callable[[Dict[str, Any]], Optional[T]]
) -> Page[T]:
    """
    Parse an admin ``{data, meta}`` envelope.

    Args:
        payload: Response JSON
        parse_item: Parser applied to every entry of ``data``

    Returns:
        Page with the parsed entries (unparseable entries dropped)
    """
    items = payload.get("data") or []
    meta = payload.get("meta") or {}

    data = []
    for item in items:
        parsed = parse_item(item)
        if parsed is not None:
            data.append(parsed)

    return Page(
        data=data,
        meta=PageMeta(
            current_page=int(meta.get("current_page", 1)),
            last_page=int(meta.get("last_page", 1)),
            per_page=int(meta.get("per_page", len(items))),
            total=int(meta.get("total", len(items)))
        )
    )


def parse_user(item: Dict[str, Any]) -> Optional[Identity]:
    """Parse an entry of the admin user listing."""
    try:
        return parse_identity(item)
    except ValueError as e:
        logger.warning(f"Failed to parse user: {e}")
        return None
