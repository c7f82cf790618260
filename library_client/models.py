"""Data models for sessions, books and loans."""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

T = TypeVar("T")


class Role(str, enum.Enum):
    """Account roles known to the backend."""
    USER = "user"
    ADMIN = "admin"


class SessionState(str, enum.Enum):
    """
    Authentication state of the running client.

    Flow:
        RESTORING -> AUTHENTICATED | ANONYMOUS   (once, on startup)
        ANONYMOUS -> AUTHENTICATED               (login)
        AUTHENTICATED -> ANONYMOUS               (logout, rejected credential)
    """
    RESTORING = "restoring"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


class LoanStatus(str, enum.Enum):
    """Status of a loan: borrowed -> returned (terminal)."""
    BORROWED = "borrowed"
    RETURNED = "returned"


@dataclass(frozen=True)
class Identity:
    """Account identity as reported by the backend (immutable)."""
    id: int
    name: str
    email: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class BookListing:
    """Book as listed in the catalog."""
    id: int
    title: str
    author: str
    description: str
    publisher: str
    total_copies: int
    available_copies: int
    added_by: str = "Admin"

    @property
    def is_available(self) -> bool:
        return self.available_copies > 0


@dataclass(frozen=True)
class LoanRecord:
    """
    A single borrow transaction.

    ``returned_at`` is set if and only if the status is ``returned``. Records
    are only ever replaced by a fresh fetch, never edited in place.
    """
    transaction_id: int
    book_id: Optional[int]
    borrower_id: Optional[int]
    borrowed_at: Optional[datetime]
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: LoanStatus = LoanStatus.BORROWED
    title: str = "No Title"
    author: str = "Unknown Author"
    publisher: str = "Unknown Publisher"

    def __post_init__(self):
        if (self.returned_at is not None) != (self.status is LoanStatus.RETURNED):
            raise ValueError(
                f"Loan {self.transaction_id}: returned_at must be set iff status is returned"
            )
        # Due dates are calendar days; a loan due today is valid
        if self.borrowed_at is not None and self.due_date.date() < self.borrowed_at.date():
            raise ValueError(
                f"Loan {self.transaction_id}: due date precedes borrow date"
            )

    @property
    def is_returned(self) -> bool:
        return self.status is LoanStatus.RETURNED

    def is_overdue(self, now: datetime) -> bool:
        """True while the loan is still out and its due date has passed."""
        return self.status is LoanStatus.BORROWED and self.due_date < now


@dataclass
class PageMeta:
    """Pagination metadata of an admin listing."""
    current_page: int
    last_page: int
    per_page: int
    total: int


@dataclass
class Page(Generic[T]):
    """One page of an admin listing."""
    data: List[T] = field(default_factory=list)
    meta: PageMeta = field(default_factory=lambda: PageMeta(1, 1, 0, 0))

    @property
    def has_next(self) -> bool:
        return self.meta.current_page < self.meta.last_page
