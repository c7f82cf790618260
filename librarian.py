#!/usr/bin/env python3
"""Librarian CLI - browse, borrow and return books from the library backend."""
import argparse
import asyncio
import getpass
import json
import logging
import sys
from datetime import date, timedelta
from tabulate import tabulate
from library_client.async_client import AsyncLibraryClient
from library_client.client import LibraryAdminClient
from library_client.config import Config
from library_client.credentials import CredentialStore
from library_client.errors import (
    AuthError,
    ConflictError,
    LibraryClientError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from library_client.lending import LendingWorkflow, utcnow
from library_client.session import SessionStore, landing_for

logger = logging.getLogger(__name__)


def configure_logging(config: Config, verbose: bool = False):
    """Set up root logging once for the CLI process."""
    level = logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )


def truncate(text: str, width: int) -> str:
    return text[:width] + "..." if len(text) > width else text


def display_books(books, format_type: str = "table"):
    """Display books in specified format."""
    books = list(books)

    if format_type == "table":
        headers = ["ID", "Title", "Author", "Publisher", "Available", "Total"]
        rows = [
            [
                book.id,
                truncate(book.title, 50),
                truncate(book.author, 30),
                truncate(book.publisher, 30),
                book.available_copies,
                book.total_copies
            ]
            for book in books
        ]
        print("\n" + tabulate(rows, headers=headers, tablefmt="grid"))

    elif format_type == "json":
        books_dict = [
            {
                "id": book.id,
                "title": book.title,
                "author": book.author,
                "description": book.description,
                "publisher": book.publisher,
                "available_copies": book.available_copies,
                "total_copies": book.total_copies
            }
            for book in books
        ]
        print(json.dumps(books_dict, indent=2))

    elif format_type == "compact":
        for i, book in enumerate(books, 1):
            print(f"{i}. {book.title} - {book.author} ({book.available_copies}/{book.total_copies})")


def display_loans(loans, format_type: str = "table"):
    """Display loans, flagging the overdue ones."""
    now = utcnow()
    loans = list(loans)

    if format_type == "json":
        loans_dict = [
            {
                "transaction_id": loan.transaction_id,
                "book_id": loan.book_id,
                "title": loan.title,
                "borrowed_at": loan.borrowed_at.isoformat() if loan.borrowed_at else None,
                "due_date": loan.due_date.isoformat(),
                "returned_at": loan.returned_at.isoformat() if loan.returned_at else None,
                "status": loan.status.value,
                "overdue": loan.is_overdue(now)
            }
            for loan in loans
        ]
        print(json.dumps(loans_dict, indent=2))
        return

    if format_type == "compact":
        for loan in loans:
            flag = " [OVERDUE]" if loan.is_overdue(now) else ""
            print(f"#{loan.transaction_id} {loan.title} - due {loan.due_date:%Y-%m-%d}{flag}")
        return

    headers = ["Transaction", "Title", "Author", "Borrowed", "Due", "Status"]
    rows = [
        [
            loan.transaction_id,
            truncate(loan.title, 40),
            truncate(loan.author, 25),
            f"{loan.borrowed_at:%Y-%m-%d %H:%M}" if loan.borrowed_at else "N/A",
            f"{loan.due_date:%Y-%m-%d}" + (" (OVERDUE)" if loan.is_overdue(now) else ""),
            loan.status.value
        ]
        for loan in loans
    ]
    print("\n" + tabulate(rows, headers=headers, tablefmt="grid"))


def display_users(users):
    headers = ["ID", "Name", "Email", "Role"]
    rows = [[user.id, user.name, user.email, user.role.value] for user in users]
    print("\n" + tabulate(rows, headers=headers, tablefmt="grid"))


def describe_error(error: LibraryClientError) -> str:
    """User-facing message for a client error."""
    if isinstance(error, ConflictError):
        return f"Conflict: {error.message} (someone else may have just taken the last copy; refresh and retry)"
    if isinstance(error, ValidationError):
        details = "; ".join(
            f"{name}: {', '.join(messages)}" for name, messages in error.fields.items()
        )
        return f"Invalid input: {error.message}" + (f" ({details})" if details else "")
    if isinstance(error, AuthError):
        return f"Not authorized: {error.message}. Please log in again."
    if isinstance(error, NotFoundError):
        return f"Not found: {error.message}"
    if isinstance(error, NetworkError):
        return f"Backend unreachable: {error.message}"
    return f"Error: {error.message}"


def confirm_return(transaction_id: int) -> bool:
    answer = input(f"Return transaction #{transaction_id}? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def require_login(session: SessionStore) -> bool:
    if session.is_authenticated:
        return True
    print("You are not logged in. Run: librarian.py login EMAIL")
    return False


async def run_user_command(args, config: Config) -> int:
    """Restore the session and run one user command."""
    async with AsyncLibraryClient(
        config.LIBRARY_API_URL,
        timeout=config.DEFAULT_TIMEOUT,
        max_concurrent=config.MAX_CONCURRENT_REQUESTS
    ) as api:
        session = SessionStore(api, CredentialStore(config.credential_path))
        await session.restore()

        if args.command == "login":
            password = args.password or getpass.getpass("Password: ")
            identity = await session.login(args.email, password)
            print(f"✅ Logged in as {identity.name} ({identity.role.value}) -> {landing_for(identity)}")
            return 0

        if args.command == "register":
            password = args.password or getpass.getpass("Password: ")
            confirmation = args.confirm or getpass.getpass("Confirm password: ")
            await session.register(args.name, args.email, password, confirmation)
            print("✅ Registration successful! Please login.")
            return 0

        if args.command == "logout":
            await session.logout()
            print("Logged out.")
            return 0

        if args.command == "whoami":
            if not require_login(session):
                return 1
            identity = session.identity
            print(f"{identity.name} <{identity.email}> - {identity.role.value}")
            return 0

        if not require_login(session):
            return 1

        workflow = LendingWorkflow(session, api, max_loan_days=config.MAX_LOAN_DAYS)

        if args.command == "books":
            await workflow.fetch_books()
            books = workflow.available() if args.available else workflow.catalog.books
            display_books(books, args.format)

        elif args.command == "borrowed":
            await workflow.fetch_borrowed()
            loans = workflow.overdue() if args.overdue else workflow.borrowed
            display_loans(loans, args.format)

        elif args.command == "borrow":
            if args.due:
                due = date.fromisoformat(args.due)
            elif args.days is not None:
                due = utcnow().date() + timedelta(days=args.days)
            else:
                due = None
            loan = await workflow.borrow(args.book_id, due)
            print(f"✅ Borrowed book {args.book_id}, due {loan.due_date:%Y-%m-%d}")
            display_loans(workflow.borrowed, "compact")

        elif args.command == "return":
            confirm = (lambda _: True) if args.yes else confirm_return
            if await workflow.return_book(args.transaction_id, confirm):
                print(f"✅ Returned transaction #{args.transaction_id}")
            else:
                print("Return cancelled.")

    return 0


async def restore_session(config: Config):
    """Resolve the stored credential into (credential, identity)."""
    async with AsyncLibraryClient(config.LIBRARY_API_URL, timeout=config.DEFAULT_TIMEOUT) as api:
        session = SessionStore(api, CredentialStore(config.credential_path))
        await session.restore()
        return session


def run_admin_command(args, config: Config) -> int:
    """Run an admin listing with the synchronous admin client."""
    session = asyncio.run(restore_session(config))
    if not require_login(session):
        return 1
    if not session.identity.is_admin:
        print("This command requires an admin account.")
        return 1

    with LibraryAdminClient(
        config.LIBRARY_API_URL,
        token_provider=session.require_credential,
        timeout=config.DEFAULT_TIMEOUT,
        max_retries=config.DEFAULT_MAX_RETRIES,
        base_backoff=config.DEFAULT_BACKOFF,
        on_auth_error=session.invalidate
    ) as admin:

        if args.resource == "stats":
            stats = admin.dashboard_stats()
            print("\n" + tabulate(sorted(stats.items()), headers=["Metric", "Value"], tablefmt="grid"))
            return 0

        fetch = {
            "books": admin.list_books,
            "users": admin.list_users,
            "transactions": admin.list_transactions,
        }[args.resource]

        if args.all:
            items = list(admin.iter_pages(fetch, search=args.search, per_page=args.per_page))
            footer = f"{len(items)} total"
        else:
            page = fetch(page=args.page, search=args.search, per_page=args.per_page)
            items = page.data
            footer = f"Page {page.meta.current_page}/{page.meta.last_page} ({page.meta.total} total)"

        if args.resource == "books":
            display_books(items, args.format)
        elif args.resource == "users":
            display_users(items)
        else:
            display_loans(items, args.format)
        print(footer)

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Librarian - library backend client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Log in (prompts for the password)
  %(prog)s login reader@example.com

  # Show books with copies left
  %(prog)s books --available

  # Borrow book 12 for three days
  %(prog)s borrow 12 --days 3

  # Return a loan without the confirmation prompt
  %(prog)s return 41 --yes

  # Admin: all transactions matching "tolkien"
  %(prog)s admin transactions --search tolkien --all
        """
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    login_parser = subparsers.add_parser("login", help="Log in")
    login_parser.add_argument("email", help="Account email")
    login_parser.add_argument("--password", help="Password (prompted if omitted)")

    register_parser = subparsers.add_parser("register", help="Create an account")
    register_parser.add_argument("name", help="Display name")
    register_parser.add_argument("email", help="Account email")
    register_parser.add_argument("--password", help="Password (prompted if omitted)")
    register_parser.add_argument("--confirm", help="Password confirmation (prompted if omitted)")

    subparsers.add_parser("logout", help="Log out")
    subparsers.add_parser("whoami", help="Show the logged-in account")

    books_parser = subparsers.add_parser("books", help="List books")
    books_parser.add_argument("--available", action="store_true", help="Only books with copies left")
    books_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    borrowed_parser = subparsers.add_parser("borrowed", help="List my loans")
    borrowed_parser.add_argument("--overdue", action="store_true", help="Only overdue loans")
    borrowed_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    borrow_parser = subparsers.add_parser("borrow", help="Borrow a book")
    borrow_parser.add_argument("book_id", type=int, help="Book ID")
    due_group = borrow_parser.add_mutually_exclusive_group()
    due_group.add_argument("--due", help="Due date (YYYY-MM-DD)")
    due_group.add_argument("--days", type=int, help="Loan length in days")

    return_parser = subparsers.add_parser("return", help="Return a borrowed book")
    return_parser.add_argument("transaction_id", type=int, help="Transaction ID")
    return_parser.add_argument("--yes", action="store_true", help="Skip confirmation")

    admin_parser = subparsers.add_parser("admin", help="Admin listings")
    admin_parser.add_argument("resource", choices=["books", "users", "transactions", "stats"])
    admin_parser.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    admin_parser.add_argument("--search", help="Search text")
    admin_parser.add_argument("--per-page", type=int, default=10, help="Page size (default: 10)")
    admin_parser.add_argument("--all", action="store_true", help="Fetch every page")
    admin_parser.add_argument("--format", choices=["table", "json", "compact"], default="table", help="Output format")

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    config = Config()
    configure_logging(config, args.verbose)

    try:
        if args.command == "admin":
            return run_admin_command(args, config)
        return asyncio.run(run_user_command(args, config))

    except KeyboardInterrupt:
        logger.info("\n⚠️  Interrupted by user")
        return 0
    except LibraryClientError as e:
        print(describe_error(e))
        return 1
    except ValueError as e:
        print(f"Invalid input: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
